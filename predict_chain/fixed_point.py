"""
Fixed-point arithmetic on scaled integers.

Every value is an integer scaled by PRECISION (10^9), so 1.0 is stored as
1_000_000_000. The kernel emulates the bounds of the on-ledger arithmetic:
intermediates may use up to 128 bits, results must fit in 64 bits (by
magnitude). Anything outside those bounds, or outside a function's domain,
raises instead of saturating.
"""
from decimal import Decimal

from predict_chain.errors import ArithmeticOverflow, DivisionByZero, DomainError

PRECISION = 1_000_000_000
U64_MAX = 2**64 - 1
U128_MAX = 2**128 - 1

# ln(2) scaled, truncated
LN_2 = 693_147_180

# exp() is defined on [-MAX_EXP, MAX_EXP]; e^20 * 10^9 still fits in 64 bits
MAX_EXP = 20 * PRECISION

# Series cap for ln(); the atanh series converges long before this
MAX_SERIES_TERMS = 64


def _check_bound(value: int, bound: int, what: str):
    if abs(value) > bound:
        raise ArithmeticOverflow(f"{what} out of range: {value}")


def _div_trunc(numerator: int, denominator: int) -> int:
    """Integer division truncating toward zero."""
    quotient = abs(numerator) // abs(denominator)
    if (numerator < 0) != (denominator < 0):
        return -quotient
    return quotient


def mul(a: int, b: int) -> int:
    """(a * b) / PRECISION."""
    product = a * b
    _check_bound(product, U128_MAX, "mul intermediate")
    result = _div_trunc(product, PRECISION)
    _check_bound(result, U64_MAX, "mul result")
    return result


def div(a: int, b: int) -> int:
    """(a * PRECISION) / b."""
    if b == 0:
        raise DivisionByZero(f"division of {a} by zero")
    numerator = a * PRECISION
    _check_bound(numerator, U128_MAX, "div intermediate")
    result = _div_trunc(numerator, b)
    _check_bound(result, U64_MAX, "div result")
    return result


def exp(x: int) -> int:
    """
    e^x for a scaled x in [-MAX_EXP, MAX_EXP].

    Reduces x = k*ln2 + r with 0 <= r < ln2, evaluates e^r with a (3,3)
    Pade approximant and scales the result by 2^k. Negative arguments are
    computed as 1 / e^|x|.

    Raises:
        DomainError: if x is outside [-MAX_EXP, MAX_EXP]
    """
    if x > MAX_EXP or x < -MAX_EXP:
        raise DomainError(f"exp argument {x} outside [-{MAX_EXP}, {MAX_EXP}]")
    if x == 0:
        return PRECISION
    if x < 0:
        return div(PRECISION, exp(-x))

    k, r = divmod(x, LN_2)

    r2 = mul(r, r)
    r3 = mul(r2, r)
    numerator = PRECISION + r // 2 + r2 // 10 + r3 // 120
    denominator = PRECISION - r // 2 + r2 // 10 - r3 // 120

    result = div(numerator, denominator) << k
    _check_bound(result, U64_MAX, "exp result")
    return result


def ln(x: int) -> int:
    """
    Natural logarithm of a scaled x > 0. The result is signed.

    Normalizes x = m * 2^k with m in [1, 2), then sums the series
    ln(m) = 2 * (y + y^3/3 + y^5/5 + ...) with y = (m - 1) / (m + 1).

    Raises:
        DomainError: if x <= 0
    """
    if x <= 0:
        raise DomainError(f"ln argument must be positive, got {x}")

    k = 0
    m = x
    if m >= 2 * PRECISION:
        k = (m // PRECISION).bit_length() - 1
        m >>= k
    while m < PRECISION:
        m <<= 1
        k -= 1

    y = div(m - PRECISION, m + PRECISION)
    y2 = mul(y, y)

    total = 0
    term = y
    n = 1
    for _ in range(MAX_SERIES_TERMS):
        if term == 0:
            break
        total += term // n
        term = mul(term, y2)
        n += 2

    return 2 * total + k * LN_2


# ==============================================================================
# WIDE PRECISION
# ==============================================================================
#
# Values scaled by WIDE_PRECISION (10^18). Used where the cost of a single
# base unit must still be resolved, so every step only truncates and each
# function is non-decreasing in its argument.

WIDE_PRECISION = PRECISION * PRECISION

# ln(2) at wide precision, truncated
LN_2_WIDE = 693_147_180_559_945_309

MAX_EXP_WIDE = MAX_EXP * PRECISION


def exp_wide(x: int) -> int:
    """
    e^x for a wide-scaled x in [-MAX_EXP_WIDE, MAX_EXP_WIDE].

    Reduces x = k*ln2 + r and sums the Taylor series of e^r until its terms
    vanish. Negative arguments are computed as 1 / e^|x|.

    Raises:
        DomainError: if x is outside [-MAX_EXP_WIDE, MAX_EXP_WIDE]
    """
    if x > MAX_EXP_WIDE or x < -MAX_EXP_WIDE:
        raise DomainError(f"exp argument {x} outside [-{MAX_EXP_WIDE}, {MAX_EXP_WIDE}]")
    if x < 0:
        return WIDE_PRECISION * WIDE_PRECISION // exp_wide(-x)

    k, r = divmod(x, LN_2_WIDE)
    total = WIDE_PRECISION
    term = WIDE_PRECISION
    for n in range(1, MAX_SERIES_TERMS):
        term = term * r // (n * WIDE_PRECISION)
        if term == 0:
            break
        total += term

    result = total << k
    _check_bound(result, U128_MAX, "exp_wide result")
    return result


def ln1p_wide(u: int) -> int:
    """
    ln(1 + u) for a wide-scaled u in [0, 1], via the atanh series with
    y = u / (2 + u).

    Raises:
        DomainError: if u is outside [0, WIDE_PRECISION]
    """
    if u < 0 or u > WIDE_PRECISION:
        raise DomainError(f"ln1p argument {u} outside [0, {WIDE_PRECISION}]")

    y = u * WIDE_PRECISION // (2 * WIDE_PRECISION + u)
    y2 = y * y // WIDE_PRECISION

    total = 0
    term = y
    n = 1
    for _ in range(MAX_SERIES_TERMS):
        if term == 0:
            break
        total += term // n
        term = term * y2 // WIDE_PRECISION
        n += 2

    return 2 * total


def to_fixed(value) -> int:
    """Convert a whole or decimal amount (int, str or Decimal) to scaled units."""
    return int(Decimal(str(value)) * PRECISION)


def to_decimal(value: int) -> Decimal:
    """Scaled units to Decimal, for display only."""
    return Decimal(value) / Decimal(PRECISION)
