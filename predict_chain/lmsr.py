"""
LMSR (Logarithmic Market Scoring Rule) pricing for binary markets.

Cost function:  C(q_yes, q_no) = b * ln(e^(q_yes/b) + e^(q_no/b))
Price:          P(yes) = e^(q_yes/b) / (e^(q_yes/b) + e^(q_no/b))

All quantities are fixed-point integers (see fixed_point). The engine only
computes amounts; moving funds is the ledger's job.
"""
from dataclasses import dataclass, asdict
from enum import Enum

from predict_chain.errors import (
    ConvergenceError,
    DomainError,
    InsufficientShares,
    NumericalInvariantError,
)
from predict_chain.fixed_point import (
    LN_2_WIDE,
    MAX_EXP,
    PRECISION,
    WIDE_PRECISION,
    div,
    exp,
    exp_wide,
    ln1p_wide,
    mul,
)

# Liquidity parameter bounds
MIN_B = 100 * PRECISION
MAX_B = 1_000_000 * PRECISION

# Budget search: stop once within 0.001 units of the budget
SEARCH_TOLERANCE = PRECISION // 1000
MAX_SEARCH_ITERATIONS = 64

BPS_DENOMINATOR = 10_000


class Side(str, Enum):
    YES = "YES"
    NO = "NO"


@dataclass(frozen=True)
class FeeSchedule:
    """Trading fee in basis points, split between protocol, resolver and LPs."""
    total_bps: int = 1000
    protocol_bps: int = 300
    resolver_bps: int = 200
    lp_bps: int = 500


@dataclass(frozen=True)
class FeeBreakdown:
    protocol: int
    resolver: int
    lp: int

    @property
    def total(self) -> int:
        return self.protocol + self.resolver + self.lp


@dataclass(frozen=True)
class TradeQuote:
    """Result of pricing a trade against the current quantities."""
    side: Side
    is_buy: bool
    shares: int
    raw_amount: int
    fees: FeeBreakdown
    net_amount: int
    new_q_yes: int
    new_q_no: int
    new_price_yes: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data['side'] = self.side.value
        return data


# ==============================================================================
# HELPERS
# ==============================================================================

def _scaled_quantities(q_yes: int, q_no: int, b: int) -> tuple[int, int]:
    """Returns (q_yes/b, q_no/b) after validating inputs and the exp domain."""
    if b <= 0:
        raise DomainError(f"liquidity parameter must be positive, got {b}")
    if q_yes < 0 or q_no < 0:
        raise DomainError(f"share quantities must be non-negative: ({q_yes}, {q_no})")

    if abs(q_yes - q_no) * PRECISION > MAX_EXP * b:
        raise DomainError(
            f"quantity imbalance |q_yes - q_no| / b = {div(abs(q_yes - q_no), b)} exceeds {MAX_EXP}"
        )
    return div(q_yes, b), div(q_no, b)


def _in_domain(q_yes: int, q_no: int, b: int) -> bool:
    try:
        _scaled_quantities(q_yes, q_no, b)
    except DomainError:
        return False
    return True


def _add_shares(q_yes: int, q_no: int, side: Side, delta: int) -> tuple[int, int]:
    if side == Side.YES:
        return q_yes + delta, q_no
    return q_yes, q_no + delta


def _require_positive(shares: int):
    if shares <= 0:
        raise DomainError(f"share amount must be positive, got {shares}")


# ==============================================================================
# COST AND PRICE
# ==============================================================================

def _cost_wide(q_yes: int, q_no: int, b: int) -> int:
    """
    b * (max + ln(1 + e^-(max - min))) in base units times WIDE_PRECISION,
    where max/min are the larger and smaller of q_yes/b and q_no/b.

    Non-decreasing in each quantity, so trade amounts derived from it never
    change sign through rounding.
    """
    _scaled_quantities(q_yes, q_no, b)
    x = q_yes * WIDE_PRECISION // b
    y = q_no * WIDE_PRECISION // b
    high, low = max(x, y), min(x, y)
    log_sum = high + ln1p_wide(exp_wide(low - high))
    return b * log_sum


def cost(q_yes: int, q_no: int, b: int) -> int:
    """
    LMSR cost function, stabilized with log-sum-exp:

        C = b * (max + ln(1 + e^-(max - min)))

    Evaluated at wide precision and truncated to base units.
    """
    return _cost_wide(q_yes, q_no, b) // WIDE_PRECISION


def price(q_yes: int, q_no: int, b: int, side: Side) -> int:
    """
    Marginal price of one share of `side`, in [0, PRECISION].

    The favoured side is priced as 1 / (1 + e^-d) with d the scaled
    imbalance; the other side is the complement, so YES + NO == PRECISION.
    """
    x, y = _scaled_quantities(q_yes, q_no, b)
    favoured = div(PRECISION, PRECISION + exp(-abs(x - y)))
    yes_price = favoured if x >= y else PRECISION - favoured
    if side == Side.YES:
        return yes_price
    return PRECISION - yes_price


def buy_cost(q_yes: int, q_no: int, b: int, side: Side, shares: int) -> int:
    """
    Cost of buying `shares` of `side`: C(q + shares) - C(q), rounded up.
    Any purchase costs at least one base unit.
    """
    _require_positive(shares)
    before = _cost_wide(q_yes, q_no, b)
    after = _cost_wide(*_add_shares(q_yes, q_no, side, shares), b)
    if after < before:
        raise NumericalInvariantError(f"negative buy cost {after - before}")
    return max(-((before - after) // WIDE_PRECISION), 1)


def sell_proceeds(q_yes: int, q_no: int, b: int, side: Side, shares: int) -> int:
    """Proceeds of selling `shares` of `side`: C(q) - C(q - shares)."""
    _require_positive(shares)
    outstanding = q_yes if side == Side.YES else q_no
    if shares > outstanding:
        raise InsufficientShares(
            f"cannot sell {shares} {side.value} shares, only {outstanding} outstanding"
        )
    before = _cost_wide(q_yes, q_no, b)
    after = _cost_wide(*_add_shares(q_yes, q_no, side, -shares), b)
    if before < after:
        raise NumericalInvariantError(f"negative sell proceeds {before - after}")
    return (before - after) // WIDE_PRECISION


def quote_for_budget(q_yes: int, q_no: int, b: int, side: Side, budget: int,
                     tolerance: int = SEARCH_TOLERANCE,
                     max_iterations: int = MAX_SEARCH_ITERATIONS) -> int:
    """
    Largest share amount whose buy cost does not exceed `budget`.

    Binary search over [0, max in-domain purchase]. Stops as soon as the
    cost is within `tolerance` below the budget; never overspends.

    Raises:
        DomainError: budget not positive, or larger than the most expensive
            purchase the pricing domain allows
        ConvergenceError: iteration cap reached before meeting tolerance
    """
    if budget <= 0:
        raise DomainError(f"budget must be positive, got {budget}")
    x, y = _scaled_quantities(q_yes, q_no, b)

    own, other = (q_yes, y) if side == Side.YES else (q_no, x)
    high = mul(MAX_EXP + other, b) - own
    while high > 0 and not _in_domain(*_add_shares(q_yes, q_no, side, high), b):
        high -= 1
    if high <= 0:
        raise DomainError(f"no {side.value} purchase possible within pricing domain")

    ceiling_cost = buy_cost(q_yes, q_no, b, side, high)
    if ceiling_cost <= budget:
        if budget - ceiling_cost < tolerance:
            return high
        raise DomainError(
            f"budget {budget} exceeds largest in-domain purchase cost {ceiling_cost}"
        )

    low = 0
    for _ in range(max_iterations):
        if low >= high:
            break
        mid = (low + high + 1) // 2
        spent = buy_cost(q_yes, q_no, b, side, mid)
        if spent <= budget:
            low = mid
            if budget - spent < tolerance:
                return mid
        else:
            high = mid - 1

    if low > 0 and budget - buy_cost(q_yes, q_no, b, side, low) < tolerance:
        return low
    raise ConvergenceError(
        f"budget search did not converge within {max_iterations} iterations"
    )


# ==============================================================================
# BOUNDED LOSS
# ==============================================================================

def max_loss(b: int) -> int:
    """
    Worst-case market maker loss: b * ln(2), i.e. C(0, 0) rounded up.

    Seeding this much covers every payout, since buys are charged the
    rounded-up cost difference from the same function.
    """
    return -(-_cost_wide(0, 0, b) // WIDE_PRECISION)


def b_for_max_loss(loss: int, min_b: int = MIN_B) -> int:
    """Liquidity parameter whose worst-case loss is `loss`, at least `min_b`."""
    return max(loss * WIDE_PRECISION // LN_2_WIDE, min_b)


# ==============================================================================
# FEES AND QUOTES
# ==============================================================================

def calculate_fees(amount: int, schedule: FeeSchedule = FeeSchedule()) -> FeeBreakdown:
    """
    Total fee first, then split. The LP share takes the rounding remainder
    so the parts always sum to exactly the total fee.
    """
    if amount < 0:
        raise DomainError(f"fee base must be non-negative, got {amount}")
    total = amount * schedule.total_bps // BPS_DENOMINATOR
    if schedule.total_bps == 0:
        return FeeBreakdown(protocol=0, resolver=0, lp=0)
    protocol = total * schedule.protocol_bps // schedule.total_bps
    resolver = total * schedule.resolver_bps // schedule.total_bps
    return FeeBreakdown(protocol=protocol, resolver=resolver, lp=total - protocol - resolver)


def quote_buy(q_yes: int, q_no: int, b: int, side: Side, shares: int,
              schedule: FeeSchedule = FeeSchedule()) -> TradeQuote:
    """Price a purchase. net_amount is what the buyer pays (cost + fees)."""
    raw = buy_cost(q_yes, q_no, b, side, shares)
    fees = calculate_fees(raw, schedule)
    new_yes, new_no = _add_shares(q_yes, q_no, side, shares)
    return TradeQuote(
        side=side,
        is_buy=True,
        shares=shares,
        raw_amount=raw,
        fees=fees,
        net_amount=raw + fees.total,
        new_q_yes=new_yes,
        new_q_no=new_no,
        new_price_yes=price(new_yes, new_no, b, Side.YES),
    )


def quote_sell(q_yes: int, q_no: int, b: int, side: Side, shares: int,
               schedule: FeeSchedule = FeeSchedule()) -> TradeQuote:
    """Price a sale. net_amount is what the seller receives (proceeds - fees)."""
    raw = sell_proceeds(q_yes, q_no, b, side, shares)
    fees = calculate_fees(raw, schedule)
    new_yes, new_no = _add_shares(q_yes, q_no, side, -shares)
    return TradeQuote(
        side=side,
        is_buy=False,
        shares=shares,
        raw_amount=raw,
        fees=fees,
        net_amount=raw - fees.total,
        new_q_yes=new_yes,
        new_q_no=new_no,
        new_price_yes=price(new_yes, new_no, b, Side.YES),
    )
