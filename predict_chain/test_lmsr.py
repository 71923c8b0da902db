"""
Test Suite: LMSR Pricing Engine

Covers price normalization, buy/sell symmetry, bounded market maker loss,
budget search, domain rejection and the fee split.
"""
import math
import random

import pytest

from predict_chain.errors import ConvergenceError, DomainError, InsufficientShares
from predict_chain.fixed_point import LN_2, PRECISION
from predict_chain.lmsr import (
    MIN_B,
    SEARCH_TOLERANCE,
    FeeSchedule,
    Side,
    b_for_max_loss,
    buy_cost,
    calculate_fees,
    cost,
    max_loss,
    price,
    quote_buy,
    quote_for_budget,
    quote_sell,
    sell_proceeds,
)

B = 100 * PRECISION


def random_state(rng: random.Random):
    """Random (q_yes, q_no, b) with the imbalance well inside the domain."""
    b = rng.randint(MIN_B, 5_000 * PRECISION)
    q_yes = rng.randint(0, 8 * b)
    q_no = rng.randint(0, 8 * b)
    return q_yes, q_no, b


class TestCostAndPrice:
    """Cost function and marginal prices."""

    def test_initial_cost_is_max_loss(self):
        """C(0, 0) = b * ln 2; max_loss is the same value rounded up."""
        assert max_loss(B) - 1 <= cost(0, 0, B) <= max_loss(B)

    def test_equal_quantities_price_half(self):
        assert price(0, 0, B, Side.YES) == PRECISION // 2
        assert price(0, 0, B, Side.NO) == PRECISION // 2
        assert price(50 * PRECISION, 50 * PRECISION, B, Side.YES) == PRECISION // 2

    def test_prices_sum_to_one(self):
        """P(YES) + P(NO) == 1 exactly, for arbitrary in-domain states."""
        rng = random.Random(42)
        for _ in range(200):
            q_yes, q_no, b = random_state(rng)
            assert price(q_yes, q_no, b, Side.YES) + price(q_yes, q_no, b, Side.NO) == PRECISION

    def test_price_follows_quantity(self):
        assert price(10 * PRECISION, 0, B, Side.YES) > PRECISION // 2
        assert price(0, 10 * PRECISION, B, Side.YES) < PRECISION // 2

    def test_price_matches_softmax(self):
        rng = random.Random(7)
        for _ in range(50):
            q_yes, q_no, b = random_state(rng)
            expected = 1 / (1 + math.exp((q_no - q_yes) / b))
            assert price(q_yes, q_no, b, Side.YES) / PRECISION == pytest.approx(expected, abs=1e-5)

    def test_imbalance_outside_domain_rejected(self):
        """|q_yes - q_no| / b beyond the exp domain is rejected, not clamped."""
        with pytest.raises(DomainError):
            cost(21 * B, 0, B)
        with pytest.raises(DomainError):
            price(0, 25 * B, B, Side.YES)

    def test_invalid_inputs_rejected(self):
        with pytest.raises(DomainError):
            cost(0, 0, 0)
        with pytest.raises(DomainError):
            cost(-1, 0, B)

    def test_large_balanced_quantities_stay_finite(self):
        """Log-sum-exp keeps huge but balanced books priceable."""
        q = 1_000_000 * PRECISION
        assert price(q, q, B, Side.YES) == PRECISION // 2
        assert cost(q, q, B) > q


class TestTrades:
    """Buy cost, sell proceeds and the worked b=100 example."""

    def test_worked_example_buy_ten_yes(self):
        """b = 100, q = (0, 0): buying 10 YES costs ~5.1249 and moves YES to ~0.5250."""
        paid = buy_cost(0, 0, B, Side.YES, 10 * PRECISION)
        expected = 100 * (math.log(math.exp(0.1) + 1) - math.log(2))
        assert paid / PRECISION == pytest.approx(expected, abs=1e-4)

        new_price = price(10 * PRECISION, 0, B, Side.YES)
        assert new_price / PRECISION == pytest.approx(1 / (1 + math.exp(-0.1)), abs=1e-5)
        assert new_price > PRECISION // 2

    def test_buy_then_sell_never_profits(self):
        """Selling what was just bought returns no more than was paid."""
        rng = random.Random(1234)
        for _ in range(100):
            q_yes, q_no, b = random_state(rng)
            side = rng.choice([Side.YES, Side.NO])
            shares = rng.randint(1, 5 * b)
            paid = buy_cost(q_yes, q_no, b, side, shares)
            new_yes = q_yes + shares if side == Side.YES else q_yes
            new_no = q_no + shares if side == Side.NO else q_no
            received = sell_proceeds(new_yes, new_no, b, side, shares)
            assert received <= paid

    def test_round_trip_with_fees_loses_money(self):
        buy = quote_buy(0, 0, B, Side.NO, 20 * PRECISION)
        sell = quote_sell(buy.new_q_yes, buy.new_q_no, B, Side.NO, 20 * PRECISION)
        assert sell.net_amount < buy.net_amount
        assert sell.new_q_no == 0

    def test_buy_cost_positive_and_increasing(self):
        first = buy_cost(0, 0, B, Side.YES, 10 * PRECISION)
        second = buy_cost(10 * PRECISION, 0, B, Side.YES, 10 * PRECISION)
        assert 0 < first < second

    def test_cost_monotonic_per_unit(self):
        """One more base unit of either side never lowers the cost."""
        for start_yes, start_no in ((0, 0), (69 * PRECISION, 0), (1_999 * PRECISION, 0)):
            previous = cost(start_yes, start_no, B)
            for step in range(1, 1_500):
                current = cost(start_yes + step, start_no, B)
                assert current >= previous
                previous = current

            previous = cost(start_yes, start_no, B)
            for step in range(1, 1_500):
                current = cost(start_yes, start_no + step, B)
                assert current >= previous
                previous = current

    def test_unit_buys_always_charged(self):
        """Repeated one-unit buys each cost at least one unit, on both sides."""
        for side in (Side.YES, Side.NO):
            q_yes, q_no = 150 * PRECISION, 0
            total = 0
            for _ in range(1_000):
                paid = buy_cost(q_yes, q_no, B, side, 1)
                assert paid >= 1
                total += paid
                q_yes, q_no = (q_yes + 1, q_no) if side == Side.YES else (q_yes, q_no + 1)
            assert total >= 1_000 * price(150 * PRECISION, 0, B, side) // PRECISION

    def test_rounding_favours_market_maker(self):
        """A buy followed by the matching sell never returns more than was paid."""
        rng = random.Random(3)
        for _ in range(300):
            q_yes = rng.randint(0, 1_000 * PRECISION)
            q_no = rng.randint(0, 1_000 * PRECISION)
            shares = rng.randint(1, 1_000)
            paid = buy_cost(q_yes, q_no, B, Side.NO, shares)
            assert sell_proceeds(q_yes, q_no + shares, B, Side.NO, shares) <= paid

    def test_sell_more_than_outstanding(self):
        with pytest.raises(InsufficientShares):
            sell_proceeds(5 * PRECISION, 0, B, Side.YES, 6 * PRECISION)

    def test_zero_shares_rejected(self):
        with pytest.raises(DomainError):
            buy_cost(0, 0, B, Side.YES, 0)

    def test_buy_pushing_past_domain_rejected(self):
        with pytest.raises(DomainError):
            buy_cost(0, 0, B, Side.YES, 21 * B)


class TestBoundedLoss:
    """Market maker loss never exceeds b * ln 2."""

    def test_max_loss_value(self):
        # 100 * ln 2 = 69.3147180559945...
        assert max_loss(B) == 69_314_718_056
        assert max_loss(B) >= 100 * LN_2

    def test_sole_winner_covered_by_minimum_seed(self):
        """Buying up to the domain edge never owes more than seed + collected."""
        for b in (MIN_B, 2_500 * PRECISION, 12_345 * PRECISION):
            shares = 20 * b - 1
            collected = buy_cost(0, 0, b, Side.YES, shares)
            assert shares <= max_loss(b) + collected

    def test_realized_loss_bounded(self):
        rng = random.Random(99)
        for _ in range(20):
            b = rng.randint(MIN_B, 2_000 * PRECISION)
            q_yes = q_no = 0
            collected = 0
            for _ in range(30):
                side = rng.choice([Side.YES, Side.NO])
                shares = rng.randint(1, 2 * b)
                new_yes = q_yes + shares if side == Side.YES else q_yes
                new_no = q_no + shares if side == Side.NO else q_no
                try:
                    collected += buy_cost(q_yes, q_no, b, side, shares)
                except DomainError:
                    continue
                q_yes, q_no = new_yes, new_no

            slack = b // PRECISION + 10
            for payout in (q_yes, q_no):
                assert payout - collected <= max_loss(b) + slack

    def test_b_for_max_loss_inverse(self):
        b = 2_500 * PRECISION
        assert abs(b_for_max_loss(max_loss(b)) - b) <= 5_000

    def test_b_for_max_loss_clamped(self):
        assert b_for_max_loss(1) == MIN_B


class TestBudgetSearch:
    """quote_for_budget binary search."""

    def test_spends_within_tolerance(self):
        budget = 25 * PRECISION
        shares = quote_for_budget(0, 0, B, Side.YES, budget)
        spent = buy_cost(0, 0, B, Side.YES, shares)
        assert spent <= budget
        assert budget - spent < SEARCH_TOLERANCE

    def test_recovers_known_purchase(self):
        target = 37 * PRECISION
        budget = buy_cost(12 * PRECISION, 3 * PRECISION, B, Side.NO, target)
        shares = quote_for_budget(12 * PRECISION, 3 * PRECISION, B, Side.NO, budget)
        # cost is monotonic, so the search can only land at or below the target
        assert shares <= target
        assert target - shares <= SEARCH_TOLERANCE * 3

    def test_iteration_cap_raises(self):
        with pytest.raises(ConvergenceError):
            quote_for_budget(0, 0, B, Side.YES, PRECISION, tolerance=1, max_iterations=1)

    def test_budget_beyond_domain_raises(self):
        with pytest.raises(DomainError):
            quote_for_budget(0, 0, B, Side.YES, 1_000_000 * PRECISION)

    def test_non_positive_budget_raises(self):
        with pytest.raises(DomainError):
            quote_for_budget(0, 0, B, Side.YES, 0)


class TestFees:
    """Fee split 300/200/500 bps of a 1000 bps total."""

    def test_default_split(self):
        fees = calculate_fees(1000 * PRECISION)
        assert fees.protocol == 30 * PRECISION
        assert fees.resolver == 20 * PRECISION
        assert fees.lp == 50 * PRECISION
        assert fees.total == 100 * PRECISION

    def test_remainder_goes_to_lp(self):
        fees = calculate_fees(12_345)
        assert (fees.protocol, fees.resolver, fees.lp) == (370, 246, 618)
        assert fees.total == 12_345 * 1000 // 10_000

    def test_parts_always_sum_to_total(self):
        rng = random.Random(5)
        schedule = FeeSchedule(total_bps=777, protocol_bps=123, resolver_bps=321, lp_bps=333)
        for _ in range(100):
            amount = rng.randint(0, 10**15)
            fees = calculate_fees(amount, schedule)
            assert fees.total == amount * 777 // 10_000

    def test_zero_fee_schedule(self):
        fees = calculate_fees(PRECISION, FeeSchedule(0, 0, 0, 0))
        assert fees.total == 0

    def test_quote_includes_fees(self):
        quote = quote_buy(0, 0, B, Side.YES, 10 * PRECISION)
        assert quote.net_amount == quote.raw_amount + quote.fees.total
        assert quote.new_q_yes == 10 * PRECISION
        assert quote.to_dict()['side'] == 'YES'
