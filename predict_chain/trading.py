"""
Trade requests: price a trade off the current market and turn it into a
ledger instruction with slippage limits.

The ledger recomputes the quote under its writer lock; the limits here
make it reject the trade if the market moved too far in between.
"""
from typing import Optional

from predict_chain.config import MarketConfig
from predict_chain.core import EXECUTE_TRADE, Instruction
from predict_chain.errors import DomainError, InvalidStateTransition
from predict_chain.lmsr import BPS_DENOMINATOR, Side, TradeQuote, quote_buy, quote_for_budget, quote_sell
from predict_chain.market_state import MarketState

DEFAULT_SLIPPAGE_BPS = 100  # 1%


def build_trade(market: MarketState, trader: str, side: Side, action: str,
                config: MarketConfig,
                shares: Optional[int] = None,
                budget: Optional[int] = None,
                slippage_bps: int = DEFAULT_SLIPPAGE_BPS) -> tuple[Instruction, TradeQuote]:
    """
    Price a buy or sell against `market` and build the matching instruction.

    Buys take either `shares` or a `budget` (fees included); sells take
    `shares`.

    Returns:
        (instruction, quote) where the quote holds the updated quantities

    Raises:
        InvalidStateTransition: market is not ACTIVE
        DomainError: bad arguments or out-of-domain quantities
    """
    if not market.is_trading:
        raise InvalidStateTransition(
            f"market {market.market_id} is {market.status.value}, trading requires ACTIVE"
        )
    if not 0 <= slippage_bps <= BPS_DENOMINATOR:
        raise DomainError(f"slippage_bps must be in [0, {BPS_DENOMINATOR}]")

    side = Side(side)
    schedule = config.fee_schedule()

    if action == 'buy':
        if shares is None:
            if budget is None:
                raise DomainError("buy requires shares or budget")
            raw_budget = budget * BPS_DENOMINATOR // (BPS_DENOMINATOR + schedule.total_bps)
            shares = quote_for_budget(market.q_yes, market.q_no, market.b, side, raw_budget)
        quote = quote_buy(market.q_yes, market.q_no, market.b, side, shares, schedule)
        limit = {'max_cost': quote.net_amount * (BPS_DENOMINATOR + slippage_bps) // BPS_DENOMINATOR}
    elif action == 'sell':
        if shares is None:
            raise DomainError("sell requires shares")
        quote = quote_sell(market.q_yes, market.q_no, market.b, side, shares, schedule)
        limit = {'min_proceeds': quote.net_amount * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR}
    else:
        raise DomainError(f"unknown trade action {action}")

    data = {
        'market_id': market.market_id,
        'side': side.value,
        'action': action,
        'shares': shares,
        'expected_status': market.status.value,
    }
    data.update(limit)
    return Instruction(ix_type=EXECUTE_TRADE, sender=trader, data=data), quote
