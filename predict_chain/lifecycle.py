"""
Guarded lifecycle transitions.

Each function checks one transition's guard against a MarketState and
mutates it in place. The ledger calls these on a decoded copy and only
persists the copy if no error was raised, so a failed guard never leaves
partial state behind.
"""
import logging
from typing import Optional

from predict_chain.config import MarketConfig
from predict_chain.errors import InvalidStateTransition
from predict_chain.lmsr import BPS_DENOMINATOR, max_loss
from predict_chain.market_state import MarketState, MarketStatus, Outcome

logger = logging.getLogger(__name__)


def share_bps(affirmative: int, negative: int) -> int:
    """Affirmative share of all ballots in basis points (0 when no ballots)."""
    total = affirmative + negative
    if total == 0:
        return 0
    return affirmative * BPS_DENOMINATOR // total


def _require_edge(market: MarketState, target: MarketStatus):
    if not market.can_transition_to(target):
        raise InvalidStateTransition(
            f"market {market.market_id}: {market.status.value} -> {target.value} not allowed"
        )


def approve(market: MarketState, likes: int, dislikes: int,
            config: MarketConfig, now: int):
    """PROPOSED -> APPROVED once the like share reaches the approval threshold."""
    _require_edge(market, MarketStatus.APPROVED)
    approval = share_bps(likes, dislikes)
    if approval < config.proposal_approval_threshold_bps:
        raise InvalidStateTransition(
            f"market {market.market_id}: approval {approval} bps below "
            f"{config.proposal_approval_threshold_bps} bps"
        )
    market.proposal_likes = likes
    market.proposal_dislikes = dislikes
    market.approved_at = now
    market.transition_to(MarketStatus.APPROVED)


def activate(market: MarketState, seeded_liquidity: int, now: int):
    """
    APPROVED -> ACTIVE. The caller has already checked the authority; the
    seeded liquidity must cover the market's bounded loss b * ln(2).
    """
    _require_edge(market, MarketStatus.ACTIVE)
    required = max_loss(market.b)
    if seeded_liquidity < required:
        raise InvalidStateTransition(
            f"market {market.market_id}: seeded liquidity {seeded_liquidity} "
            f"below bounded loss {required}"
        )
    market.liquidity += seeded_liquidity
    market.activated_at = now
    market.transition_to(MarketStatus.ACTIVE)


def propose_resolution(market: MarketState, outcome: Outcome, resolver: str,
                       config: MarketConfig, now: int):
    """ACTIVE -> RESOLVING; opens the dispute window."""
    _require_edge(market, MarketStatus.RESOLVING)
    earliest = (market.activated_at or 0) + config.min_trading_seconds
    if now < earliest:
        raise InvalidStateTransition(
            f"market {market.market_id}: resolution not allowed before {earliest}"
        )
    market.proposed_outcome = Outcome(outcome)
    market.resolver = resolver
    market.resolution_proposed_at = now
    market.dispute_window_end = now + config.dispute_window_seconds
    market.transition_to(MarketStatus.RESOLVING)


def initiate_dispute(market: MarketState, now: int):
    """RESOLVING -> DISPUTED, only while the dispute window is open."""
    _require_edge(market, MarketStatus.DISPUTED)
    if now >= market.dispute_window_end:
        raise InvalidStateTransition(
            f"market {market.market_id}: dispute window closed at {market.dispute_window_end}"
        )
    market.dispute_initiated_at = now
    market.was_disputed = True
    market.transition_to(MarketStatus.DISPUTED)


def finalize(market: MarketState, config: MarketConfig, now: int,
             dispute_agree: Optional[int] = None,
             dispute_disagree: Optional[int] = None) -> Outcome:
    """
    RESOLVING or DISPUTED -> FINALIZED.

    Undisputed: allowed once the dispute window has elapsed; the proposed
    outcome stands. Disputed: if the agree share reaches the dispute
    threshold the outcome is flipped; otherwise the proposed outcome stands,
    but only after the dispute voting period has elapsed.

    Returns:
        The final outcome
    """
    _require_edge(market, MarketStatus.FINALIZED)

    if market.status == MarketStatus.RESOLVING:
        if now < market.dispute_window_end:
            raise InvalidStateTransition(
                f"market {market.market_id}: dispute window open until {market.dispute_window_end}"
            )
        final = market.proposed_outcome
    else:
        agree = dispute_agree or 0
        disagree = dispute_disagree or 0
        if share_bps(agree, disagree) >= config.dispute_threshold_bps:
            final = market.proposed_outcome.flipped()
            logger.info(
                f"Market {market.market_id}: dispute succeeded ({agree}/{agree + disagree}), "
                f"outcome {market.proposed_outcome.value} -> {final.value}"
            )
        else:
            voting_end = (market.dispute_initiated_at or 0) + config.dispute_voting_seconds
            if now < voting_end:
                raise InvalidStateTransition(
                    f"market {market.market_id}: dispute vote below threshold and "
                    f"voting open until {voting_end}"
                )
            final = market.proposed_outcome
        market.dispute_agree = agree
        market.dispute_disagree = disagree

    market.final_outcome = final
    market.finalized_at = now
    market.transition_to(MarketStatus.FINALIZED)
    return final
