"""
Market and position state stored by the ledger.

A market moves forward only:

    PROPOSED -> APPROVED -> ACTIVE -> RESOLVING -> FINALIZED
                                          |
                                          +-> DISPUTED -> FINALIZED
"""
from decimal import Decimal
from enum import Enum
from typing import Optional

from predict_chain.errors import InvalidStateTransition
from predict_chain.fixed_point import to_decimal
from predict_chain.lmsr import Side, max_loss, price


class MarketStatus(str, Enum):
    PROPOSED = "PROPOSED"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    RESOLVING = "RESOLVING"
    DISPUTED = "DISPUTED"
    FINALIZED = "FINALIZED"


class Outcome(str, Enum):
    YES = "YES"
    NO = "NO"
    INVALID = "INVALID"

    def flipped(self) -> 'Outcome':
        """Opposite outcome; INVALID has no opposite."""
        if self == Outcome.YES:
            return Outcome.NO
        if self == Outcome.NO:
            return Outcome.YES
        return Outcome.INVALID


VALID_TRANSITIONS = {
    MarketStatus.PROPOSED: {MarketStatus.APPROVED},
    MarketStatus.APPROVED: {MarketStatus.ACTIVE},
    MarketStatus.ACTIVE: {MarketStatus.RESOLVING},
    MarketStatus.RESOLVING: {MarketStatus.DISPUTED, MarketStatus.FINALIZED},
    MarketStatus.DISPUTED: {MarketStatus.FINALIZED},
    MarketStatus.FINALIZED: set(),
}


def _optional_outcome(value) -> Optional[Outcome]:
    return Outcome(value) if value is not None else None


class MarketState:
    """
    A binary market as stored on the ledger.

    Quantities (q_yes, q_no, b, liquidity, fee counters) are fixed-point
    integers. Timestamps are integer unix seconds, or None until the
    corresponding transition happens.
    """

    def __init__(self, data: dict):
        """
        Initialize market state.

        Args:
            data: Dict as produced by to_dict(); market_id and b are required
        """
        self.market_id = data['market_id']
        self.creator = data.get('creator', '')
        self.status = MarketStatus(data.get('status', MarketStatus.PROPOSED.value))
        self.b = int(data['b'])
        self.q_yes = int(data.get('q_yes', 0))
        self.q_no = int(data.get('q_no', 0))
        self.liquidity = int(data.get('liquidity', 0))

        self.created_at = data.get('created_at')
        self.approved_at = data.get('approved_at')
        self.activated_at = data.get('activated_at')
        self.resolution_proposed_at = data.get('resolution_proposed_at')
        self.dispute_window_end = data.get('dispute_window_end')
        self.dispute_initiated_at = data.get('dispute_initiated_at')
        self.finalized_at = data.get('finalized_at')

        self.resolver = data.get('resolver')
        self.proposed_outcome = _optional_outcome(data.get('proposed_outcome'))
        self.final_outcome = _optional_outcome(data.get('final_outcome'))
        self.was_disputed = bool(data.get('was_disputed', False))

        self.proposal_likes = int(data.get('proposal_likes', 0))
        self.proposal_dislikes = int(data.get('proposal_dislikes', 0))
        self.dispute_agree = int(data.get('dispute_agree', 0))
        self.dispute_disagree = int(data.get('dispute_disagree', 0))

        self.total_volume = int(data.get('total_volume', 0))
        self.fees_protocol = int(data.get('fees_protocol', 0))
        self.fees_resolver = int(data.get('fees_resolver', 0))
        self.fees_lp = int(data.get('fees_lp', 0))
        self.total_paid_out = int(data.get('total_paid_out', 0))
        self.total_withdrawn = int(data.get('total_withdrawn', 0))

    def to_dict(self) -> dict:
        """
        Convert to dict for storage.
        """
        return {
            'market_id': self.market_id,
            'creator': self.creator,
            'status': self.status.value,
            'b': self.b,
            'q_yes': self.q_yes,
            'q_no': self.q_no,
            'liquidity': self.liquidity,
            'created_at': self.created_at,
            'approved_at': self.approved_at,
            'activated_at': self.activated_at,
            'resolution_proposed_at': self.resolution_proposed_at,
            'dispute_window_end': self.dispute_window_end,
            'dispute_initiated_at': self.dispute_initiated_at,
            'finalized_at': self.finalized_at,
            'resolver': self.resolver,
            'proposed_outcome': self.proposed_outcome.value if self.proposed_outcome else None,
            'final_outcome': self.final_outcome.value if self.final_outcome else None,
            'was_disputed': self.was_disputed,
            'proposal_likes': self.proposal_likes,
            'proposal_dislikes': self.proposal_dislikes,
            'dispute_agree': self.dispute_agree,
            'dispute_disagree': self.dispute_disagree,
            'total_volume': self.total_volume,
            'fees_protocol': self.fees_protocol,
            'fees_resolver': self.fees_resolver,
            'fees_lp': self.fees_lp,
            'total_paid_out': self.total_paid_out,
            'total_withdrawn': self.total_withdrawn,
        }

    @property
    def price_yes(self) -> int:
        return price(self.q_yes, self.q_no, self.b, Side.YES)

    @property
    def price_no(self) -> int:
        return price(self.q_yes, self.q_no, self.b, Side.NO)

    @property
    def display_price_yes(self) -> Decimal:
        """YES price as a Decimal probability, for logs and display."""
        return to_decimal(self.price_yes)

    @property
    def max_loss(self) -> int:
        """Worst-case loss the seeded liquidity must cover."""
        return max_loss(self.b)

    @property
    def unclaimed_payouts(self) -> int:
        """
        Upper bound on winnings still owed after finalization. Every
        outstanding share belongs to some position, so the winning side's
        quantity (half of both sides for INVALID) covers all claims.
        """
        if self.final_outcome is None:
            return 0
        if self.final_outcome == Outcome.YES:
            owed = self.q_yes
        elif self.final_outcome == Outcome.NO:
            owed = self.q_no
        else:
            owed = (self.q_yes + self.q_no) // 2
        return max(owed - self.total_paid_out, 0)

    @property
    def is_trading(self) -> bool:
        return self.status == MarketStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status == MarketStatus.FINALIZED

    def can_transition_to(self, target: MarketStatus) -> bool:
        return target in VALID_TRANSITIONS[self.status]

    def transition_to(self, target: MarketStatus):
        """
        Move to `target` if the edge exists. Guards beyond the edge itself
        are checked by the lifecycle module.

        Raises:
            InvalidStateTransition: if target is not a successor of status
        """
        if not self.can_transition_to(target):
            raise InvalidStateTransition(
                f"market {self.market_id}: {self.status.value} -> {target.value} not allowed"
            )
        self.status = target

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"MarketState("
            f"id={self.market_id}, "
            f"status={self.status.value}, "
            f"q_yes={self.q_yes}, "
            f"q_no={self.q_no}, "
            f"b={self.b})"
        )


class Position:
    """One owner's shares in one market."""

    def __init__(self, data: dict):
        self.market_id = data['market_id']
        self.owner = data['owner']
        self.shares_yes = int(data.get('shares_yes', 0))
        self.shares_no = int(data.get('shares_no', 0))
        self.total_cost = int(data.get('total_cost', 0))
        self.claimed = bool(data.get('claimed', False))

    def to_dict(self) -> dict:
        return {
            'market_id': self.market_id,
            'owner': self.owner,
            'shares_yes': self.shares_yes,
            'shares_no': self.shares_no,
            'total_cost': self.total_cost,
            'claimed': self.claimed,
        }

    def shares(self, side: Side) -> int:
        return self.shares_yes if side == Side.YES else self.shares_no

    def add_shares(self, side: Side, amount: int):
        if side == Side.YES:
            self.shares_yes += amount
        else:
            self.shares_no += amount

    def payout(self, outcome: Outcome) -> int:
        """
        Amount owed for a final outcome. A winning share pays one unit;
        INVALID refunds half a unit per share on either side.
        """
        if outcome == Outcome.YES:
            return self.shares_yes
        if outcome == Outcome.NO:
            return self.shares_no
        return (self.shares_yes + self.shares_no) // 2

    def __repr__(self) -> str:
        return (
            f"Position(market={self.market_id}, owner={self.owner}, "
            f"yes={self.shares_yes}, no={self.shares_no}, claimed={self.claimed})"
        )
