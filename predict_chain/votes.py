"""
Off-chain vote aggregation.

Ballots are cheap and recorded here; only a threshold crossing turns into a
ledger commit. Every (market, kind) tally is guarded by its own lock, so
ballots for different markets never contend.
"""
import time
import logging
import threading
from typing import Callable, Optional

from predict_chain.config import MarketConfig
from predict_chain.core import AGGREGATE_VOTES, CommitIntent, VoteKind
from predict_chain.errors import DuplicateVoter, InvalidStateTransition
from predict_chain.lifecycle import share_bps
from predict_chain.market_state import MarketStatus

logger = logging.getLogger(__name__)


class VoteTally:
    """Counts for one (market, kind) plus the voters already counted."""

    def __init__(self, market_id: str, kind: VoteKind):
        self.market_id = market_id
        self.kind = kind
        self.affirmative = 0
        self.negative = 0
        self.voters = set()
        # bumped on every accepted ballot; identifies a snapshot
        self.epoch = 0
        self.emitted_epoch = None
        self.retired = False
        self.retired_at = None

    def snapshot(self) -> tuple[int, int, int]:
        return self.affirmative, self.negative, self.epoch

    def to_dict(self) -> dict:
        return {
            'market_id': self.market_id,
            'kind': self.kind.value,
            'affirmative': self.affirmative,
            'negative': self.negative,
            'voters': sorted(self.voters),
            'epoch': self.epoch,
            'emitted_epoch': self.emitted_epoch,
            'retired': self.retired,
            'retired_at': self.retired_at,
        }

    def __repr__(self) -> str:
        return (
            f"VoteTally({self.market_id}/{self.kind.value}: "
            f"{self.affirmative} for, {self.negative} against, epoch {self.epoch})"
        )


class VoteAggregator:
    def __init__(self, config: MarketConfig,
                 on_retire: Optional[Callable[[dict], None]] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            config: thresholds and the minimum proposal vote count
            on_retire: called with the tally dict when a tally is archived
            clock: time source
        """
        self.config = config
        self.on_retire = on_retire
        self.clock = clock
        # {(market_id, kind): VoteTally}
        self.tallies = {}
        self.archive = {}
        self._locks = {}
        # guards creation of tallies and their locks
        self._registry_lock = threading.Lock()
        self.stats = {
            'ballots_accepted': 0,
            'ballots_rejected': 0,
            'intents_emitted': 0,
        }
        # counters are shared by every tally, so they need their own lock
        self._stats_lock = threading.Lock()

    def _count(self, name: str):
        with self._stats_lock:
            self.stats[name] += 1

    def _get(self, market_id: str, kind: VoteKind, create: bool = False):
        key = (market_id, VoteKind(kind))
        with self._registry_lock:
            if key in self.archive:
                return self.archive[key], self._locks[key]
            if key not in self.tallies:
                if not create:
                    return None, None
                self.tallies[key] = VoteTally(market_id, key[1])
                self._locks[key] = threading.Lock()
            return self.tallies[key], self._locks[key]

    def submit_ballot(self, market_id: str, kind: VoteKind, voter: str, choice: bool) -> tuple[int, int]:
        """
        Count one ballot. Returns the (affirmative, negative) counts after it.

        Raises:
            DuplicateVoter: voter already counted in this tally
            InvalidStateTransition: the tally was already committed and retired
        """
        tally, lock = self._get(market_id, kind, create=True)
        with lock:
            if tally.retired:
                self._count('ballots_rejected')
                raise InvalidStateTransition(
                    f"voting closed for {market_id}/{tally.kind.value}"
                )
            if voter in tally.voters:
                self._count('ballots_rejected')
                raise DuplicateVoter(f"{voter} already voted on {market_id}/{tally.kind.value}")

            tally.voters.add(voter)
            if choice:
                tally.affirmative += 1
            else:
                tally.negative += 1
            tally.epoch += 1
            self._count('ballots_accepted')
            logger.debug(f"Ballot from {voter} on {tally}")
            return tally.affirmative, tally.negative

    def get_tally(self, market_id: str, kind: VoteKind) -> Optional[VoteTally]:
        tally, _ = self._get(market_id, kind)
        return tally

    def evaluate_threshold(self, market_id: str, kind: VoteKind) -> Optional[CommitIntent]:
        """
        Returns a commit intent if the tally has crossed its threshold and no
        intent was emitted yet for the current snapshot; otherwise None.

        New ballots after an emission move the snapshot forward, so the next
        crossing evaluation produces a newer intent that supersedes the old.
        """
        tally, lock = self._get(market_id, kind)
        if tally is None:
            return None
        with lock:
            if tally.retired or tally.emitted_epoch == tally.epoch:
                return None

            total = tally.affirmative + tally.negative
            if tally.kind == VoteKind.PROPOSAL:
                if total < self.config.min_proposal_votes:
                    return None
                threshold = self.config.proposal_approval_threshold_bps
                expected_status = MarketStatus.PROPOSED
            else:
                threshold = self.config.dispute_threshold_bps
                expected_status = MarketStatus.DISPUTED

            share = share_bps(tally.affirmative, tally.negative)
            if share < threshold:
                return None

            tally.emitted_epoch = tally.epoch
            self._count('intents_emitted')
            logger.info(
                f"{tally} crossed {threshold} bps with {share} bps, emitting commit intent"
            )
            return CommitIntent(
                intent_type=AGGREGATE_VOTES,
                market_id=market_id,
                kind=tally.kind.value,
                epoch=tally.epoch,
                payload={
                    'kind': tally.kind.value,
                    'affirmative': tally.affirmative,
                    'negative': tally.negative,
                    'epoch': tally.epoch,
                },
                expected_status=expected_status.value,
                created_at=self.clock(),
            )

    def evaluate_all(self) -> list[CommitIntent]:
        """Evaluate every live tally; used by the periodic scan."""
        with self._registry_lock:
            keys = list(self.tallies)
        intents = []
        for market_id, kind in keys:
            intent = self.evaluate_threshold(market_id, kind)
            if intent is not None:
                intents.append(intent)
        return intents

    def retire(self, market_id: str, kind: VoteKind) -> bool:
        """
        Archive a tally after its commit was acknowledged by the ledger.
        Returns False if there was no live tally.
        """
        key = (market_id, VoteKind(kind))
        with self._registry_lock:
            tally = self.tallies.pop(key, None)
            if tally is None:
                return False
            with self._locks[key]:
                tally.retired = True
                tally.retired_at = self.clock()
            self.archive[key] = tally
        logger.info(f"Retired {tally}")
        if self.on_retire:
            self.on_retire(tally.to_dict())
        return True
