"""
Reconciliation between off-chain state and the ledger.

One scan:
  1. mirrors new ledger events into the cache (deduplicated by tx ref)
     and acknowledges the commits they confirm,
  2. polls the ledger for markets whose dispute window or dispute vote
     has run out and queues their finalization,
  3. sweeps the vote aggregator for threshold crossings,
  4. submits due commits, retrying transient failures with exponential
     backoff and dead-lettering after the retry limit.

Scans never overlap: a scan that starts while another is running is
skipped.
"""
import time
import uuid
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Optional

from predict_chain.config import MarketConfig, ReconcilerConfig
from predict_chain.core import (
    MARKET_TRANSITIONED,
    TRANSITION_MARKET,
    VOTES_AGGREGATED,
    CommitIntent,
    LedgerEvent,
    VoteKind,
)
from predict_chain.db import MarketCache
from predict_chain.errors import LedgerTransientError, MarketError
from predict_chain.ledger import GENESIS_HASH, Ledger, verify_event_chain
from predict_chain.lifecycle import share_bps
from predict_chain.market_state import MarketStatus
from predict_chain.votes import VoteAggregator

logger = logging.getLogger(__name__)

FINALIZE_KIND = "finalize"


class CommitStatus(str, Enum):
    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    SUBMITTED = "SUBMITTED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    SUPERSEDED = "SUPERSEDED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


class PendingCommit:
    """A commit intent plus its delivery state."""

    def __init__(self, intent: CommitIntent, next_attempt_at: float):
        self.intent = intent
        self.status = CommitStatus.PENDING
        self.attempts = 0
        self.next_attempt_at = next_attempt_at
        self.tx_ref = None
        self.last_error = None

    def to_dict(self) -> dict:
        return {
            'intent': self.intent.to_dict(),
            'status': self.status.value,
            'attempts': self.attempts,
            'next_attempt_at': self.next_attempt_at,
            'tx_ref': self.tx_ref,
            'last_error': self.last_error,
        }

    def __repr__(self) -> str:
        return f"PendingCommit({self.intent.dedup_key}, {self.status.value}, attempts={self.attempts})"


@dataclass
class ScanSummary:
    run_id: str
    started_at: float
    finished_at: float = 0.0
    skipped: bool = False
    events_mirrored: int = 0
    duplicate_events: int = 0
    chain_errors: int = 0
    intents_emitted: int = 0
    submitted: int = 0
    acknowledged: int = 0
    retried: int = 0
    failed: int = 0
    dead_lettered: int = 0
    superseded: int = 0

    @property
    def duration(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['duration'] = self.duration
        return data


class Reconciler:
    def __init__(self, ledger: Ledger, aggregator: VoteAggregator, cache: MarketCache,
                 config: ReconcilerConfig, market_config: MarketConfig,
                 monitor=None, clock: Callable[[], float] = time.time,
                 sender: Optional[str] = None):
        self.ledger = ledger
        self.aggregator = aggregator
        self.cache = cache
        self.config = config
        self.market_config = market_config
        self.monitor = monitor
        self.clock = clock
        self.sender = sender or ledger.authority

        # {dedup_key: PendingCommit}
        self.pending = {}
        # {supersession_key: highest epoch queued}
        self.latest_epoch = {}
        # {supersession_key: epoch confirmed by a ledger event}
        self.acknowledged = {}
        self.dead_letters = {}
        self.failures = []

        self.cursor = cache.get_cursor()
        self.last_event_hash = None

        self._scan_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='ledger-submit')

    # ==========================================================================
    # QUEUE
    # ==========================================================================

    def backoff_delay(self, attempts: int) -> float:
        """Delay before retry number `attempts` (1-based)."""
        delay = self.config.retry_initial_delay * self.config.backoff_factor ** (attempts - 1)
        return min(delay, self.config.retry_max_delay)

    def enqueue(self, intent: CommitIntent) -> bool:
        """
        Queue an intent for submission. Returns False if it is already
        queued, already settled, or older than a queued intent for the same
        market and kind. A newer intent supersedes older queued ones.
        """
        key = intent.dedup_key
        group = intent.supersession_key
        with self._state_lock:
            if key in self.pending or key in self.dead_letters:
                return False
            if group in self.acknowledged:
                return False
            latest = self.latest_epoch.get(group)
            if latest is not None and intent.epoch < latest:
                return False

            for other in list(self.pending.values()):
                if other.intent.supersession_key == group:
                    other.status = CommitStatus.SUPERSEDED
                    del self.pending[other.intent.dedup_key]
                    logger.info(f"{other.intent.dedup_key} superseded by {key}")

            self.pending[key] = PendingCommit(intent, next_attempt_at=self.clock())
            self.latest_epoch[group] = intent.epoch
        logger.info(f"Queued {intent}")
        return True

    @property
    def pending_count(self) -> int:
        with self._state_lock:
            return len(self.pending)

    # ==========================================================================
    # SCAN
    # ==========================================================================

    def run_scan(self) -> ScanSummary:
        """Run one reconciliation pass, or skip if one is already running."""
        started = self.clock()
        run_id = uuid.uuid4().hex[:12]
        if not self._scan_lock.acquire(blocking=False):
            logger.warning(f"Scan {run_id} skipped: previous scan still running")
            summary = ScanSummary(run_id=run_id, started_at=started, finished_at=started, skipped=True)
            if self.monitor:
                self.monitor.record_scan(summary)
            return summary

        summary = ScanSummary(run_id=run_id, started_at=started)
        try:
            logger.info(f"Scan {run_id} started")
            self.consume_events(summary)
            self.scan_markets(summary)
            for intent in self.aggregator.evaluate_all():
                if self.enqueue(intent):
                    summary.intents_emitted += 1
            self.process_commits(summary)
            # pick up confirmations of what was just submitted
            self.consume_events(summary)
        finally:
            summary.finished_at = self.clock()
            self._scan_lock.release()

        logger.info(
            f"Scan {run_id} done in {summary.duration:.2f}s: "
            f"{summary.intents_emitted} intents, {summary.submitted} submitted, "
            f"{summary.acknowledged} acknowledged, {summary.retried} retried, "
            f"{summary.failed} failed, {summary.dead_lettered} dead-lettered"
        )
        if self.monitor:
            self.monitor.record_scan(summary)
            self.monitor.update(self)
        return summary

    def scan_markets(self, summary: ScanSummary):
        """Queue finalization for markets whose waiting period is over."""
        now = self.clock()

        for market in self.ledger.list_markets(MarketStatus.RESOLVING):
            if market.dispute_window_end is None or market.dispute_window_end > now:
                continue
            intent = CommitIntent(
                intent_type=TRANSITION_MARKET,
                market_id=market.market_id,
                kind=FINALIZE_KIND,
                epoch=market.resolution_proposed_at,
                payload={'target': MarketStatus.FINALIZED.value},
                expected_status=MarketStatus.RESOLVING.value,
                created_at=now,
            )
            if self.enqueue(intent):
                summary.intents_emitted += 1

        for market in self.ledger.list_markets(MarketStatus.DISPUTED):
            voting_end = (market.dispute_initiated_at or 0) + self.market_config.dispute_voting_seconds
            if voting_end > now:
                continue
            tally = self.aggregator.get_tally(market.market_id, VoteKind.DISPUTE)
            agree, disagree = (tally.affirmative, tally.negative) if tally else (0, 0)
            if share_bps(agree, disagree) >= self.market_config.dispute_threshold_bps:
                # the aggregator's own intent carries this one
                continue
            intent = CommitIntent(
                intent_type=TRANSITION_MARKET,
                market_id=market.market_id,
                kind=FINALIZE_KIND,
                epoch=market.dispute_initiated_at,
                payload={
                    'target': MarketStatus.FINALIZED.value,
                    'dispute_agree': agree,
                    'dispute_disagree': disagree,
                },
                expected_status=MarketStatus.DISPUTED.value,
                created_at=now,
            )
            if self.enqueue(intent):
                summary.intents_emitted += 1

    # ==========================================================================
    # EVENTS
    # ==========================================================================

    def _previous_hash(self) -> bytes:
        if self.last_event_hash is not None:
            return self.last_event_hash
        if self.cursor == 0:
            return GENESIS_HASH
        previous = self.ledger.events_since(self.cursor - 1, limit=1)
        return previous[0].hash if previous else GENESIS_HASH

    def consume_events(self, summary: ScanSummary):
        """Mirror every new ledger event into the cache."""
        while True:
            events = self.ledger.events_since(self.cursor, limit=self.config.event_page_size)
            if not events:
                return
            if not verify_event_chain(self._previous_hash(), events, self.ledger.verify_key):
                summary.chain_errors += 1
                logger.error(f"Ledger event chain failed verification at seq {self.cursor}")
                self.cache.record_failure(f"chain:{self.cursor}", {
                    'reason': 'event chain verification failed',
                    'cursor': self.cursor,
                    'at': self.clock(),
                })
                return

            for event in events:
                if self.cache.mirror_event(event):
                    summary.events_mirrored += 1
                else:
                    summary.duplicate_events += 1
                self._acknowledge(event, summary)
                self.cursor = event.seq + 1
                self.last_event_hash = event.hash

    def _acknowledge(self, event: LedgerEvent, summary: ScanSummary):
        with self._state_lock:
            commit = self.pending.pop(event.idempotency_key, None)
            if commit is not None:
                commit.status = CommitStatus.ACKNOWLEDGED
                commit.tx_ref = event.tx_ref
                summary.acknowledged += 1
                group = commit.intent.supersession_key
                self.acknowledged[group] = commit.intent.epoch
                for other in list(self.pending.values()):
                    if other.intent.supersession_key == group:
                        other.status = CommitStatus.SUPERSEDED
                        del self.pending[other.intent.dedup_key]
                        summary.superseded += 1
                logger.info(f"Acknowledged {commit.intent.dedup_key} in tx {event.tx_ref[:16]}")

        if event.event_type == VOTES_AGGREGATED:
            self.aggregator.retire(event.market_id, VoteKind(event.data['kind']))
        elif (event.event_type == MARKET_TRANSITIONED
              and event.data.get('from') == MarketStatus.DISPUTED.value):
            self.aggregator.retire(event.market_id, VoteKind.DISPUTE)

    # ==========================================================================
    # SUBMISSION
    # ==========================================================================

    def process_commits(self, summary: ScanSummary):
        """Submit up to batch_size commits whose retry time has come."""
        now = self.clock()
        with self._state_lock:
            due = [c for c in self.pending.values()
                   if c.status == CommitStatus.PENDING and c.next_attempt_at <= now]
            due.sort(key=lambda c: c.next_attempt_at)
            due = due[:self.config.batch_size]
            for commit in due:
                commit.status = CommitStatus.IN_FLIGHT

        done = 0
        try:
            for commit in due:
                self._submit(commit, summary)
                done += 1
        finally:
            # anything not yet submitted goes back to the queue
            with self._state_lock:
                for commit in due[done:]:
                    if commit.status == CommitStatus.IN_FLIGHT:
                        commit.status = CommitStatus.PENDING

    def _submit(self, commit: PendingCommit, summary: ScanSummary):
        ix = commit.intent.to_instruction(self.sender)
        commit.attempts += 1
        future = self._executor.submit(self.ledger.submit, ix)
        try:
            tx_ref = future.result(timeout=self.config.submit_timeout_seconds)
        except FuturesTimeout:
            error = LedgerTransientError(
                f"submission timed out after {self.config.submit_timeout_seconds}s"
            )
        except MarketError as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected error submitting {commit.intent.dedup_key}")
            error = LedgerTransientError(f"unexpected {e.__class__.__name__}: {e}")
        else:
            with self._state_lock:
                if commit.status == CommitStatus.IN_FLIGHT:
                    commit.status = CommitStatus.SUBMITTED
                    commit.tx_ref = tx_ref
            summary.submitted += 1
            if self.monitor:
                self.monitor.record_commit('submitted')
            logger.info(f"Submitted {commit.intent.dedup_key} as tx {tx_ref[:16]}")
            return

        self._handle_failure(commit, error, summary)

    def _handle_failure(self, commit: PendingCommit, error: MarketError, summary: ScanSummary):
        key = commit.intent.dedup_key
        commit.last_error = f"{error.__class__.__name__}: {error.reason}"
        status = None
        with self._state_lock:
            if (commit.status == CommitStatus.SUPERSEDED
                    or commit.intent.supersession_key in self.acknowledged):
                # a newer snapshot already settled this market/kind
                self.pending.pop(key, None)
                logger.info(f"Ignoring result of superseded {key}: {commit.last_error}")
                return

            if error.retryable and commit.attempts <= self.config.max_retries:
                delay = self.backoff_delay(commit.attempts)
                commit.status = CommitStatus.PENDING
                commit.next_attempt_at = self.clock() + delay
                summary.retried += 1
                status = 'retried'
                logger.warning(
                    f"Transient failure for {key} (attempt {commit.attempts}), "
                    f"retrying in {delay:.1f}s: {commit.last_error}"
                )
            elif error.retryable:
                commit.status = CommitStatus.DEAD_LETTER
                self.pending.pop(key, None)
                self.dead_letters[key] = commit
                summary.dead_lettered += 1
                status = 'dead_letter'
                logger.error(f"Dead-lettered {key} after {commit.attempts} attempts: {commit.last_error}")
            else:
                commit.status = CommitStatus.FAILED
                self.pending.pop(key, None)
                summary.failed += 1
                status = 'failed'
                logger.error(f"Permanent failure for {key}: {commit.last_error}")

        if self.monitor:
            self.monitor.record_commit(status)
        if status in ('dead_letter', 'failed'):
            record = commit.to_dict()
            record['at'] = self.clock()
            self.failures.append(record)
            self.cache.record_failure(key, record)

    def close(self):
        self._executor.shutdown(wait=False)
