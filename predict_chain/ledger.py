"""
In-process reference ledger.

Plays the role of the on-ledger market program: it owns market and
position state, applies one instruction at a time under a single writer
lock, and commits the new state together with a hash-chained, signed
event in one atomic batch. Anything that raises before the batch is
written leaves storage untouched.
"""
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import nacl.signing
import plyvel

from predict_chain import lifecycle
from predict_chain.config import MarketConfig
from predict_chain.core import (
    AGGREGATE_VOTES,
    CLAIM_WINNINGS,
    CREATE_MARKET,
    EXECUTE_TRADE,
    LIQUIDITY_WITHDRAWN,
    MARKET_CREATED,
    MARKET_TRANSITIONED,
    TRADE_EXECUTED,
    TRANSITION_MARKET,
    VOTES_AGGREGATED,
    WINNINGS_CLAIMED,
    WITHDRAW_LIQUIDITY,
    Instruction,
    LedgerEvent,
    VoteKind,
)
from predict_chain.crypto import generate_authority_keypair, generate_hash, sign, verify_signature
from predict_chain.db import DB, pack, unpack
from predict_chain.errors import (
    DomainError,
    InsufficientLiquidity,
    InsufficientShares,
    InvalidStateTransition,
    LedgerPermanentError,
    LedgerTransientError,
    MarketNotFound,
    NumericalInvariantError,
    SlippageExceeded,
    StaleCommitIntent,
    Unauthorized,
)
from predict_chain.lmsr import BPS_DENOMINATOR, MAX_B, Side, quote_buy, quote_for_budget, quote_sell
from predict_chain.market_state import MarketState, MarketStatus, Outcome, Position

logger = logging.getLogger(__name__)

# ==============================================================================
# STORAGE LAYOUT
# ==============================================================================

MARKET_PREFIX = b'market:'
POSITION_PREFIX = b'position:'
EVENT_PREFIX = b'event:'
IDEMPOTENCY_PREFIX = b'idem:'
HEAD_KEY = b'meta:head'
PAUSED_KEY = b'meta:paused'

GENESIS_HASH = b'\x00' * 32
DEFAULT_AUTHORITY = "backend-authority"


def _market_key(market_id: str) -> bytes:
    return MARKET_PREFIX + market_id.encode()


def _position_key(market_id: str, owner: str) -> bytes:
    return POSITION_PREFIX + f"{market_id}:{owner}".encode()


def _event_key(seq: int) -> bytes:
    return EVENT_PREFIX + f"{seq:016d}".encode()


class Ledger:
    """Single-writer authoritative store for markets, positions and events."""

    def __init__(self, db: DB, config: MarketConfig,
                 signing_key: Optional[nacl.signing.SigningKey] = None,
                 authority: str = DEFAULT_AUTHORITY,
                 clock: Callable[[], float] = time.time):
        self.db = db
        self.config = config
        self.authority = authority
        self.clock = clock
        if signing_key is None:
            signing_key, _ = generate_authority_keypair()
        self.signing_key = signing_key
        self.lock = threading.Lock()

        head = self.db.get(HEAD_KEY)
        if head is None:
            self.next_seq, self.last_hash = 0, GENESIS_HASH
        else:
            stored = unpack(head)
            self.next_seq, self.last_hash = stored['next_seq'], stored['last_hash']

        self._handlers = {
            CREATE_MARKET: self._create_market,
            EXECUTE_TRADE: self._execute_trade,
            AGGREGATE_VOTES: self._aggregate_votes,
            TRANSITION_MARKET: self._transition_market,
            CLAIM_WINNINGS: self._claim_winnings,
            WITHDRAW_LIQUIDITY: self._withdraw_liquidity,
        }

    @property
    def verify_key(self) -> nacl.signing.VerifyKey:
        return self.signing_key.verify_key

    # ==========================================================================
    # SUBMISSION
    # ==========================================================================

    def submit(self, ix: Instruction) -> str:
        """
        Apply one instruction atomically and return its transaction reference.

        Resubmitting an instruction with an already-committed idempotency key
        returns the original reference without applying it again.

        Raises:
            LedgerPermanentError: malformed instruction
            LedgerTransientError: ledger paused or storage unavailable
            MarketError subclasses: the specific reason a valid instruction
                was rejected (state guard, arithmetic, slippage, ...)
        """
        is_valid, error = ix.validate_basic()
        if not is_valid:
            raise LedgerPermanentError(f"Validation failed: {error}")

        with self.lock:
            try:
                existing = self.db.get(IDEMPOTENCY_PREFIX + ix.idempotency_key.encode())
                if existing is not None:
                    logger.debug(f"Replay of {ix.idempotency_key}, returning original tx")
                    return existing.decode()

                if self.is_paused():
                    raise LedgerTransientError("ledger is paused")

                now = int(self.clock())
                handler = self._handlers[ix.ix_type]
                event_type, market, positions, data = handler(ix, now)
                return self._commit(ix, now, event_type, market, positions, data)
            except plyvel.Error as e:
                raise LedgerTransientError(f"storage error: {e}") from e

    def _commit(self, ix: Instruction, now: int, event_type: str, market: MarketState,
                positions: list[Position], data: dict) -> str:
        seq = self.next_seq
        tx_ref = generate_hash(ix.id + seq.to_bytes(8, 'big')).hex()

        data['market'] = market.to_dict()
        event = LedgerEvent(
            seq=seq,
            tx_ref=tx_ref,
            event_type=event_type,
            market_id=market.market_id,
            data=data,
            timestamp=now,
            idempotency_key=ix.idempotency_key,
            prev_hash=self.last_hash,
        )
        event.signature = sign(self.signing_key, event.hash)

        with self.db.write_batch() as batch:
            batch.put(_market_key(market.market_id), pack(market.to_dict()))
            for position in positions:
                batch.put(_position_key(position.market_id, position.owner), pack(position.to_dict()))
            batch.put(_event_key(seq), pack(event.to_dict()))
            batch.put(IDEMPOTENCY_PREFIX + ix.idempotency_key.encode(), tx_ref.encode())
            batch.put(HEAD_KEY, pack({'next_seq': seq + 1, 'last_hash': event.hash}))

        self.next_seq = seq + 1
        self.last_hash = event.hash
        detail = f", YES at {market.display_price_yes}" if event_type == TRADE_EXECUTED else ""
        logger.info(f"Committed {event_type} #{seq} for market {market.market_id}{detail} (tx {tx_ref[:16]})")
        return tx_ref

    # ==========================================================================
    # INSTRUCTION HANDLERS
    # ==========================================================================

    def _load_for_update(self, ix: Instruction) -> MarketState:
        market_id = ix.data['market_id']
        market = self.get_market(market_id)
        if market is None:
            raise MarketNotFound(f"market {market_id} does not exist")
        expected = ix.data.get('expected_status')
        if expected is not None and market.status.value != expected:
            raise StaleCommitIntent(
                f"market {market_id} is {market.status.value}, intent expected {expected}"
            )
        return market

    def _require_authority(self, ix: Instruction):
        if ix.sender != self.authority:
            raise Unauthorized(f"{ix.ix_type} requires the backend authority, got {ix.sender}")

    def _create_market(self, ix: Instruction, now: int):
        market_id = ix.data['market_id']
        if self.get_market(market_id) is not None:
            raise LedgerPermanentError(f"market {market_id} already exists")
        b = ix.data['b']
        if not self.config.min_liquidity_parameter <= b <= MAX_B:
            raise DomainError(
                f"liquidity parameter {b} outside [{self.config.min_liquidity_parameter}, {MAX_B}]"
            )
        market = MarketState({
            'market_id': market_id,
            'creator': ix.sender,
            'b': b,
            'created_at': now,
        })
        return MARKET_CREATED, market, [], {'creator': ix.sender}

    def _execute_trade(self, ix: Instruction, now: int):
        market = self._load_for_update(ix)
        if not market.is_trading:
            raise InvalidStateTransition(
                f"market {market.market_id} is {market.status.value}, trading requires ACTIVE"
            )
        side = Side(ix.data['side'])
        schedule = self.config.fee_schedule()
        position = self.get_position(market.market_id, ix.sender) or Position({
            'market_id': market.market_id,
            'owner': ix.sender,
        })

        if ix.data['action'] == 'buy':
            shares = ix.data.get('shares')
            if shares is None:
                # budget includes fees; search on the pre-fee amount
                raw_budget = ix.data['budget'] * BPS_DENOMINATOR // (BPS_DENOMINATOR + schedule.total_bps)
                shares = quote_for_budget(market.q_yes, market.q_no, market.b, side, raw_budget)
            quote = quote_buy(market.q_yes, market.q_no, market.b, side, shares, schedule)
            max_cost = ix.data.get('max_cost')
            if max_cost is not None and quote.net_amount > max_cost:
                raise SlippageExceeded(f"cost {quote.net_amount} exceeds max_cost {max_cost}")
            position.add_shares(side, shares)
            position.total_cost += quote.net_amount
            market.liquidity += quote.raw_amount
        else:
            shares = ix.data['shares']
            held = position.shares(side)
            if shares > held:
                raise InsufficientShares(
                    f"{ix.sender} holds {held} {side.value} shares, cannot sell {shares}"
                )
            quote = quote_sell(market.q_yes, market.q_no, market.b, side, shares, schedule)
            min_proceeds = ix.data.get('min_proceeds')
            if min_proceeds is not None and quote.net_amount < min_proceeds:
                raise SlippageExceeded(f"proceeds {quote.net_amount} below min_proceeds {min_proceeds}")
            position.add_shares(side, -shares)
            market.liquidity -= quote.raw_amount

        market.q_yes = quote.new_q_yes
        market.q_no = quote.new_q_no
        market.total_volume += quote.raw_amount
        market.fees_protocol += quote.fees.protocol
        market.fees_resolver += quote.fees.resolver
        market.fees_lp += quote.fees.lp

        trade = quote.to_dict()
        trade['trader'] = ix.sender
        trade['timestamp'] = now
        return TRADE_EXECUTED, market, [position], {'trade': trade}

    def _aggregate_votes(self, ix: Instruction, now: int):
        self._require_authority(ix)
        market = self._load_for_update(ix)
        kind = VoteKind(ix.data['kind'])
        affirmative, negative = ix.data['affirmative'], ix.data['negative']

        if kind == VoteKind.PROPOSAL:
            if market.status != MarketStatus.PROPOSED:
                raise StaleCommitIntent(f"market {market.market_id} is no longer PROPOSED")
            lifecycle.approve(market, affirmative, negative, self.config, now)
        else:
            if market.status != MarketStatus.DISPUTED:
                raise StaleCommitIntent(f"market {market.market_id} is not DISPUTED")
            lifecycle.finalize(market, self.config, now, affirmative, negative)

        return VOTES_AGGREGATED, market, [], {
            'kind': kind.value,
            'affirmative': affirmative,
            'negative': negative,
            'epoch': ix.data['epoch'],
        }

    def _transition_market(self, ix: Instruction, now: int):
        market = self._load_for_update(ix)
        previous = market.status
        target = MarketStatus(ix.data['target'])

        if target == MarketStatus.ACTIVE:
            self._require_authority(ix)
            lifecycle.activate(market, ix.data['liquidity'], now)
        elif target == MarketStatus.RESOLVING:
            lifecycle.propose_resolution(market, Outcome(ix.data['outcome']), ix.sender, self.config, now)
        elif target == MarketStatus.DISPUTED:
            lifecycle.initiate_dispute(market, now)
        else:
            if previous == MarketStatus.DISPUTED:
                # dispute counts come from the aggregator, not the caller
                self._require_authority(ix)
            lifecycle.finalize(
                market, self.config, now,
                ix.data.get('dispute_agree'), ix.data.get('dispute_disagree'),
            )

        return MARKET_TRANSITIONED, market, [], {
            'from': previous.value,
            'to': market.status.value,
        }

    def _claim_winnings(self, ix: Instruction, now: int):
        market = self._load_for_update(ix)
        if market.status != MarketStatus.FINALIZED:
            raise InvalidStateTransition(f"market {market.market_id} is not finalized")
        position = self.get_position(market.market_id, ix.sender)
        if position is None or position.claimed:
            raise InsufficientShares(f"{ix.sender} has nothing to claim in {market.market_id}")

        payout = position.payout(market.final_outcome)
        if payout > market.liquidity:
            raise NumericalInvariantError(
                f"payout {payout} exceeds market liquidity {market.liquidity}"
            )
        position.claimed = True
        market.liquidity -= payout
        market.total_paid_out += payout
        return WINNINGS_CLAIMED, market, [position], {
            'owner': ix.sender,
            'payout': payout,
            'outcome': market.final_outcome.value,
        }

    def _withdraw_liquidity(self, ix: Instruction, now: int):
        market = self._load_for_update(ix)
        if ix.sender != market.creator:
            raise Unauthorized(f"only creator {market.creator} may withdraw from {market.market_id}")
        if market.status != MarketStatus.FINALIZED:
            raise InvalidStateTransition(f"market {market.market_id} is not finalized")

        reserved = min(market.unclaimed_payouts, market.liquidity)
        released = market.liquidity - reserved
        amount = released + market.fees_lp
        if amount <= 0:
            raise InsufficientLiquidity(f"nothing to withdraw from {market.market_id}")

        lp_fees = market.fees_lp
        market.liquidity = reserved
        market.fees_lp = 0
        market.total_withdrawn += amount
        return LIQUIDITY_WITHDRAWN, market, [], {
            'creator': ix.sender,
            'amount': amount,
            'liquidity': released,
            'lp_fees': lp_fees,
            'reserved': reserved,
            'timestamp': now,
        }

    # ==========================================================================
    # ADMIN
    # ==========================================================================

    def is_paused(self) -> bool:
        raw = self.db.get(PAUSED_KEY)
        return bool(unpack(raw)) if raw is not None else False

    def set_paused(self, paused: bool, sender: str):
        """Emergency pause: while set, every submission fails as transient."""
        if sender != self.authority:
            raise Unauthorized(f"pause requires the backend authority, got {sender}")
        with self.lock:
            self.db.put(PAUSED_KEY, pack(paused))
        logger.warning(f"Ledger {'paused' if paused else 'unpaused'} by {sender}")

    # ==========================================================================
    # READS
    # ==========================================================================

    def get_market(self, market_id: str) -> Optional[MarketState]:
        raw = self.db.get(_market_key(market_id))
        return MarketState(unpack(raw)) if raw is not None else None

    def list_markets(self, status: Optional[MarketStatus] = None) -> list[MarketState]:
        markets = [MarketState(unpack(value)) for _, value in self.db.get_prefix(MARKET_PREFIX)]
        if status is not None:
            markets = [m for m in markets if m.status == status]
        return markets

    def get_position(self, market_id: str, owner: str) -> Optional[Position]:
        raw = self.db.get(_position_key(market_id, owner))
        return Position(unpack(raw)) if raw is not None else None

    def events_since(self, cursor: int, limit: int = 500) -> list[LedgerEvent]:
        """Events with seq >= cursor, in commit order."""
        events = []
        for _, value in self.db.iterator(start=_event_key(cursor), stop=EVENT_PREFIX + b'\xff'):
            events.append(LedgerEvent.from_dict(unpack(value)))
            if len(events) >= limit:
                break
        return events

    def verify_chain(self) -> bool:
        """Verify the full stored event log against this ledger's key."""
        return verify_event_chain(GENESIS_HASH, self.events_since(0, limit=self.next_seq or 1),
                                  self.verify_key)


# --- For parallel verification ---
def verify_event(prev_hash: bytes, event: LedgerEvent, verify_key: nacl.signing.VerifyKey) -> bool:
    if event.prev_hash != prev_hash:
        return False
    if event.compute_hash() != event.hash:
        return False
    return event.signature is not None and verify_signature(verify_key, event.signature, event.hash)


def verify_event_chain(initial_hash: bytes, events: list[LedgerEvent],
                       verify_key: nacl.signing.VerifyKey) -> bool:
    """Verify that events link from initial_hash and are each signed."""
    if not events:
        return True
    prev_hashes = [initial_hash] + [e.hash for e in events[:-1]]
    with ThreadPoolExecutor() as executor:
        results = list(executor.map(verify_event, prev_hashes, events, [verify_key] * len(events)))
    return all(results)
