"""
Core data structures: ledger instructions, commit intents and ledger events.
"""
import time
import msgpack
from enum import Enum
from typing import Optional

from predict_chain.crypto import generate_hash

# Instruction types
CREATE_MARKET      = "CREATE_MARKET"
EXECUTE_TRADE      = "EXECUTE_TRADE"
AGGREGATE_VOTES    = "AGGREGATE_VOTES"
TRANSITION_MARKET  = "TRANSITION_MARKET"
CLAIM_WINNINGS     = "CLAIM_WINNINGS"
WITHDRAW_LIQUIDITY = "WITHDRAW_LIQUIDITY"

INSTRUCTION_TYPES = {
    CREATE_MARKET, EXECUTE_TRADE, AGGREGATE_VOTES, TRANSITION_MARKET, CLAIM_WINNINGS, WITHDRAW_LIQUIDITY,
}

# Event types
MARKET_CREATED      = "MARKET_CREATED"
TRADE_EXECUTED      = "TRADE_EXECUTED"
VOTES_AGGREGATED    = "VOTES_AGGREGATED"
MARKET_TRANSITIONED = "MARKET_TRANSITIONED"
WINNINGS_CLAIMED    = "WINNINGS_CLAIMED"
LIQUIDITY_WITHDRAWN = "LIQUIDITY_WITHDRAWN"

TRANSITION_TARGETS = {"ACTIVE", "RESOLVING", "DISPUTED", "FINALIZED"}
OUTCOMES = {"YES", "NO", "INVALID"}


class VoteKind(str, Enum):
    PROPOSAL = "proposal"
    DISPUTE = "dispute"


def _is_amount(value, allow_zero: bool = False) -> bool:
    if not isinstance(value, int) or isinstance(value, bool):
        return False
    return value >= 0 if allow_zero else value > 0


class Instruction:
    """A request to mutate ledger state."""

    def __init__(self,
                 ix_type: str,
                 sender: str,
                 data: dict,
                 idempotency_key: Optional[str] = None,
                 timestamp: Optional[float] = None):
        self.ix_type = ix_type
        self.sender = sender
        self.data = data
        self.timestamp = timestamp or time.time()
        self.idempotency_key = idempotency_key or self.id.hex()

    def to_dict(self, include_key: bool = True) -> dict:
        data = {
            "ix_type": self.ix_type,
            "sender": self.sender,
            "data": self.data,
            "timestamp": self.timestamp,
        }
        if include_key:
            data["idempotency_key"] = self.idempotency_key
        return data

    def get_signing_data(self) -> bytes:
        """Returns the canonical byte representation of the instruction."""
        return msgpack.packb(self.to_dict(include_key=False), use_bin_type=True)

    @property
    def id(self) -> bytes:
        """The unique hash identifier of the instruction."""
        return generate_hash(self.get_signing_data())

    def validate_basic(self) -> tuple[bool, str]:
        """
        Performs shape checks that need no ledger state.
        Returns (is_valid, error_message)
        """
        if self.ix_type not in INSTRUCTION_TYPES:
            return False, f"Unknown instruction type {self.ix_type}"
        if not self.sender:
            return False, "Missing sender"
        if not isinstance(self.data.get('market_id'), str) or not self.data['market_id']:
            return False, f"{self.ix_type} requires 'market_id'"

        if self.ix_type == CREATE_MARKET:
            if not _is_amount(self.data.get('b')):
                return False, "CREATE_MARKET requires a positive integer 'b'"

        elif self.ix_type == EXECUTE_TRADE:
            if self.data.get('side') not in ('YES', 'NO'):
                return False, "EXECUTE_TRADE 'side' must be YES or NO"
            action = self.data.get('action')
            if action not in ('buy', 'sell'):
                return False, "EXECUTE_TRADE 'action' must be buy or sell"
            if 'shares' in self.data:
                if not _is_amount(self.data['shares']):
                    return False, "Trade shares must be a positive integer"
            elif action == 'buy' and 'budget' in self.data:
                if not _is_amount(self.data['budget']):
                    return False, "Trade budget must be a positive integer"
            else:
                return False, "EXECUTE_TRADE requires 'shares' (or 'budget' for buys)"
            for limit in ('max_cost', 'min_proceeds'):
                if limit in self.data and not _is_amount(self.data[limit], allow_zero=True):
                    return False, f"'{limit}' must be a non-negative integer"

        elif self.ix_type == AGGREGATE_VOTES:
            if self.data.get('kind') not in (VoteKind.PROPOSAL.value, VoteKind.DISPUTE.value):
                return False, "AGGREGATE_VOTES 'kind' must be proposal or dispute"
            for count in ('affirmative', 'negative', 'epoch'):
                if not _is_amount(self.data.get(count), allow_zero=True):
                    return False, f"AGGREGATE_VOTES requires non-negative integer '{count}'"

        elif self.ix_type == TRANSITION_MARKET:
            target = self.data.get('target')
            if target not in TRANSITION_TARGETS:
                return False, f"Unsupported transition target {target}"
            if target == 'ACTIVE' and not _is_amount(self.data.get('liquidity')):
                return False, "Activation requires positive integer 'liquidity'"
            if target == 'RESOLVING' and self.data.get('outcome') not in OUTCOMES:
                return False, "Resolution requires 'outcome' of YES, NO or INVALID"

        return True, ""

    def __repr__(self) -> str:
        return f"Instruction({self.ix_type}, market={self.data.get('market_id')}, key={self.idempotency_key[:24]})"


class CommitIntent:
    """
    An instruction derived from off-chain state, waiting to be committed.

    The dedup key (market, kind, epoch) identifies the snapshot that
    produced it and doubles as the instruction's idempotency key, so a
    resubmission after a timeout can never apply twice.
    """

    def __init__(self,
                 intent_type: str,
                 market_id: str,
                 kind: str,
                 epoch: int,
                 payload: dict,
                 expected_status: str,
                 created_at: Optional[float] = None):
        self.intent_type = intent_type
        self.market_id = market_id
        self.kind = kind
        self.epoch = epoch
        self.payload = payload
        self.expected_status = expected_status
        self.created_at = created_at or time.time()

    @property
    def dedup_key(self) -> str:
        return f"{self.market_id}:{self.kind}:{self.epoch}"

    @property
    def supersession_key(self) -> str:
        """Intents sharing this key compete; the newest epoch wins."""
        return f"{self.market_id}:{self.kind}"

    def to_instruction(self, sender: str) -> Instruction:
        data = dict(self.payload)
        data['market_id'] = self.market_id
        data['expected_status'] = self.expected_status
        return Instruction(
            ix_type=self.intent_type,
            sender=sender,
            data=data,
            idempotency_key=self.dedup_key,
            timestamp=self.created_at,
        )

    def to_dict(self) -> dict:
        return {
            'intent_type': self.intent_type,
            'market_id': self.market_id,
            'kind': self.kind,
            'epoch': self.epoch,
            'payload': self.payload,
            'expected_status': self.expected_status,
            'created_at': self.created_at,
        }

    def __repr__(self) -> str:
        return f"CommitIntent({self.intent_type}, {self.dedup_key})"


class LedgerEvent:
    """
    Immutable record of one committed instruction.

    Events form a hash chain: hash = H(prev_hash + H(body)), and each is
    signed by the ledger authority.
    """

    def __init__(self,
                 seq: int,
                 tx_ref: str,
                 event_type: str,
                 market_id: str,
                 data: dict,
                 timestamp: int,
                 idempotency_key: str,
                 prev_hash: bytes,
                 hash: Optional[bytes] = None,
                 signature: Optional[bytes] = None):
        self.seq = seq
        self.tx_ref = tx_ref
        self.event_type = event_type
        self.market_id = market_id
        self.data = data
        self.timestamp = timestamp
        self.idempotency_key = idempotency_key
        self.prev_hash = prev_hash
        self.hash = hash or self.compute_hash()
        self.signature = signature

    def body(self) -> dict:
        return {
            'seq': self.seq,
            'tx_ref': self.tx_ref,
            'event_type': self.event_type,
            'market_id': self.market_id,
            'data': self.data,
            'timestamp': self.timestamp,
            'idempotency_key': self.idempotency_key,
        }

    def body_hash(self) -> bytes:
        return generate_hash(msgpack.packb(self.body(), use_bin_type=True))

    def compute_hash(self) -> bytes:
        return generate_hash(self.prev_hash + self.body_hash())

    def to_dict(self) -> dict:
        data = self.body()
        data['prev_hash'] = self.prev_hash
        data['hash'] = self.hash
        data['signature'] = self.signature
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'LedgerEvent':
        return cls(
            seq=data['seq'],
            tx_ref=data['tx_ref'],
            event_type=data['event_type'],
            market_id=data['market_id'],
            data=data['data'],
            timestamp=data['timestamp'],
            idempotency_key=data['idempotency_key'],
            prev_hash=data['prev_hash'],
            hash=data['hash'],
            signature=data.get('signature'),
        )

    def __repr__(self) -> str:
        return f"LedgerEvent(#{self.seq} {self.event_type} market={self.market_id} tx={self.tx_ref[:16]})"
