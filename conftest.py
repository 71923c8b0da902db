"""
Shared pytest fixtures for the predict_chain test modules.
"""
import shutil
import tempfile

import pytest

from predict_chain.config import MarketConfig, ReconcilerConfig
from predict_chain.core import AGGREGATE_VOTES, CREATE_MARKET, TRANSITION_MARKET, Instruction
from predict_chain.db import DB, MarketCache
from predict_chain.fixed_point import PRECISION
from predict_chain.ledger import DEFAULT_AUTHORITY, Ledger
from predict_chain.lmsr import max_loss
from predict_chain.reconciler import Reconciler
from predict_chain.votes import VoteAggregator

START_TIME = 1_700_000_000


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def market_config():
    return MarketConfig()


@pytest.fixture
def ledger_db():
    temp_dir = tempfile.mkdtemp()
    db = DB(temp_dir)
    yield db
    db.close()
    shutil.rmtree(temp_dir)


@pytest.fixture
def cache_db():
    temp_dir = tempfile.mkdtemp()
    db = DB(temp_dir)
    yield db
    db.close()
    shutil.rmtree(temp_dir)


@pytest.fixture
def ledger(ledger_db, market_config, clock):
    return Ledger(ledger_db, market_config, clock=clock)


@pytest.fixture
def cache(cache_db):
    return MarketCache(cache_db)


@pytest.fixture
def aggregator(market_config, cache, clock):
    return VoteAggregator(market_config, on_retire=cache.archive_tally, clock=clock)


@pytest.fixture
def reconciler(ledger, aggregator, cache, market_config, clock):
    config = ReconcilerConfig(submit_timeout_seconds=5.0)
    rec = Reconciler(ledger, aggregator, cache, config, market_config, clock=clock)
    yield rec
    rec.close()


def create_market(ledger, market_id: str = "m1", b: int = 100 * PRECISION, creator: str = "alice"):
    return ledger.submit(Instruction(CREATE_MARKET, creator, {'market_id': market_id, 'b': b}))


def approve_market(ledger, market_id: str = "m1", likes: int = 8, dislikes: int = 2):
    return ledger.submit(Instruction(AGGREGATE_VOTES, DEFAULT_AUTHORITY, {
        'market_id': market_id,
        'kind': 'proposal',
        'affirmative': likes,
        'negative': dislikes,
        'epoch': likes + dislikes,
    }))


def activate_market(ledger, market_id: str = "m1"):
    market = ledger.get_market(market_id)
    return ledger.submit(Instruction(TRANSITION_MARKET, DEFAULT_AUTHORITY, {
        'market_id': market_id,
        'target': 'ACTIVE',
        'liquidity': max_loss(market.b),
    }))


@pytest.fixture
def active_market(ledger):
    create_market(ledger)
    approve_market(ledger)
    activate_market(ledger)
    return "m1"
