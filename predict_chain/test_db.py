"""
Tests for the LevelDB wrapper and the market cache.
"""
import shutil
import tempfile
import unittest

from predict_chain.core import MARKET_CREATED, TRADE_EXECUTED, LedgerEvent
from predict_chain.db import DB, MarketCache, pack, unpack
from predict_chain.ledger import GENESIS_HASH


def make_event(seq, tx_ref, event_type=MARKET_CREATED, status='PROPOSED', trade=None):
    data = {'market': {'market_id': 'm1', 'status': status}}
    if trade is not None:
        data['trade'] = trade
    return LedgerEvent(
        seq=seq,
        tx_ref=tx_ref,
        event_type=event_type,
        market_id='m1',
        data=data,
        timestamp=1_700_000_000 + seq,
        idempotency_key=f"key-{seq}",
        prev_hash=GENESIS_HASH,
    )


class TestDB(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.db = DB(self.test_dir)

    def tearDown(self):
        self.db.close()
        shutil.rmtree(self.test_dir)

    def test_put_get_delete(self):
        self.db.put(b'a', b'1')
        self.assertEqual(self.db.get(b'a'), b'1')
        self.assertTrue(self.db.exists(b'a'))
        self.db.delete(b'a')
        self.assertIsNone(self.db.get(b'a'))

    def test_prefix_scan(self):
        self.db.put(b'x:1', b'1')
        self.db.put(b'x:2', b'2')
        self.db.put(b'y:1', b'3')
        self.assertEqual([k for k, _ in self.db.get_prefix(b'x:')], [b'x:1', b'x:2'])

    def test_batch_is_atomic(self):
        """A batch whose body raises writes nothing."""
        with self.assertRaises(KeyError):
            with self.db.write_batch() as batch:
                batch.put(b'k1', b'v1')
                raise KeyError('boom')
        self.assertIsNone(self.db.get(b'k1'))

        with self.db.write_batch() as batch:
            batch.put(b'k1', b'v1')
            batch.put(b'k2', b'v2')
        self.assertEqual(self.db.get(b'k2'), b'v2')

    def test_closed_db_rejects_reads(self):
        self.db.close()
        self.assertTrue(self.db.is_closed())
        with self.assertRaises(RuntimeError):
            self.db.get(b'a')

    def test_pack_preserves_bytes(self):
        value = {'hash': b'\x00\x01', 'n': 10**18, 'items': [1, 'two']}
        self.assertEqual(unpack(pack(value)), value)


class TestMarketCache(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.db = DB(self.test_dir)
        self.cache = MarketCache(self.db)

    def tearDown(self):
        self.db.close()
        shutil.rmtree(self.test_dir)

    def test_mirror_writes_snapshot_and_cursor(self):
        self.assertTrue(self.cache.mirror_event(make_event(0, 'aa')))
        self.assertEqual(self.cache.get_market('m1')['status'], 'PROPOSED')
        self.assertEqual(self.cache.get_cursor(), 1)
        self.assertTrue(self.cache.has_tx('aa'))

    def test_duplicate_tx_ref_skipped(self):
        self.cache.mirror_event(make_event(0, 'aa'))
        # same tx ref with different content: ignored
        self.assertFalse(self.cache.mirror_event(make_event(0, 'aa', status='APPROVED')))
        self.assertEqual(self.cache.get_market('m1')['status'], 'PROPOSED')

    def test_trades_in_commit_order(self):
        for seq in range(3):
            self.cache.mirror_event(make_event(
                seq, f"t{seq}", TRADE_EXECUTED, status='ACTIVE',
                trade={'trader': f"user{seq}", 'shares': seq + 1},
            ))
        trades = self.cache.get_trades('m1')
        self.assertEqual([t['trader'] for t in trades], ['user0', 'user1', 'user2'])
        self.assertEqual(self.cache.get_trades('m2'), [])

    def test_list_markets_by_status(self):
        self.cache.mirror_event(make_event(0, 'aa'))
        self.assertEqual(len(self.cache.list_markets('PROPOSED')), 1)
        self.assertEqual(self.cache.list_markets('ACTIVE'), [])

    def test_archive_and_failures(self):
        self.cache.archive_tally({'market_id': 'm1', 'kind': 'dispute', 'affirmative': 3})
        self.assertEqual(self.cache.get_archived_tally('m1', 'dispute')['affirmative'], 3)
        self.assertIsNone(self.cache.get_archived_tally('m1', 'proposal'))

        self.cache.record_failure('m1:finalize:1', {'status': 'FAILED'})
        self.assertEqual(self.cache.list_failures(), [{'status': 'FAILED'}])


if __name__ == '__main__':
    unittest.main()
