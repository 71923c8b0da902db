"""
LevelDB wrapper and the off-chain market cache built on it.
"""
import plyvel
import logging
import msgpack
from typing import Optional, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class DB:
    def __init__(self, db_path: str, create_if_missing: bool = True,
                 write_buffer_size: int = 64 * 1024 * 1024,  # 64MB
                 max_open_files: int = 1000):
        """
        Open (or create) a LevelDB database.

        Args:
            db_path: Path to database directory
            create_if_missing: Create database if it doesn't exist
            write_buffer_size: Size of write buffer
            max_open_files: Maximum number of open files
        """
        try:
            self._db = plyvel.DB(
                db_path,
                create_if_missing=create_if_missing,
                write_buffer_size=write_buffer_size,
                max_open_files=max_open_files,
            )
            self._closed = False
            logger.info(f"Database opened at {db_path}")
        except plyvel.Error as e:
            logger.error(f"Failed to open database at {db_path}: {e}")
            raise

    def _check_open(self):
        if self._closed:
            raise RuntimeError("Database is closed")

    def get(self, key: bytes) -> Optional[bytes]:
        """
        Get value by key.

        Returns None if key doesn't exist.
        """
        self._check_open()
        return self._db.get(key)

    def put(self, key: bytes, value: bytes):
        """Put a key-value pair."""
        self._check_open()
        self._db.put(key, value)

    def delete(self, key: bytes):
        """Delete a key."""
        self._check_open()
        self._db.delete(key)

    def exists(self, key: bytes) -> bool:
        """Check if key exists."""
        return self.get(key) is not None

    @contextmanager
    def write_batch(self):
        """
        Context manager for atomic batch writes. Nothing is written if the
        body raises.

        Example:
            with db.write_batch() as batch:
                batch.put(b'key1', b'value1')
                batch.put(b'key2', b'value2')
        """
        self._check_open()
        batch = self._db.write_batch(transaction=True)
        with batch:
            yield batch

    def iterator(self, prefix: Optional[bytes] = None,
                 start: Optional[bytes] = None,
                 stop: Optional[bytes] = None,
                 reverse: bool = False) -> Iterator[tuple[bytes, bytes]]:
        """
        Create an iterator over the database.

        Args:
            prefix: Only iterate keys with this prefix
            start: Start key (inclusive)
            stop: Stop key (exclusive)
            reverse: Iterate in reverse order
        """
        self._check_open()
        if prefix:
            return self._db.iterator(prefix=prefix, reverse=reverse)
        return self._db.iterator(start=start, stop=stop, reverse=reverse)

    def get_prefix(self, prefix: bytes) -> list[tuple[bytes, bytes]]:
        """
        Get all key-value pairs with a given prefix.
        """
        self._check_open()
        return list(self._db.iterator(prefix=prefix))

    def close(self):
        """Close the database."""
        if not self._closed:
            self._db.close()
            self._closed = True
            logger.info("Database closed")

    def is_closed(self) -> bool:
        """Check if database is closed."""
        return self._closed

    def __enter__(self):
        """Support context manager protocol."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Support context manager protocol."""
        self.close()
        return False


def pack(value) -> bytes:
    return msgpack.packb(value, use_bin_type=True)


def unpack(raw: bytes):
    return msgpack.unpackb(raw, raw=False)


# Cache key prefixes
CACHE_MARKET_PREFIX = b'cache:market:'
CACHE_TX_PREFIX = b'cache:tx:'
CACHE_TRADE_PREFIX = b'cache:trade:'
CACHE_TALLY_PREFIX = b'cache:tally:'
CACHE_FAILURE_PREFIX = b'cache:failure:'
CACHE_CURSOR_KEY = b'cache:cursor'


class MarketCache:
    """
    Fast-read mirror of ledger events, keyed by transaction reference.

    Never authoritative: the reconciler writes here but never reads market
    state back from it to decide what to commit.
    """

    def __init__(self, db: DB):
        self.db = db

    # ---- event mirroring ----

    def has_tx(self, tx_ref: str) -> bool:
        return self.db.exists(CACHE_TX_PREFIX + tx_ref.encode())

    def mirror_event(self, event) -> bool:
        """
        Apply one ledger event. Returns False (and writes nothing) if its
        transaction reference was already mirrored.
        """
        if self.has_tx(event.tx_ref):
            logger.debug(f"Skipping duplicate event {event.tx_ref[:16]}")
            return False

        with self.db.write_batch() as batch:
            market = event.data.get('market')
            if market is not None:
                batch.put(CACHE_MARKET_PREFIX + event.market_id.encode(), pack(market))
            if 'trade' in event.data:
                trade_key = f"{event.market_id}:{event.seq:016d}".encode()
                batch.put(CACHE_TRADE_PREFIX + trade_key, pack(event.data['trade']))
            batch.put(CACHE_TX_PREFIX + event.tx_ref.encode(), pack({
                'seq': event.seq,
                'event_type': event.event_type,
                'market_id': event.market_id,
                'timestamp': event.timestamp,
            }))
            batch.put(CACHE_CURSOR_KEY, pack(event.seq + 1))
        return True

    def get_cursor(self) -> int:
        raw = self.db.get(CACHE_CURSOR_KEY)
        return unpack(raw) if raw is not None else 0

    def get_market(self, market_id: str) -> Optional[dict]:
        raw = self.db.get(CACHE_MARKET_PREFIX + market_id.encode())
        return unpack(raw) if raw is not None else None

    def list_markets(self, status: Optional[str] = None) -> list[dict]:
        markets = [unpack(value) for _, value in self.db.get_prefix(CACHE_MARKET_PREFIX)]
        if status is not None:
            markets = [m for m in markets if m['status'] == status]
        return markets

    def get_trades(self, market_id: str) -> list[dict]:
        prefix = CACHE_TRADE_PREFIX + f"{market_id}:".encode()
        return [unpack(value) for _, value in self.db.get_prefix(prefix)]

    # ---- audit trail ----

    def archive_tally(self, tally: dict):
        key = f"{tally['market_id']}:{tally['kind']}".encode()
        self.db.put(CACHE_TALLY_PREFIX + key, pack(tally))

    def get_archived_tally(self, market_id: str, kind: str) -> Optional[dict]:
        raw = self.db.get(CACHE_TALLY_PREFIX + f"{market_id}:{kind}".encode())
        return unpack(raw) if raw is not None else None

    def record_failure(self, dedup_key: str, record: dict):
        self.db.put(CACHE_FAILURE_PREFIX + dedup_key.encode(), pack(record))

    def list_failures(self) -> list[dict]:
        return [unpack(value) for _, value in self.db.get_prefix(CACHE_FAILURE_PREFIX)]
