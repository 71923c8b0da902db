"""
Main entry point for running the market core: reference ledger, cache,
vote aggregator, reconciler and its scan scheduler.
"""
import asyncio
import argparse
import logging
import signal
from pathlib import Path

from predict_chain.config import Config
from predict_chain.crypto import generate_authority_keypair, load_signing_key
from predict_chain.db import DB, MarketCache
from predict_chain.ledger import Ledger
from predict_chain.monitoring import Monitor
from predict_chain.reconciler import Reconciler
from predict_chain.scheduler import ScanScheduler
from predict_chain.votes import VoteAggregator

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class MarketNode:
    """Wires the market core components together."""

    def __init__(self, config: Config, signing_key=None):
        self.config = config

        logger.info(f"Opening ledger at {config.database.ledger_path}")
        Path(config.database.ledger_path).mkdir(parents=True, exist_ok=True)
        Path(config.database.cache_path).mkdir(parents=True, exist_ok=True)
        self.ledger_db = DB(
            config.database.ledger_path,
            write_buffer_size=config.database.write_buffer_size,
            max_open_files=config.database.max_open_files,
        )
        self.cache_db = DB(
            config.database.cache_path,
            write_buffer_size=config.database.write_buffer_size,
            max_open_files=config.database.max_open_files,
        )
        self.ledger = Ledger(self.ledger_db, config.market, signing_key=signing_key)
        self.cache = MarketCache(self.cache_db)
        self.aggregator = VoteAggregator(config.market, on_retire=self.cache.archive_tally)

        self.monitor = None
        if config.monitoring.enabled:
            self.monitor = Monitor(host=config.monitoring.host, port=config.monitoring.port)

        self.reconciler = Reconciler(
            ledger=self.ledger,
            aggregator=self.aggregator,
            cache=self.cache,
            config=config.reconciler,
            market_config=config.market,
            monitor=self.monitor,
        )
        self.scheduler = ScanScheduler(self.reconciler, config.reconciler.scan_interval_seconds)
        self.running = False
        self.stopped = False

    async def start(self):
        """Start the scheduler and monitoring, then report status until stopped."""
        self.running = True
        logger.info("Starting market node...")
        if self.monitor:
            self.monitor.start_server()
        self.scheduler.start()
        await self._status_reporter()

    async def stop(self):
        """Stop all node components."""
        if self.stopped:
            return
        logger.info("Stopping market node...")
        self.running = False
        self.stopped = True
        self.scheduler.stop()
        if self.scheduler.is_alive():
            self.scheduler.join(timeout=5)
        self.reconciler.close()
        if self.monitor:
            self.monitor.stop_server()
        self.ledger_db.close()
        self.cache_db.close()
        logger.info("Node stopped successfully")

    async def _status_reporter(self):
        """Periodically report node status."""
        while self.running:
            await asyncio.sleep(60)
            if not self.running:
                break
            logger.info(f"=== Node Status ===")
            logger.info(f"Ledger events: {self.ledger.next_seq}")
            logger.info(f"Pending commits: {self.reconciler.pending_count}")
            logger.info(f"Dead letters: {len(self.reconciler.dead_letters)}")
            logger.info(f"Ballots accepted: {self.aggregator.stats['ballots_accepted']}")
            logger.info("==================")


def load_or_generate_authority_key(keys_dir: Path):
    """Load the ledger authority's signing key seed, or create one."""
    key_file = keys_dir / "authority.key"

    if key_file.exists():
        logger.info(f"Loading authority key from {key_file}")
        return load_signing_key(key_file.read_bytes())

    logger.info("Generating new authority key...")
    signing_key, verify_key = generate_authority_keypair()
    keys_dir.mkdir(parents=True, exist_ok=True)
    key_file.write_bytes(bytes(signing_key))
    logger.info(f"Authority verify key: {verify_key.encode().hex()}")
    return signing_key


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Run the prediction market core')
    parser.add_argument('--config', type=str, help='Path to config file')
    parser.add_argument('--data-dir', type=str, default='./market_data',
                        help='Data directory')
    parser.add_argument('--monitoring', action='store_true',
                        help='Expose Prometheus metrics')
    parser.add_argument('--scan-interval', type=int, help='Seconds between reconciliation scans')

    args = parser.parse_args()

    if args.config and Path(args.config).exists():
        config = Config.from_file(args.config)
    else:
        config = Config.default()

    data_dir = Path(args.data_dir)
    config.database.ledger_path = str(data_dir / 'ledger')
    config.database.cache_path = str(data_dir / 'cache')
    if args.monitoring:
        config.monitoring.enabled = True
    if args.scan_interval:
        config.reconciler.scan_interval_seconds = args.scan_interval
    config.validate()

    node = MarketNode(config, signing_key=load_or_generate_authority_key(data_dir / 'keys'))

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def signal_handler():
        logger.info("Received shutdown signal")
        stop_requested.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    runner = asyncio.create_task(node.start())
    try:
        await stop_requested.wait()
    finally:
        runner.cancel()
        await node.stop()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Exiting...")


if __name__ == '__main__':
    run()
