"""
Prometheus metrics for the market core.
"""
import time
import psutil
import socket
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app
from wsgiref.simple_server import make_server, WSGIServer
from socketserver import ThreadingMixIn
import threading
import logging

logger = logging.getLogger(__name__)


# Create a threaded WSGI server for the Prometheus metrics
class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """A WSGI server that runs in a separate thread to not block the main application."""
    allow_reuse_address = True


class Monitor:
    def __init__(self, host="127.0.0.1", port=9090):
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

        # Isolated registry so several monitors can live in one process (tests)
        self.registry = CollectorRegistry()

        self.scans = Counter('market_scans_total', 'Reconciliation scans', ['result'], registry=self.registry)
        self.scan_duration = Histogram('market_scan_duration_seconds', 'Duration of reconciliation scans', registry=self.registry)
        self.intents = Counter('market_commit_intents_total', 'Commit intents queued by scans', registry=self.registry)
        self.commits = Counter('market_commits_total', 'Commit submission outcomes', ['status'], registry=self.registry)
        self.events_mirrored = Counter('market_events_mirrored_total', 'Ledger events mirrored into the cache', registry=self.registry)
        self.duplicate_events = Counter('market_duplicate_events_total', 'Ledger events skipped as duplicates', registry=self.registry)
        self.pending_commits = Gauge('market_pending_commits', 'Commits waiting for acknowledgment', registry=self.registry)
        self.dead_letters = Gauge('market_dead_letters', 'Commits moved to the dead letter set', registry=self.registry)
        self.ballots = Gauge('market_ballots_accepted', 'Ballots accepted by the aggregator', registry=self.registry)
        self.ledger_height = Gauge('market_ledger_height', 'Number of committed ledger events', registry=self.registry)
        self.cpu_usage = Gauge('system_cpu_percent', 'Current CPU usage percent', registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Current memory usage percent', registry=self.registry)

    def start_server(self):
        """Manually creates and starts the Prometheus HTTP server with retry logic."""
        app = make_wsgi_app(self.registry)

        max_retries = 5
        retry_delay = 2

        for attempt in range(max_retries):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever)
                self.thread.daemon = True
                self.thread.start()
                logger.info(f"Prometheus server started on http://{self.host}:{self.port}")
                return
            except OSError as e:
                if e.errno == 98:  # Address already in use
                    if attempt < max_retries - 1:
                        logger.warning(f"Port {self.port} in use, retrying in {retry_delay}s (attempt {attempt+1}/{max_retries})...")
                        time.sleep(retry_delay)
                    else:
                        logger.error(f"Failed to bind to port {self.port} after {max_retries} attempts")
                        raise
                else:
                    raise

    def stop_server(self):
        """Stops the HTTP server."""
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            logger.info("Prometheus server stopped.")

    def record_scan(self, summary):
        if summary.skipped:
            self.scans.labels(result='skipped').inc()
            return
        self.scans.labels(result='completed').inc()
        self.scan_duration.observe(summary.duration)
        self.intents.inc(summary.intents_emitted)
        self.events_mirrored.inc(summary.events_mirrored)
        self.duplicate_events.inc(summary.duplicate_events)

    def record_commit(self, status: str):
        self.commits.labels(status=status).inc()

    def update(self, reconciler):
        self.pending_commits.set(reconciler.pending_count)
        self.dead_letters.set(len(reconciler.dead_letters))
        self.ballots.set(reconciler.aggregator.stats['ballots_accepted'])
        self.ledger_height.set(reconciler.ledger.next_seq)

        self.cpu_usage.set(psutil.cpu_percent())
        self.memory_usage.set(psutil.virtual_memory().percent)
