"""
Configuration management for the market core.
"""
import json
import os
from dataclasses import dataclass, asdict

from predict_chain.errors import ConfigError
from predict_chain.lmsr import FeeSchedule, MAX_B, MIN_B

# Single source for the dispute window length (48 hours)
DISPUTE_WINDOW_SECONDS = 48 * 3600


@dataclass
class MarketConfig:
    """Fee, threshold and timing parameters applied to every market."""
    fee_total_bps: int = 1000
    fee_protocol_bps: int = 300
    fee_resolver_bps: int = 200
    fee_lp_bps: int = 500
    proposal_approval_threshold_bps: int = 7000
    dispute_threshold_bps: int = 6000
    dispute_window_seconds: int = DISPUTE_WINDOW_SECONDS
    min_liquidity_parameter: int = MIN_B
    min_proposal_votes: int = 10
    min_trading_seconds: int = 24 * 3600
    dispute_voting_seconds: int = 3 * 24 * 3600

    def fee_schedule(self) -> FeeSchedule:
        return FeeSchedule(
            total_bps=self.fee_total_bps,
            protocol_bps=self.fee_protocol_bps,
            resolver_bps=self.fee_resolver_bps,
            lp_bps=self.fee_lp_bps,
        )

    def validate(self):
        for name in ('fee_total_bps', 'fee_protocol_bps', 'fee_resolver_bps', 'fee_lp_bps',
                     'proposal_approval_threshold_bps', 'dispute_threshold_bps'):
            value = getattr(self, name)
            if not 0 <= value <= 10_000:
                raise ConfigError(f"{name} must be in [0, 10000], got {value}")

        shares = self.fee_protocol_bps + self.fee_resolver_bps + self.fee_lp_bps
        if shares > self.fee_total_bps:
            raise ConfigError(
                f"fee shares sum to {shares} bps, more than the {self.fee_total_bps} bps total"
            )
        if not 0 < self.min_liquidity_parameter <= MAX_B:
            raise ConfigError(f"min_liquidity_parameter must be in (0, {MAX_B}]")
        for name in ('dispute_window_seconds', 'min_trading_seconds',
                     'dispute_voting_seconds', 'min_proposal_votes'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be non-negative")


@dataclass
class ReconcilerConfig:
    """Periodic scan and commit retry configuration."""
    scan_interval_seconds: int = 300  # 5 minutes
    batch_size: int = 10
    max_retries: int = 3
    retry_initial_delay: float = 5.0
    retry_max_delay: float = 20.0
    backoff_factor: float = 2.0
    submit_timeout_seconds: float = 60.0
    event_page_size: int = 500

    def validate(self):
        if self.scan_interval_seconds <= 0:
            raise ConfigError("scan_interval_seconds must be positive")
        if self.batch_size <= 0:
            raise ConfigError("batch_size must be positive")
        if self.max_retries < 1:
            raise ConfigError("max_retries must be at least 1")
        if self.retry_initial_delay < 0 or self.retry_max_delay < self.retry_initial_delay:
            raise ConfigError("retry delays must satisfy 0 <= initial <= max")
        if self.backoff_factor < 1:
            raise ConfigError("backoff_factor must be >= 1")
        if self.submit_timeout_seconds <= 0:
            raise ConfigError("submit_timeout_seconds must be positive")


@dataclass
class DatabaseConfig:
    """Database configuration."""
    ledger_path: str = "./market_data/ledger"
    cache_path: str = "./market_data/cache"
    write_buffer_size: int = 64 * 1024 * 1024  # 64MB
    max_open_files: int = 1000


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class Config:
    """Main configuration."""
    market: MarketConfig
    reconciler: ReconcilerConfig
    database: DatabaseConfig
    monitoring: MonitoringConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            market=MarketConfig(),
            reconciler=ReconcilerConfig(),
            database=DatabaseConfig(),
            monitoring=MonitoringConfig()
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        """Build and validate a configuration. Unknown keys are a ConfigError."""
        try:
            config = cls(
                market=MarketConfig(**data.get('market', {})),
                reconciler=ReconcilerConfig(**data.get('reconciler', {})),
                database=DatabaseConfig(**data.get('database', {})),
                monitoring=MonitoringConfig(**data.get('monitoring', {}))
            )
        except TypeError as e:
            raise ConfigError(f"invalid configuration: {e}") from e
        config.validate()
        return config

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def validate(self):
        self.market.validate()
        self.reconciler.validate()

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'market': asdict(self.market),
            'reconciler': asdict(self.reconciler),
            'database': asdict(self.database),
            'monitoring': asdict(self.monitoring)
        }
