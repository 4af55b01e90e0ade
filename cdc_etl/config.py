"""
config.py - Configuration for the CDC ETL pipeline
"""
import os
from typing import Dict, List, Optional
from dataclasses import dataclass, field

from cdc_etl.cdc.models import RecordType
from cdc_etl.warehouse.schema import DEFAULT_TABLE_NAMES, validate_identifier


def _split(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class PipelineConfig:
    """Configuration for the CDC ETL pipeline"""

    # Source configuration
    source_uri: str = "push://"
    source_collections: List[str] = field(default_factory=lambda: ["orders", "devices", "useractivities"])
    source_order_key: str = "_id"

    # Queue configuration
    queue_uri: str = "redis://localhost:6379/0"
    queue_name: str = "data-changes"
    reconnect_delay_ms: int = 5000

    # Warehouse configuration
    warehouse_path: str = "./data/warehouse.duckdb"
    warehouse_tables: Dict[RecordType, str] = field(default_factory=lambda: dict(DEFAULT_TABLE_NAMES))

    # Change detection
    poll_interval_ms: int = 5000
    poll_window: int = 100
    dedup_max_keys: int = 1000
    dedup_trim_to: int = 500

    # Batching
    batch_size: int = 10
    batch_interval_ms: int = 10000
    drain_timeout_ms: int = 10000

    # Enrichment
    tax_rate: float = 0.08
    currency: str = "USD"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> 'PipelineConfig':
        """Load configuration from environment variables"""
        config = cls()

        # Source settings
        config.source_uri = os.getenv('SOURCE_URI', config.source_uri)
        if os.getenv('SOURCE_COLLECTIONS'):
            config.source_collections = _split(os.environ['SOURCE_COLLECTIONS'])
        config.source_order_key = os.getenv('SOURCE_ORDER_KEY', config.source_order_key)

        # Queue settings
        config.queue_uri = os.getenv('QUEUE_URI', config.queue_uri)
        config.queue_name = os.getenv('QUEUE_NAME', config.queue_name)
        config.reconnect_delay_ms = int(os.getenv('RECONNECT_DELAY_MS', str(config.reconnect_delay_ms)))

        # Warehouse settings
        config.warehouse_path = os.getenv('WAREHOUSE_PATH', config.warehouse_path)
        config.warehouse_tables = {
            RecordType.ORDER: os.getenv('WAREHOUSE_ORDERS_TABLE', config.warehouse_tables[RecordType.ORDER]),
            RecordType.DEVICE: os.getenv('WAREHOUSE_DEVICES_TABLE', config.warehouse_tables[RecordType.DEVICE]),
            RecordType.USER_ACTIVITY: os.getenv('WAREHOUSE_USER_ACTIVITIES_TABLE',
                                                config.warehouse_tables[RecordType.USER_ACTIVITY]),
        }

        # Detection and batching
        config.poll_interval_ms = int(os.getenv('POLL_INTERVAL_MS', str(config.poll_interval_ms)))
        config.poll_window = int(os.getenv('POLL_WINDOW', str(config.poll_window)))
        config.batch_size = int(os.getenv('BATCH_SIZE', str(config.batch_size)))
        config.batch_interval_ms = int(os.getenv('BATCH_INTERVAL_MS', str(config.batch_interval_ms)))
        config.drain_timeout_ms = int(os.getenv('DRAIN_TIMEOUT_MS', str(config.drain_timeout_ms)))

        # Enrichment
        config.tax_rate = float(os.getenv('TAX_RATE', str(config.tax_rate)))
        config.currency = os.getenv('CURRENCY', config.currency)

        # API settings
        config.api_host = os.getenv('API_HOST', config.api_host)
        config.api_port = int(os.getenv('API_PORT', str(config.api_port)))
        config.log_level = os.getenv('LOG_LEVEL', config.log_level).upper()

        return config

    def validate(self) -> None:
        """Validate configuration settings"""
        errors = []

        if not self.source_collections:
            errors.append("source_collections must not be empty")

        if not self.queue_name:
            errors.append("queue_name must not be empty")

        for name, value in (
            ("reconnect_delay_ms", self.reconnect_delay_ms),
            ("poll_interval_ms", self.poll_interval_ms),
            ("poll_window", self.poll_window),
            ("batch_size", self.batch_size),
            ("batch_interval_ms", self.batch_interval_ms),
            ("dedup_max_keys", self.dedup_max_keys),
            ("dedup_trim_to", self.dedup_trim_to),
        ):
            if value <= 0:
                errors.append(f"{name} must be positive")

        if self.dedup_trim_to > self.dedup_max_keys:
            errors.append("dedup_trim_to must not exceed dedup_max_keys")

        if self.drain_timeout_ms < 0:
            errors.append("drain_timeout_ms must not be negative")

        if self.tax_rate < 0:
            errors.append("tax_rate must not be negative")

        if not (0 < self.api_port < 65536):
            errors.append("api_port must be between 1 and 65535")

        for table in self.warehouse_tables.values():
            try:
                validate_identifier(table)
            except ValueError as e:
                errors.append(str(e))

        if errors:
            raise ValueError(f"Configuration validation errors: {'; '.join(errors)}")

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def batch_interval(self) -> float:
        return self.batch_interval_ms / 1000.0

    @property
    def reconnect_delay(self) -> float:
        return self.reconnect_delay_ms / 1000.0

    @property
    def drain_timeout(self) -> float:
        return self.drain_timeout_ms / 1000.0


class ConfigManager:
    """Manager for configuration loading and validation"""

    def __init__(self):
        self.config: Optional[PipelineConfig] = None

    def load_config(self, config_source: Optional[str] = None) -> PipelineConfig:
        """Load configuration from the environment ('env') or defaults"""
        if config_source == 'env':
            self.config = PipelineConfig.from_env()
        else:
            self.config = PipelineConfig()

        self.config.validate()
        return self.config

    def get_config(self) -> PipelineConfig:
        """Get the loaded configuration"""
        if self.config is None:
            self.config = self.load_config('env')
        return self.config


# Global configuration manager
config_manager = ConfigManager()


def get_config() -> PipelineConfig:
    """Get the global configuration"""
    return config_manager.get_config()
