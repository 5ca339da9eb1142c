"""Configuration management for the Bidinsouk auction engine."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, List
import yaml


@dataclass
class AuctionRulesConfig:
    """Bidding and timing rules."""
    currency: str = "MAD"
    ending_soon_threshold_minutes: int = 60
    schedule_grace_seconds: int = 30
    # Minor units (1000 = 10.00 MAD)
    default_min_increment: int = 1000
    default_anti_sniping_window_seconds: int = 120
    default_anti_sniping_extension_seconds: int = 300
    max_extensions: int = 10
    # Quick-bid suggestions as percentages above the minimum next bid
    suggestion_steps_pct: List[int] = field(default_factory=lambda: [0, 5, 10])


@dataclass
class ServiceConfig:
    """Auction service concurrency settings."""
    lock_timeout_seconds: float = 2.0


@dataclass
class SchedulerConfig:
    """Time-driven sweep configuration."""
    enabled: bool = True
    sweep_interval_seconds: float = 15.0
    batch_size: int = 200
    retry_orders: bool = True


@dataclass
class NotificationConfig:
    """Outbound notification configuration."""
    log_events: bool = True
    webhook_url: Optional[str] = None
    timeout_seconds: float = 5.0


@dataclass
class OrderConfig:
    """Order conversion configuration."""
    backend: str = "store"  # store | http
    endpoint_url: Optional[str] = None
    timeout_seconds: float = 5.0


@dataclass
class DatabaseConfig:
    """Database configuration."""
    data_dir: str = "./data"
    auctions_db: str = "auctions.db"
    analytics_db: str = "analytics.duckdb"


@dataclass
class ServerConfig:
    """HTTP API configuration."""
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class Config:
    """Main configuration for the auction engine."""
    rules: AuctionRulesConfig = field(default_factory=AuctionRulesConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    orders: OrderConfig = field(default_factory=OrderConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Create config from dictionary. Unknown keys are ignored."""
        config = cls()
        for section in fields(config):
            values = data.get(section.name)
            if not values:
                continue
            section_obj = getattr(config, section.name)
            for key, value in values.items():
                if hasattr(section_obj, key):
                    setattr(section_obj, key, value)
        return config

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return {
            section.name: getattr(self, section.name).__dict__.copy()
            for section in fields(self)
        }

    def validate(self) -> None:
        """Raise ValueError for settings the engine cannot run with."""
        errors = []
        if self.rules.max_extensions <= 0:
            errors.append("rules.max_extensions must be a positive cap")
        if self.rules.ending_soon_threshold_minutes < 0:
            errors.append("rules.ending_soon_threshold_minutes cannot be negative")
        if self.rules.default_min_increment <= 0:
            errors.append("rules.default_min_increment must be positive")
        if len(self.rules.currency) != 3:
            errors.append("rules.currency must be a 3-letter code")
        if self.service.lock_timeout_seconds <= 0:
            errors.append("service.lock_timeout_seconds must be positive")
        if self.orders.backend not in ("store", "http"):
            errors.append(f"orders.backend must be 'store' or 'http', got {self.orders.backend!r}")
        if self.orders.backend == "http" and not self.orders.endpoint_url:
            errors.append("orders.endpoint_url is required for the http backend")
        if errors:
            raise ValueError("Invalid configuration: " + "; ".join(errors))


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, looks for:
            1. BIDINSOUK_CONFIG env var
            2. ./config/default.yaml
            3. Uses default config

    Returns:
        Validated Config object
    """
    if config_path is None:
        config_path = os.environ.get("BIDINSOUK_CONFIG")

    if config_path is None:
        default_path = Path("./config/default.yaml")
        if default_path.exists():
            config_path = str(default_path)

    config = Config()
    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with open(path, "r") as f:
                data = yaml.safe_load(f)
                config = Config.from_dict(data or {})

    config.validate()
    return config


def save_config(config: Config, config_path: str) -> None:
    """Save configuration to YAML file."""
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
