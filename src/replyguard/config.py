"""Configuration loading and validation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class StorageConfig:
    backend: str = "sqlite"
    sqlite_path: str = "replyguard.db"


@dataclass
class GmailConfig:
    credentials_file: str = "credentials.json"
    pubsub_topic: str = ""  # projects/<project>/topics/<topic>; empty disables push
    request_timeout: float = 30.0


@dataclass
class OutlookConfig:
    client_id: str = ""
    client_secret: str = ""
    tenant: str = "common"
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    authority_url: str = "https://login.microsoftonline.com"
    notification_url: str = ""  # public webhook URL; empty disables push
    subscription_minutes: int = 4200
    request_timeout: float = 30.0

    @property
    def token_url(self) -> str:
        return f"{self.authority_url.rstrip('/')}/{self.tenant}/oauth2/v2.0/token"


@dataclass
class ImapConfig:
    host: str = "imap.mail.yahoo.com"
    port: int = 993
    use_ssl: bool = True
    folder: str = "INBOX"
    timeout: float = 30.0


@dataclass
class DetectionConfig:
    min_healthy_layers: int = 3
    layer_timeout: float = 45.0
    max_results: int = 25


@dataclass
class HealthConfig:
    cache_ttl_seconds: int = 60


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5


@dataclass
class SyncConfig:
    max_changes_per_run: int = 500


@dataclass
class ReconciliationConfig:
    hourly_lookback_hours: int = 24
    hourly_recheck_hours: int = 1
    hourly_pacing_seconds: float = 0.5
    nightly_pacing_seconds: float = 1.0
    nightly_max_items: int = 0  # 0 = uncapped
    nightly_sync_first: bool = True


@dataclass
class SchedulerConfig:
    timezone: str = "UTC"
    run_in_web: bool = False
    delta_sweep_minutes: int = 10
    polling_seconds: int = 60
    push_retry_minutes: int = 30
    push_failure_threshold: int = 3
    push_renew_hours: int = 24
    health_check_minutes: int = 5
    credential_refresh_hours: int = 6
    credential_refresh_window_hours: int = 24
    hourly_reconciliation: bool = True
    nightly_hour: int = 2
    nightly_minute: int = 0
    sweep_workers: int = 1


@dataclass
class AlertConfig:
    cooldown_hours: int = 6
    stale_sync_minutes: int = 60
    webhook_url: str = ""
    webhook_timeout: float = 10.0


@dataclass
class StateConfig:
    backend: str = "memory"  # memory | sqlite


@dataclass
class AliasConfig:
    ttl_days: int = 0  # 0 = aliases never expire


@dataclass
class RetentionConfig:
    audit_days: int = 90
    anomaly_days: int = 180
    review_days: int = 30


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


@dataclass
class Config:
    storage: StorageConfig = field(default_factory=StorageConfig)
    gmail: GmailConfig = field(default_factory=GmailConfig)
    outlook: OutlookConfig = field(default_factory=OutlookConfig)
    imap: ImapConfig = field(default_factory=ImapConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    state: StateConfig = field(default_factory=StateConfig)
    aliases: AliasConfig = field(default_factory=AliasConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge_dict(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def _dict_to_config(data: dict) -> Config:
    """Convert a raw dict to a Config dataclass, handling nested structures."""
    from dacite import Config as DaciteConfig, from_dict

    # YAML integers are accepted where a float is expected (e.g. layer_timeout: 45)
    return from_dict(data_class=Config, data=data, config=DaciteConfig(cast=[float]))


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    # 1. Environment variable
    env_path = os.environ.get("REPLYGUARD_CONFIG")
    if env_path:
        p = Path(env_path)
        if p.exists():
            return p

    # 2. Current directory
    local = Path("config.yaml")
    if local.exists():
        return local

    # 3. XDG config dir
    xdg = Path.home() / ".config" / "replyguard" / "config.yaml"
    if xdg.exists():
        return xdg

    return None


def _load_dotenv() -> None:
    """Load .env file from current directory if it exists."""
    env_path = Path(".env")
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        # Don't overwrite already-set env vars
        if key not in os.environ:
            os.environ[key] = value


def _apply_env_overrides(config: Config) -> Config:
    """Override config values from environment variables.

    Supports:
        REPLYGUARD_DB             -> config.storage.sqlite_path
        REPLYGUARD_LOG_LEVEL      -> config.logging.level
        GMAIL_PUBSUB_TOPIC        -> config.gmail.pubsub_topic
        OUTLOOK_CLIENT_ID         -> config.outlook.client_id
        OUTLOOK_CLIENT_SECRET     -> config.outlook.client_secret
        REPLYGUARD_ALERT_WEBHOOK  -> config.alerts.webhook_url
    """
    if os.environ.get("REPLYGUARD_DB"):
        config.storage.sqlite_path = os.environ["REPLYGUARD_DB"]
    if os.environ.get("REPLYGUARD_LOG_LEVEL"):
        config.logging.level = os.environ["REPLYGUARD_LOG_LEVEL"]
    if os.environ.get("GMAIL_PUBSUB_TOPIC"):
        config.gmail.pubsub_topic = os.environ["GMAIL_PUBSUB_TOPIC"]
    if os.environ.get("OUTLOOK_CLIENT_ID"):
        config.outlook.client_id = os.environ["OUTLOOK_CLIENT_ID"]
    if os.environ.get("OUTLOOK_CLIENT_SECRET"):
        config.outlook.client_secret = os.environ["OUTLOOK_CLIENT_SECRET"]
    if os.environ.get("REPLYGUARD_ALERT_WEBHOOK"):
        config.alerts.webhook_url = os.environ["REPLYGUARD_ALERT_WEBHOOK"]
    return config


def load_config(path: str | Path | None = None, overrides: dict | None = None) -> Config:
    """Load configuration from YAML file, merging with defaults.

    Also loads .env file and applies environment variable overrides.
    ``overrides`` is merged on top of the file contents.
    """
    _load_dotenv()

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        config_path = _find_config_file()

    raw: dict = {}
    if config_path is not None:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    if overrides:
        raw = _merge_dict(raw, overrides)

    config = _dict_to_config(raw) if raw else Config()
    return _apply_env_overrides(config)
