"""Configuration loading for tally."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import tomli

logger = logging.getLogger("tally.config")


DEFAULT_SEASONALITY = [0.9, 0.95, 1.0, 1.05, 1.1, 1.15, 1.0, 0.95, 1.05, 1.1, 1.05, 0.8]


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"           # INFO or DEBUG
    output: str = "console"       # console, file, or both
    file: str = ""                # log file path
    rotate: bool = True           # enable rotation
    max_size_mb: int = 10         # max file size before rotation
    backup_count: int = 5         # rotated files to keep
    audit_file: str = ""          # invoice and job events only, appended, never rotated


@dataclass
class SchedulerConfig:
    interval_minutes: int = 60  # minutes between scheduled job polls
    max_attempts: int = 3  # jobs at this attempt count are skipped until reset
    stale_processing_minutes: int = 30  # fail jobs stuck in processing longer than this
    upcoming_days: int = 30  # default window for `tally upcoming`
    lock_path: Path = field(default_factory=lambda: Path("/tmp/tally-scheduler.lock"))


@dataclass
class BillingConfig:
    tax_rate: float = 0.10  # fraction, not percent
    payment_terms_days: int = 30
    currency: str = "USD"
    default_period_days: int = 30  # hourly billing window when no period is given


@dataclass
class AnalyticsConfig:
    """Placeholder business assumptions used by profitability and forecasts."""
    overhead_rate: float = 0.30
    default_hourly_cost: float = 100.0  # labor cost when a user has none on record
    pipeline_conversion: float = 0.3
    historical_growth: float = 1.1
    market_trends: float = 1.05
    seasonality: list[float] = field(default_factory=lambda: list(DEFAULT_SEASONALITY))
    expected_lifetime_months: int = 24
    acquisition_cost: float = 500.0
    default_project_months: int = 3  # assumed duration for projects without dates


@dataclass
class NtfyConfig:
    """ntfy push notification configuration (failed job alerts)."""
    enabled: bool = False
    server_url: str = "https://ntfy.sh"
    topic: str = ""
    token: str = ""       # bearer token auth
    username: str = ""     # basic auth (alternative to token)
    password: str = ""
    priority: int = 4


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path("data/tally.db"))
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    ntfy: NtfyConfig = field(default_factory=NtfyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _parse_seasonality(values) -> list[float]:
    if not isinstance(values, list) or len(values) != 12:
        logger.warning("Ignoring seasonality table: expected 12 monthly factors")
        return list(DEFAULT_SEASONALITY)
    return [float(v) for v in values]


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file."""
    if config_path is None:
        # Look for config in standard locations
        candidates = [
            Path("config/config.toml"),
            Path.home() / ".config/tally/config.toml",
            Path("/etc/tally/config.toml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    data: dict = {}
    if config_path is not None and config_path.exists():
        with open(config_path, "rb") as f:
            data = tomli.load(f)
        logger.debug("Loaded config from %s", config_path)

    config = Config()

    if "db_path" in data:
        config.db_path = Path(data["db_path"])

    if "scheduler" in data:
        sched = data["scheduler"]
        config.scheduler = SchedulerConfig(
            interval_minutes=sched.get("interval_minutes", 60),
            max_attempts=sched.get("max_attempts", 3),
            stale_processing_minutes=sched.get("stale_processing_minutes", 30),
            upcoming_days=sched.get("upcoming_days", 30),
            lock_path=Path(sched.get("lock_path", "/tmp/tally-scheduler.lock")),
        )

    if "billing" in data:
        b = data["billing"]
        config.billing = BillingConfig(
            tax_rate=float(b.get("tax_rate", 0.10)),
            payment_terms_days=b.get("payment_terms_days", 30),
            currency=b.get("currency", "USD"),
            default_period_days=b.get("default_period_days", 30),
        )

    if "analytics" in data:
        a = data["analytics"]
        config.analytics = AnalyticsConfig(
            overhead_rate=float(a.get("overhead_rate", 0.30)),
            default_hourly_cost=float(a.get("default_hourly_cost", 100.0)),
            pipeline_conversion=float(a.get("pipeline_conversion", 0.3)),
            historical_growth=float(a.get("historical_growth", 1.1)),
            market_trends=float(a.get("market_trends", 1.05)),
            seasonality=_parse_seasonality(a["seasonality"]) if "seasonality" in a else list(DEFAULT_SEASONALITY),
            expected_lifetime_months=a.get("expected_lifetime_months", 24),
            acquisition_cost=float(a.get("acquisition_cost", 500.0)),
            default_project_months=a.get("default_project_months", 3),
        )

    if "ntfy" in data:
        n = data["ntfy"]
        config.ntfy = NtfyConfig(
            enabled=n.get("enabled", False),
            server_url=n.get("server_url", "https://ntfy.sh"),
            topic=n.get("topic", ""),
            token=n.get("token", ""),
            username=n.get("username", ""),
            password=n.get("password", ""),
            priority=n.get("priority", 4),
        )

    if "logging" in data:
        log = data["logging"]
        config.logging = LoggingConfig(
            level=log.get("level", "INFO"),
            output=log.get("output", "console"),
            file=log.get("file", ""),
            rotate=log.get("rotate", True),
            max_size_mb=log.get("max_size_mb", 10),
            backup_count=log.get("backup_count", 5),
            audit_file=log.get("audit_file", ""),
        )

    _apply_env_overrides(config)
    return config


def _apply_env_overrides(config: Config) -> None:
    """Environment variable overrides (allows EnvironmentFile= usage)."""
    db_path = os.environ.get("TALLY_DB_PATH")
    if db_path:
        config.db_path = Path(db_path)

    _env_overrides = [
        ("TALLY_INTERVAL_MINUTES", "scheduler", "interval_minutes", int),
        ("TALLY_MAX_ATTEMPTS", "scheduler", "max_attempts", int),
        ("TALLY_TAX_RATE", "billing", "tax_rate", float),
        ("TALLY_NTFY_TOKEN", "ntfy", "token", str),
    ]
    for env_var, section, field_name, cast in _env_overrides:
        val = os.environ.get(env_var)
        if not val:
            continue
        try:
            setattr(getattr(config, section), field_name, cast(val))
        except ValueError:
            logger.error("Invalid value for %s: %r", env_var, val)
