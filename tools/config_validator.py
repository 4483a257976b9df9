"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

CLOCK_PATTERN = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")


# ===== App Schema =====
class AppSection(BaseModel):
    mode: str = Field(default="DRY_RUN", pattern="^(DRY_RUN|PAPER|LIVE)$", description="Trading mode")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/signal_trader.log", min_length=1)
    audit_file: str = Field(default="logs/audit.jsonl", min_length=1)


class BrokerConfig(BaseModel):
    """Brokerage and market data endpoints"""
    paper_base_url: str = Field(default="https://paper-api.alpaca.markets")
    live_base_url: str = Field(default="https://api.alpaca.markets")
    data_base_url: str = Field(default="https://data.alpaca.markets")
    alt_price_base_url: str = Field(default="https://financialmodelingprep.com")
    timeout_seconds: float = Field(default=20.0, gt=0, le=300)

    @field_validator("paper_base_url", "live_base_url", "data_base_url", "alt_price_base_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"must be an http(s) URL, got {v!r}")
        return v.rstrip("/")


class FilesConfig(BaseModel):
    """Input and state file locations"""
    signals: str = Field(default="data/scores.txt", min_length=1)
    cursor: str = Field(default="data/last_processed_id.txt", min_length=1)
    extremes: str = Field(default="data/price_extremes.json", min_length=1)
    alt_hours_prices: str = Field(default="data/alt_hours_prices.txt", min_length=1)
    lock_dir: str = Field(default="data", min_length=1)


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = Field(default=False)
    metrics_port: int = Field(default=9100, gt=0, lt=65536)


class RetryConfig(BaseModel):
    """Backoff for transient external failures"""
    attempts: int = Field(default=5, ge=1, le=20)
    base_delay_seconds: float = Field(default=1.0, gt=0)
    max_delay_seconds: float = Field(default=30.0, gt=0)

    @field_validator("max_delay_seconds")
    @classmethod
    def validate_max_delay(cls, v: float, info) -> float:
        base = info.data.get("base_delay_seconds", 0)
        if v < base:
            raise ValueError(f"max_delay_seconds ({v}) must be >= base_delay_seconds ({base})")
        return v


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    files: FilesConfig = Field(default_factory=FilesConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)


# ===== Policy Schema =====
class BuyTier(BaseModel):
    min_score: float = Field(ge=0, le=100)
    factor: float = Field(gt=0)


class ShortTier(BaseModel):
    max_score: float = Field(ge=0, le=100)
    multiplier: float = Field(gt=0)


class SizingConfig(BaseModel):
    """Score thresholds and position sizing"""
    unit_divisor: float = Field(default=500.0, gt=0, description="Equity / divisor = position unit")
    buy_threshold: float = Field(default=70.0, ge=0, le=100)
    sell_threshold: float = Field(default=45.0, ge=0, le=100)
    short_threshold: float = Field(default=30.0, ge=0, le=100)
    min_notional_usd: float = Field(default=5_000_000.0, ge=0, description="Prior-day volume * price gate")
    buy_tiers: List[BuyTier] = Field(default_factory=list)
    short_tiers: List[ShortTier] = Field(default_factory=list)
    buy_limit_offset: float = Field(default=1.007, gt=1.0, le=1.1)
    sell_limit_offset: float = Field(default=0.99, gt=0.9, lt=1.0)
    short_limit_offset: float = Field(default=0.993, gt=0.9, lt=1.0)


class RiskPolicyConfig(BaseModel):
    """Margin buffer and exits"""
    margin_buffer_pct: float = Field(default=2.0, ge=0, lt=100)
    trim_slice_pct: float = Field(default=2.0, gt=0, le=100)
    trailing_stop_pct: float = Field(default=5.0, gt=0, lt=100)
    threshold_sweep_pct: float = Field(default=3.5, gt=0, lt=100)
    sell_exit_offset: float = Field(default=0.99, gt=0.9, lt=1.0)
    cover_exit_offset: float = Field(default=1.01, gt=1.0, le=1.1)


class ClockRange(BaseModel):
    """[start, end) in America/New_York clock time"""
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def validate_clock(cls, v: str) -> str:
        if not CLOCK_PATTERN.match(str(v)):
            raise ValueError(f"expected HH:MM, got {v!r}")
        return str(v)


class HousekeepingConfig(BaseModel):
    stale_order_seconds: float = Field(default=300.0, gt=0)
    order_window_start: str = Field(default="04:00")
    order_window_end: str = Field(default="20:00")
    order_blackouts: List[ClockRange] = Field(
        default_factory=lambda: [ClockRange(start="09:00", end="09:30")]
    )

    @field_validator("order_window_start", "order_window_end")
    @classmethod
    def validate_clock(cls, v: str) -> str:
        if not CLOCK_PATTERN.match(str(v)):
            raise ValueError(f"expected HH:MM, got {v!r}")
        return str(v)


class IngestionConfig(BaseModel):
    policy: str = Field(default="attempt_once", pattern="^(attempt_once|retry_failed)$")
    watch_interval_seconds: float = Field(default=0.25, gt=0)


class ScheduleConfig(BaseModel):
    """Per-activity periods in seconds"""
    risk_seconds: float = Field(default=10.0, gt=0)
    stale_seconds: float = Field(default=30.0, gt=0)
    window_seconds: float = Field(default=30.0, gt=0)
    sweep_seconds: float = Field(default=30.0, gt=0)
    ingest_poll_seconds: float = Field(default=1.0, gt=0)


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    risk: RiskPolicyConfig = Field(default_factory=RiskPolicyConfig)
    housekeeping: HousekeepingConfig = Field(default_factory=HousekeepingConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)


# ===== Validation Functions =====
def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        data = yaml.safe_load(f)
    return data or {}


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        if not isinstance(config, dict):
            return [f"{filename}: top level must be a mapping"]
        schema(**config)
        logger.info(f"{filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{filename}: {field}: {error['msg']}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks that a per-field schema cannot express.

    Detects:
    - Threshold ordering (short <= sell < buy)
    - Tier scores outside the band they belong to
    - An empty order window or blackout range
    """
    errors = []
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))
    sizing = policy.sizing

    if not (sizing.short_threshold <= sizing.sell_threshold < sizing.buy_threshold):
        errors.append(
            "CONTRADICTION: sizing thresholds must satisfy short_threshold <= sell_threshold < buy_threshold "
            f"(got {sizing.short_threshold}, {sizing.sell_threshold}, {sizing.buy_threshold})"
        )
    for tier in sizing.buy_tiers:
        if tier.min_score < sizing.buy_threshold:
            errors.append(
                f"CONTRADICTION: buy tier min_score {tier.min_score} is below buy_threshold {sizing.buy_threshold}"
            )
    for tier in sizing.short_tiers:
        if tier.max_score > sizing.short_threshold:
            errors.append(
                f"CONTRADICTION: short tier max_score {tier.max_score} is above short_threshold "
                f"{sizing.short_threshold}"
            )

    window = policy.housekeeping
    if _clock_minutes(window.order_window_start) >= _clock_minutes(window.order_window_end):
        errors.append(
            f"UNSAFE: housekeeping order window {window.order_window_start}-{window.order_window_end} is empty"
        )
    for blackout in window.order_blackouts:
        if _clock_minutes(blackout.start) >= _clock_minutes(blackout.end):
            errors.append(f"UNSAFE: housekeeping order blackout {blackout.start}-{blackout.end} is empty")
    return errors


def _clock_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")

    return all_errors


def load_validated(config_dir: str = "config") -> Dict[str, Dict[str, Any]]:
    """Parsed app and policy documents with schema defaults filled in."""
    config_path = Path(config_dir)
    app = AppSchema(**load_yaml_file(config_path / "app.yaml"))
    policy = PolicySchema(**load_yaml_file(config_path / "policy.yaml"))
    return {"app": app.model_dump(), "policy": policy.model_dump()}


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)

    print("Configuration is valid")
    sys.exit(0)
