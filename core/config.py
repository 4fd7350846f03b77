"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Process-local defaults (bed layout is rebuilt from seed data on startup)
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables from .env file
load_dotenv()


class SeedBed(BaseModel):
    """A bed provisioned at startup."""

    bed_id: str = Field(min_length=1)
    patient_id: str = Field(min_length=1)
    patient_name: str = Field(min_length=1)


DEFAULT_SEED_BEDS: tuple[SeedBed, ...] = (
    SeedBed(bed_id="BED001", patient_id="P001", patient_name="John Smith"),
    SeedBed(bed_id="BED002", patient_id="P002", patient_name="Sarah Johnson"),
    SeedBed(bed_id="BED003", patient_id="P003", patient_name="Michael Brown"),
    SeedBed(bed_id="BED004", patient_id="P004", patient_name="Emily Davis"),
)


class MonitoringConfig(BaseModel):
    """Bed registry, refresh loop and time-series storage configuration."""

    data_dir: str = Field(default="./monitor-data", description="Directory holding bed series")
    refresh_interval_seconds: float = Field(
        default=1.0, gt=0.0, description="Interval between refresh ticks"
    )
    cache_capacity: int = Field(
        default=100, gt=0, description="Most recent samples cached per bed"
    )
    read_timeout_seconds: float = Field(
        default=2.0, gt=0.0, description="Time budget for reading one bed's series per tick"
    )
    max_concurrent_reads: int = Field(
        default=10, gt=0, description="Maximum number of bed series read concurrently"
    )
    shutdown_grace_seconds: float = Field(
        default=5.0, gt=0.0, description="How long stop() waits for an in-flight tick"
    )
    provision_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Time budget for provisioning or discarding a bed series"
    )

    # Synthetic history written when a bed series is provisioned
    seed_history_hours: float = Field(default=24.0, ge=0.0)
    seed_interval_seconds: float = Field(default=10.0, gt=0.0)
    seed_beds: list[SeedBed] = Field(default_factory=lambda: list(DEFAULT_SEED_BEDS))

    @field_validator("seed_beds")
    def unique_seed_beds(cls, v: list[SeedBed]) -> list[SeedBed]:
        bed_ids = [bed.bed_id for bed in v]
        if len(bed_ids) != len(set(bed_ids)):
            raise ValueError("seed bed ids must be unique")
        return v


class AuditConfig(BaseModel):
    """Activity log configuration."""

    store: Literal["memory", "sql"] = Field(default="sql", description="Activity store backend")
    queue_max_size: int = Field(
        default=1000, gt=0, description="Pending activity events before new ones are dropped"
    )
    flush_timeout_seconds: float = Field(
        default=2.0, gt=0.0, description="Upper bound on waiting for pending writes"
    )
    log_access_denials: bool = Field(
        default=False, description="Record ACCESS_DENIED events for rejected gated calls"
    )
    default_query_limit: int = Field(default=100, gt=0)
    max_query_limit: int = Field(default=1000, gt=0)

    @model_validator(mode="after")
    def default_within_max(self) -> "AuditConfig":
        if self.default_query_limit > self.max_query_limit:
            raise ValueError("default_query_limit must not exceed max_query_limit")
        return self


class DatabaseConfig(BaseModel):
    """Database configuration for the SQL activity store."""

    url: str = Field(default="sqlite:///./monitoring.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Echo SQL statements")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")

    # Log destinations
    enable_file_logging: bool = Field(default=False, description="Enable file logging")
    log_file_path: str = Field(default="./logs/monitoring.log", description="Path to log file")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def parse_seed_beds(raw: str) -> list[SeedBed]:
    """Parse `BED001:P001:John Smith;BED002:P002:Sarah Johnson`."""
    beds = []
    for entry in raw.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        parts = [part.strip() for part in entry.split(":", 2)]
        if len(parts) != 3:
            raise ValueError(f"Malformed seed bed entry: {entry!r}")
        beds.append(SeedBed(bed_id=parts[0], patient_id=parts[1], patient_name=parts[2]))
    return beds


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    # Monitoring config with environment overrides
    seed_raw = os.getenv("MONITOR_SEED_BEDS")
    monitoring_config = MonitoringConfig(
        data_dir=os.getenv("MONITOR_DATA_DIR", "./monitor-data"),
        refresh_interval_seconds=float(os.getenv("MONITOR_REFRESH_INTERVAL_SECONDS", "1.0")),
        cache_capacity=int(os.getenv("MONITOR_CACHE_CAPACITY", "100")),
        read_timeout_seconds=float(os.getenv("MONITOR_READ_TIMEOUT_SECONDS", "2.0")),
        max_concurrent_reads=int(os.getenv("MONITOR_MAX_CONCURRENT_READS", "10")),
        shutdown_grace_seconds=float(os.getenv("MONITOR_SHUTDOWN_GRACE_SECONDS", "5.0")),
        provision_timeout_seconds=float(
            os.getenv("MONITOR_PROVISION_TIMEOUT_SECONDS", "30.0")
        ),
        seed_history_hours=float(os.getenv("MONITOR_SEED_HISTORY_HOURS", "24")),
        seed_interval_seconds=float(os.getenv("MONITOR_SEED_INTERVAL_SECONDS", "10")),
        seed_beds=parse_seed_beds(seed_raw) if seed_raw is not None else list(DEFAULT_SEED_BEDS),
    )

    audit_store = os.getenv("AUDIT_STORE", "sql").strip().lower()
    audit_config = AuditConfig(
        store="memory" if audit_store == "memory" else "sql",
        queue_max_size=int(os.getenv("AUDIT_QUEUE_MAX_SIZE", "1000")),
        flush_timeout_seconds=float(os.getenv("AUDIT_FLUSH_TIMEOUT_SECONDS", "2.0")),
        log_access_denials=_parse_bool(os.getenv("AUDIT_LOG_ACCESS_DENIALS"), False),
    )

    # Database config from environment
    database_config = DatabaseConfig(
        url=os.getenv("DATABASE_URL", "sqlite:///./monitoring.db"),
        echo=_parse_bool(os.getenv("DATABASE_ECHO"), False),
    )

    # Logging config
    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
        enable_file_logging=_parse_bool(os.getenv("LOG_TO_FILE"), False),
        log_file_path=os.getenv("LOG_FILE_PATH", "./logs/monitoring.log"),
    )

    # Application config
    return AppConfig(
        environment=environment,
        debug=debug,
        monitoring=monitoring_config,
        audit=audit_config,
        database=database_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


# Configuration validation and helpers
def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"✅ Configuration loaded for {config.environment} environment")

        if config.audit.store == "sql":
            print(f"✅ Activity log persisted to {config.database.url}")
        else:
            print("⚠️  Activity log kept in memory only")

    except Exception as e:
        print(f"❌ Configuration validation failed: {e}")
        raise


# Development helpers
def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\n🔧 CONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\n🛏️  MONITORING CONFIGURATION")
    print(f"Data Directory: {config.monitoring.data_dir}")
    print(f"Refresh Interval: {config.monitoring.refresh_interval_seconds}s")
    print(f"Cache Capacity: {config.monitoring.cache_capacity} samples/bed")
    print(f"Seed Beds: {', '.join(bed.bed_id for bed in config.monitoring.seed_beds)}")

    print("\n📜 AUDIT CONFIGURATION")
    print(f"Store: {config.audit.store}")
    print(f"Access Denials Audited: {config.audit.log_access_denials}")


if __name__ == "__main__":
    # Test configuration loading
    validate_config()
    print_config_summary()
