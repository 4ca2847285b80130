"""
Configuration management with environment variable support and validation.

Design principles:
- Every clinical threshold is policy, not physiology: all of it is configurable
- Validation at startup (fail fast)
- Type safety with Pydantic
- Environment-specific logging (console in development, JSON elsewhere)
"""

import os
from functools import lru_cache
from typing import Any, Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from .env file
load_dotenv()


class ClassifierPolicy(BaseModel):
    """Thresholds and debounce rules for the status classifier."""

    # Critical band
    critical_heart_rate_high: float = Field(default=130.0, gt=0.0)
    critical_heart_rate_low: float = Field(default=40.0, ge=0.0)
    critical_temperature_high: float = Field(default=39.0, gt=0.0)
    critical_temperature_low: float = Field(default=35.0, gt=0.0)
    critical_oxygen_low: float = Field(default=90.0, ge=0.0, le=100.0)

    # Warning band
    warning_heart_rate_high: float = Field(default=100.0, gt=0.0)
    warning_heart_rate_low: float = Field(default=60.0, ge=0.0)
    warning_temperature_high: float = Field(default=37.5, gt=0.0)
    warning_temperature_low: float = Field(default=36.0, gt=0.0)
    warning_systolic_high: float = Field(default=140.0, gt=0.0)

    # Escalates without debounce
    immediate_oxygen_low: float = Field(
        default=80.0, ge=0.0, le=100.0, description="SpO2 below this escalates immediately"
    )

    # Debounce
    window_size: int = Field(default=5, ge=1, description="Readings kept per patient")
    confirm_readings: int = Field(
        default=2, ge=1, description="Consecutive abnormal readings that confirm a tier"
    )
    confirm_seconds: float = Field(
        default=10.0, gt=0.0, description="Elapsed reading time that confirms a tier"
    )

    @model_validator(mode="after")
    def warning_band_inside_critical_band(self) -> "ClassifierPolicy":
        """The warning band must sit strictly inside the critical band."""
        if not self.critical_heart_rate_low < self.warning_heart_rate_low:
            raise ValueError("warning_heart_rate_low must be above critical_heart_rate_low")
        if not self.warning_heart_rate_high < self.critical_heart_rate_high:
            raise ValueError("warning_heart_rate_high must be below critical_heart_rate_high")
        if not self.critical_temperature_low < self.warning_temperature_low:
            raise ValueError("warning_temperature_low must be above critical_temperature_low")
        if not self.warning_temperature_high < self.critical_temperature_high:
            raise ValueError("warning_temperature_high must be below critical_temperature_high")
        if self.immediate_oxygen_low > self.critical_oxygen_low:
            raise ValueError("immediate_oxygen_low must not exceed critical_oxygen_low")
        return self

    @model_validator(mode="after")
    def window_holds_confirmation_run(self) -> "ClassifierPolicy":
        """A window shorter than the confirmation run could never confirm by count."""
        if self.window_size < self.confirm_readings:
            raise ValueError("window_size must be at least confirm_readings")
        return self


class ConnectionConfig(BaseModel):
    """Telemetry liveness configuration."""

    grace_period_seconds: float = Field(
        default=15.0, gt=0.0, description="Silence before a stream is DEGRADED"
    )
    timeout_period_seconds: float = Field(
        default=60.0, gt=0.0, description="Silence before a stream is DISCONNECTED"
    )
    sweep_interval_seconds: float = Field(
        default=5.0, gt=0.0, description="Interval between liveness sweeps"
    )

    @model_validator(mode="after")
    def grace_before_timeout(self) -> "ConnectionConfig":
        if self.grace_period_seconds >= self.timeout_period_seconds:
            raise ValueError("grace_period_seconds must be shorter than timeout_period_seconds")
        return self


class AlertConfig(BaseModel):
    """Alert lifecycle configuration."""

    clear_debounce_seconds: float = Field(
        default=30.0, ge=0.0, description="Sustained NORMAL time before vitals alerts resolve"
    )
    event_history_size: int = Field(
        default=1000, gt=0, description="Number of recent alert events kept in memory"
    )
    resolved_retention: int = Field(
        default=200, gt=0, description="Resolved alerts kept per patient for lookups"
    )


class TriageConfig(BaseModel):
    """Facility-side triage configuration."""

    facility_id: str = Field(default="main", description="Default facility for new patients")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    classifier: ClassifierPolicy = Field(default_factory=ClassifierPolicy)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    triage: TriageConfig = Field(default_factory=TriageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


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

    def _env_overrides(prefix: str, model: type[BaseModel]) -> dict[str, str]:
        # CLASSIFIER__WINDOW_SIZE=7 -> {"window_size": "7"}
        overrides = {}
        for name in model.model_fields:
            value = os.getenv(f"{prefix}__{name.upper()}")
            if value is not None:
                overrides[name] = value
        return overrides

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    classifier_policy = ClassifierPolicy(**_env_overrides("CLASSIFIER", ClassifierPolicy))
    connection_config = ConnectionConfig(**_env_overrides("CONNECTION", ConnectionConfig))
    alert_config = AlertConfig(**_env_overrides("ALERTS", AlertConfig))
    triage_config = TriageConfig(facility_id=os.getenv("FACILITY_ID", "main"))

    # Logging config
    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        classifier=classifier_policy,
        connection=connection_config,
        alerts=alert_config,
        triage=triage_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def reset_config_cache() -> None:
    """Drop the cached configuration so the next call re-reads the environment."""
    get_config.cache_clear()


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"Configuration loaded for {config.environment} environment")
    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def get_threshold_table(config: AppConfig | None = None) -> dict[str, dict[str, Any]]:
    """Flatten the classifier policy into per-vital bands for display."""
    policy = (config or get_config()).classifier
    return {
        "heart_rate": {
            "critical": (policy.critical_heart_rate_low, policy.critical_heart_rate_high),
            "warning": (policy.warning_heart_rate_low, policy.warning_heart_rate_high),
        },
        "temperature": {
            "critical": (policy.critical_temperature_low, policy.critical_temperature_high),
            "warning": (policy.warning_temperature_low, policy.warning_temperature_high),
        },
        "oxygen_saturation": {
            "critical": (policy.critical_oxygen_low, None),
            "immediate": (policy.immediate_oxygen_low, None),
        },
        "systolic": {"warning": (None, policy.warning_systolic_high)},
    }


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nCLASSIFIER")
    for vital, bands in get_threshold_table(config).items():
        print(f"{vital}: {bands}")
    print(f"Window: {config.classifier.window_size} readings")
    print(
        f"Debounce: {config.classifier.confirm_readings} readings"
        f" or {config.classifier.confirm_seconds}s"
    )

    print("\nCONNECTION")
    print(f"Grace Period: {config.connection.grace_period_seconds}s")
    print(f"Timeout Period: {config.connection.timeout_period_seconds}s")
    print(f"Sweep Interval: {config.connection.sweep_interval_seconds}s")

    print("\nALERTS")
    print(f"Clear Debounce: {config.alerts.clear_debounce_seconds}s")


if __name__ == "__main__":
    # Test configuration loading
    validate_config()
    print_config_summary()
