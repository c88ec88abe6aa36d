import enum
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from mitigation.core.errors import ConfigurationError


class FailurePolicy(enum.Enum):
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class Settings(BaseSettings):
    database_url: str = "sqlite:///./mitigation.db"
    redis_url: Optional[str] = None
    environment: str = "development"
    log_level: str = "INFO"
    log_json: bool = False

    store_timeout_seconds: float = 2.0
    failure_policy: FailurePolicy = FailurePolicy.FAIL_OPEN
    ip_status_cache_ttl_seconds: int = 300

    rate_limit_per_ip_per_minute: int = 60
    rate_limit_per_ip_per_hour: int = 1000
    rate_limit_per_ip_per_day: int = 10000
    rate_limit_burst_size: int = 10
    rate_limit_per_api_key_per_minute: int = 100
    rate_limit_per_endpoint_per_minute: int = 200
    rate_limit_window_seconds: int = 60

    connection_rate_limit_window_seconds: int = 10
    connection_rate_limit_max: int = 20
    connection_rate_limit_burst: int = 5

    geo_filtering_enabled: bool = False
    geo_allowed_countries: list[str] = []
    geo_blocked_countries: list[str] = []
    geo_database_path: Optional[str] = None
    geo_country_ranges: dict[str, list[str]] = {}

    ddos_window_seconds: int = 60
    ddos_soft_threshold: int = 3000
    ddos_hard_threshold: int = 6000
    ddos_consecutive_windows: int = 3
    ddos_cooldown_seconds: int = 300
    ddos_offender_min_requests: int = 600
    ddos_block_duration_minutes: int = 15
    ddos_concurrent_sources_threshold: int = 500
    ddos_monitored_endpoints: list[str] = []

    abuse_rapid_request_threshold: int = 10
    abuse_rapid_request_window_seconds: int = 10
    abuse_error_rate_threshold: float = 50.0
    abuse_error_rate_min_requests: int = 10
    abuse_excessive_requests_threshold: int = 1000
    abuse_pattern_window_seconds: int = 3600
    abuse_endpoint_diversity_threshold: int = 20
    abuse_endpoint_diversity_window_seconds: int = 300
    abuse_user_agent_diversity_threshold: int = 10
    abuse_baseline_days: int = 7
    abuse_baseline_min_active_hours: int = 3
    abuse_zscore_threshold: float = 3.0
    abuse_baseline_multiplier: float = 3.0
    abuse_transition_min_count: int = 5
    abuse_unexpected_transition_ratio: float = 0.5
    abuse_block_durations_minutes: list[int] = [15, 60, 1440]
    abuse_critical_threshold: float = 0.8
    abuse_high_threshold: float = 0.6
    abuse_medium_threshold: float = 0.4
    abuse_response_actions: dict[str, str] = {
        "low": "log_only",
        "medium": "alert",
        "high": "temporary_block",
        "critical": "escalate_to_ddos",
    }
    access_graph: dict[str, list[str]] = {}

    alert_dedup_window_seconds: int = 3600
    alert_webhook_url: Optional[str] = None
    alert_webhook_timeout_seconds: float = 5.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @field_validator("store_timeout_seconds", "alert_webhook_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator(
        "rate_limit_per_ip_per_minute",
        "rate_limit_per_ip_per_hour",
        "rate_limit_per_ip_per_day",
        "rate_limit_per_api_key_per_minute",
        "rate_limit_per_endpoint_per_minute",
        "rate_limit_window_seconds",
        "connection_rate_limit_window_seconds",
        "connection_rate_limit_max",
        "ddos_window_seconds",
        "ddos_consecutive_windows",
        "ddos_block_duration_minutes",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("rate_limit_burst_size", "connection_rate_limit_burst", "ddos_cooldown_seconds")
    @classmethod
    def _non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("geo_allowed_countries", "geo_blocked_countries")
    @classmethod
    def _upper_countries(cls, value: list[str]) -> list[str]:
        return [code.strip().upper() for code in value if code.strip()]

    @field_validator("abuse_block_durations_minutes")
    @classmethod
    def _durations(cls, value: list[int]) -> list[int]:
        if not value or any(minutes <= 0 for minutes in value):
            raise ValueError("block durations must be a non-empty list of positive minutes")
        return value

    @field_validator("abuse_response_actions")
    @classmethod
    def _response_actions(cls, value: dict[str, str]) -> dict[str, str]:
        allowed = {"log_only", "alert", "temporary_block", "escalate_to_ddos"}
        severities = {"low", "medium", "high", "critical"}
        for severity, action in value.items():
            if severity not in severities:
                raise ValueError(f"unknown severity {severity!r}")
            if action not in allowed:
                raise ValueError(f"unknown response action {action!r} for severity {severity!r}")
        return value

    @model_validator(mode="after")
    def _ddos_thresholds(self):
        if self.ddos_soft_threshold <= 0 or self.ddos_hard_threshold < self.ddos_soft_threshold:
            raise ValueError("ddos thresholds require 0 < soft <= hard")
        if not (0 < self.abuse_medium_threshold <= self.abuse_high_threshold <= self.abuse_critical_threshold):
            raise ValueError("abuse severity thresholds must be increasing")
        return self


def load_settings(**overrides) -> Settings:
    try:
        return Settings(**overrides)
    except PydanticValidationError as e:
        raise ConfigurationError(str(e)) from e
