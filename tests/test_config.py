import pytest
from mitigation.config import FailurePolicy, load_settings
from mitigation.core.errors import ConfigurationError


def test_defaults_follow_documented_tiers():
    settings = load_settings(database_url="sqlite://")
    assert settings.rate_limit_per_ip_per_minute == 60
    assert settings.rate_limit_per_ip_per_hour == 1000
    assert settings.rate_limit_per_ip_per_day == 10000
    assert settings.rate_limit_burst_size == 10
    assert settings.failure_policy == FailurePolicy.FAIL_OPEN


def test_failure_policy_from_string():
    settings = load_settings(database_url="sqlite://", failure_policy="fail_closed")
    assert settings.failure_policy == FailurePolicy.FAIL_CLOSED


def test_invalid_values_raise_configuration_error():
    with pytest.raises(ConfigurationError):
        load_settings(store_timeout_seconds=0)
    with pytest.raises(ConfigurationError):
        load_settings(ddos_soft_threshold=100, ddos_hard_threshold=50)
    with pytest.raises(ConfigurationError):
        load_settings(abuse_response_actions={"high": "nuke"})
    with pytest.raises(ConfigurationError):
        load_settings(rate_limit_burst_size=-1)


def test_country_codes_are_uppercased():
    settings = load_settings(geo_blocked_countries=["cn", " ru "])
    assert settings.geo_blocked_countries == ["CN", "RU"]
