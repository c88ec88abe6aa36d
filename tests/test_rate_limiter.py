import pytest
from mitigation.core.errors import ValidationError
from mitigation.security.rate_limiter import PolicyScope, RateLimitPolicy, retry_after_seconds
from mitigation.services.alerting import AlertLevel


def check(engine, ip, endpoint=None, api_key=None, window=60, max_requests=10, burst=3):
    return engine.check_rate_limit(ip, endpoint, api_key, window, max_requests, burst)


def test_allows_up_to_max_plus_burst(engine):
    decisions = [check(engine, "203.0.113.5") for _ in range(13)]
    assert all(d.allowed for d in decisions)

    denied = check(engine, "203.0.113.5")
    assert denied.allowed is False
    assert denied.reason == "rate_limited"
    assert denied.matched_scope == "ip"
    assert denied.triggering_count == 13


def test_window_slides_after_retry_after(engine, clock):
    for _ in range(13):
        check(engine, "203.0.113.5")

    denied = check(engine, "203.0.113.5")
    assert denied.allowed is False
    assert denied.retry_after == 61

    clock.advance(60)
    assert check(engine, "203.0.113.5").allowed is False

    clock.advance(1)
    assert check(engine, "203.0.113.5").allowed is True


def test_denied_requests_do_not_extend_the_window(engine, clock):
    for _ in range(13):
        check(engine, "203.0.113.5")
    for _ in range(5):
        assert check(engine, "203.0.113.5").allowed is False

    clock.advance(61)
    assert check(engine, "203.0.113.5").allowed is True


def test_sources_are_isolated(engine):
    for _ in range(14):
        check(engine, "203.0.113.5")
    assert check(engine, "203.0.113.5").allowed is False
    assert check(engine, "198.51.100.7").allowed is True


def test_endpoints_are_isolated(engine):
    for _ in range(2):
        assert check(engine, "203.0.113.5", "/search", max_requests=2, burst=0).allowed is True
    denied = check(engine, "203.0.113.5", "/search", max_requests=2, burst=0)
    assert denied.allowed is False
    assert denied.matched_scope == "endpoint"

    assert check(engine, "203.0.113.5", "/items", max_requests=2, burst=0).allowed is True


def test_api_key_scope_is_used_when_key_given(engine):
    for _ in range(2):
        check(engine, "203.0.113.5", "/search", "key-a", max_requests=2, burst=0)
    denied = check(engine, "203.0.113.5", "/search", "key-a", max_requests=2, burst=0)
    assert denied.allowed is False
    assert denied.matched_scope == "api_key"
    assert check(engine, "203.0.113.5", "/search", "key-b", max_requests=2, burst=0).allowed is True


def test_reset_clears_every_scope_of_the_ip(engine):
    for endpoint in ("/a", "/b"):
        for _ in range(3):
            check(engine, "203.0.113.5", endpoint, max_requests=2, burst=0)

    engine.reset_rate_limit("203.0.113.5")

    assert check(engine, "203.0.113.5", "/a", max_requests=2, burst=0).allowed is True
    assert check(engine, "203.0.113.5", "/b", max_requests=2, burst=0).allowed is True


def test_endpoint_reset_leaves_other_endpoints_alone(engine):
    for endpoint in ("/a", "/b"):
        for _ in range(3):
            check(engine, "203.0.113.5", endpoint, max_requests=2, burst=0)

    engine.reset_rate_limit("203.0.113.5", "/a")

    assert check(engine, "203.0.113.5", "/a", max_requests=2, burst=0).allowed is True
    assert check(engine, "203.0.113.5", "/b", max_requests=2, burst=0).allowed is False


def test_stats_has_no_side_effects(engine):
    for _ in range(3):
        check(engine, "203.0.113.5")

    first = engine.get_rate_limit_stats("203.0.113.5")
    second = engine.get_rate_limit_stats("203.0.113.5")

    assert first == second
    assert first["ip_per_minute"] == 3
    assert first["ip_per_hour"] == 3
    assert "endpoint_per_minute" not in first


def test_configured_tiers_apply_independently(clock):
    from conftest import make_engine, make_settings

    engine = make_engine(
        make_settings(rate_limit_per_ip_per_minute=100, rate_limit_per_ip_per_hour=5, rate_limit_burst_size=0),
        clock
    )
    for _ in range(5):
        assert engine.check_rate_limit("203.0.113.5").allowed is True
        clock.advance(120)

    denied = engine.check_rate_limit("203.0.113.5")
    assert denied.allowed is False
    assert denied.matched_scope == "ip_per_hour"


def test_denial_emits_one_warning_per_window(engine, emitter):
    for _ in range(16):
        check(engine, "203.0.113.5")

    warnings = emitter.of_level(AlertLevel.WARNING)
    assert len(warnings) == 1
    assert warnings[0][2] == "rate_limit:203.0.113.5:ip"


def test_malformed_input_is_rejected(engine):
    with pytest.raises(ValidationError):
        check(engine, "999.1.1.1")
    with pytest.raises(ValidationError):
        check(engine, "203.0.113.5", "no-leading-slash")
    with pytest.raises(ValidationError):
        check(engine, "203.0.113.5", max_requests=0)


def test_policy_validation():
    with pytest.raises(ValidationError):
        RateLimitPolicy("bad", PolicyScope.IP, 0, 10)
    with pytest.raises(ValidationError):
        RateLimitPolicy("bad", PolicyScope.IP, 60, 10, -1)
    assert RateLimitPolicy("ok", PolicyScope.IP, 60, 10, 3).effective_limit == 13


def test_connection_limiter_counts_only_connections(engine):
    for _ in range(25):
        assert engine.check_connection("203.0.113.5").allowed is True
    assert engine.check_connection("203.0.113.5").allowed is False

    assert engine.get_rate_limit_stats("203.0.113.5")["ip_per_minute"] == 0
    assert check(engine, "203.0.113.5").allowed is True


def test_retry_after_rounds_up_past_the_window_edge(clock):
    oldest = clock.now()
    assert retry_after_seconds(oldest, 60, oldest) == 61
    assert retry_after_seconds(oldest, 60, clock.advance(10.5)) == 50
    assert retry_after_seconds(None, 60, oldest) == 60
