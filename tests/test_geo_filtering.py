import geoip2.errors
import maxminddb
from mitigation.security.geo_filtering import GeoFilter, GeoIP2CountryResolver, StaticCountryResolver
from conftest import make_engine, make_settings

RANGES = {"CN": ["1.12.0.0/14"], "US": ["3.0.0.0/8"], "RU": ["5.8.0.0/13"]}


def geo_filter(**overrides):
    settings = make_settings(geo_filtering_enabled=True, geo_country_ranges=RANGES, **overrides)
    return GeoFilter(settings, StaticCountryResolver(settings.geo_country_ranges))


def test_resolver_maps_ranges_and_local_addresses():
    resolver = StaticCountryResolver(RANGES)
    assert resolver.country_for("1.12.0.1") == "CN"
    assert resolver.country_for("10.1.2.3") == "LOCAL"
    assert resolver.country_for("8.8.8.8") == "UNKNOWN"
    assert resolver.country_for("2001:db8::1") == "UNKNOWN"


def test_blocked_countries_are_denied():
    geo = geo_filter(geo_blocked_countries=["CN"])
    assert geo.check("1.12.0.1") == (True, "CN")
    assert geo.check("3.1.1.1") == (False, "US")


def test_allow_list_denies_everything_else():
    geo = geo_filter(geo_allowed_countries=["US"])
    assert geo.check("3.1.1.1") == (False, "US")
    assert geo.check("5.8.0.1") == (True, "RU")
    assert geo.check("8.8.8.8") == (False, "UNKNOWN")
    assert geo.check("192.168.1.1") == (False, "LOCAL")


def test_disabled_filter_never_blocks():
    settings = make_settings(geo_filtering_enabled=False, geo_blocked_countries=["CN"], geo_country_ranges=RANGES)
    assert GeoFilter(settings).check("1.12.0.1")[0] is False


def test_rate_limiter_applies_geo_after_whitelist(clock):
    geo = geo_filter(geo_blocked_countries=["CN"])
    engine = make_engine(clock=clock, geo_filter=geo)
    engine.add_ip_to_list("1.12.0.2", "whitelist", "partner office")

    denied = engine.check_rate_limit("1.12.0.1")
    assert denied.allowed is False
    assert denied.reason == "geo_blocked:CN"
    assert engine.check_rate_limit("1.12.0.2").allowed is True


class BrokenReader:
    def __init__(self, error):
        self.error = error

    def country(self, ip_address):
        raise self.error


def test_reader_errors_resolve_to_unknown():
    for error in (maxminddb.InvalidDatabaseError("corrupt"), geoip2.errors.GeoIP2Error("bad"), ValueError("closed")):
        resolver = GeoIP2CountryResolver(reader=BrokenReader(error))
        assert resolver.country_for("1.12.0.1") == "UNKNOWN"


def test_broken_geo_database_does_not_block_requests(clock):
    settings = make_settings(geo_filtering_enabled=True, geo_allowed_countries=["US"])
    geo = GeoFilter(settings, GeoIP2CountryResolver(reader=BrokenReader(maxminddb.InvalidDatabaseError("corrupt"))))
    engine = make_engine(clock=clock, geo_filter=geo)

    decision = engine.check_rate_limit("1.12.0.1")
    assert decision.allowed is True
    assert decision.degraded is False
