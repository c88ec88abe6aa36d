import ipaddress
from typing import Dict, List, Optional, Protocol, Tuple

import geoip2.database
import geoip2.errors
import maxminddb

from mitigation.config import Settings
from mitigation.core.logger import logger

LOCAL = "LOCAL"
UNKNOWN = "UNKNOWN"


class CountryResolver(Protocol):
    def country_for(self, ip_address: str) -> str:
        ...


def _is_local(ip: ipaddress._BaseAddress) -> bool:
    return ip.is_private or ip.is_loopback or ip.is_link_local


class StaticCountryResolver:
    """Resolves countries from configured CIDR ranges."""

    def __init__(self, country_ranges: Dict[str, List[str]]):
        self.networks = [
            (country.upper(), ipaddress.ip_network(cidr, strict=False))
            for country, ranges in country_ranges.items()
            for cidr in ranges
        ]

    def country_for(self, ip_address: str) -> str:
        ip = ipaddress.ip_address(ip_address)
        if _is_local(ip):
            return LOCAL
        for country, network in self.networks:
            if ip.version == network.version and ip in network:
                return country
        return UNKNOWN


class GeoIP2CountryResolver:
    def __init__(self, database_path: Optional[str] = None, reader: Optional[geoip2.database.Reader] = None):
        self.reader = reader or geoip2.database.Reader(database_path)

    def country_for(self, ip_address: str) -> str:
        ip = ipaddress.ip_address(ip_address)
        if _is_local(ip):
            return LOCAL
        try:
            response = self.reader.country(ip_address)
        except geoip2.errors.AddressNotFoundError:
            return UNKNOWN
        except (geoip2.errors.GeoIP2Error, maxminddb.InvalidDatabaseError, ValueError) as e:
            # corrupt or closed database
            logger.warning("geoip_lookup_failed", ip_address=ip_address, error=str(e))
            return UNKNOWN
        return (response.country.iso_code or UNKNOWN).upper()

    def close(self) -> None:
        self.reader.close()


class GeoFilter:
    def __init__(self, settings: Settings, resolver: Optional[CountryResolver] = None):
        self.enabled = settings.geo_filtering_enabled
        self.allowed = set(settings.geo_allowed_countries)
        self.blocked = set(settings.geo_blocked_countries)
        if resolver is None:
            if settings.geo_database_path:
                resolver = GeoIP2CountryResolver(settings.geo_database_path)
            else:
                resolver = StaticCountryResolver(settings.geo_country_ranges)
        self.resolver = resolver

    def check(self, ip_address: str) -> Tuple[bool, str]:
        """Returns (blocked, country). Local and unresolvable addresses always pass."""
        if not self.enabled:
            return False, UNKNOWN

        country = self.resolver.country_for(ip_address)
        if country in (LOCAL, UNKNOWN):
            return False, country

        if country in self.blocked:
            blocked = True
        elif self.allowed and country not in self.allowed:
            blocked = True
        else:
            blocked = False

        if blocked:
            logger.warning("geo_blocked", ip_address=ip_address, country=country)
        return blocked, country
