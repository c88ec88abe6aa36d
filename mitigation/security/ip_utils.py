import ipaddress
from typing import Optional

from mitigation.core.errors import ValidationError

MAX_ENDPOINT_LENGTH = 2048
MAX_API_KEY_LENGTH = 256


def normalize_ip(ip_address: str) -> str:
    """Return the canonical text form of an IPv4/IPv6 address or raise ValidationError."""
    if not isinstance(ip_address, str) or not ip_address.strip():
        raise ValidationError("ip address is required")
    try:
        return str(ipaddress.ip_address(ip_address.strip()))
    except ValueError as e:
        raise ValidationError(f"invalid ip address: {ip_address!r}") from e


def validate_endpoint(endpoint: Optional[str]) -> Optional[str]:
    if endpoint is None:
        return None
    if not isinstance(endpoint, str) or not endpoint:
        raise ValidationError("endpoint must be a non-empty string")
    if len(endpoint) > MAX_ENDPOINT_LENGTH:
        raise ValidationError("endpoint is too long")
    if not endpoint.startswith("/"):
        raise ValidationError(f"endpoint must start with '/': {endpoint!r}")
    if any(ch.isspace() or ord(ch) < 32 for ch in endpoint):
        raise ValidationError(f"endpoint contains whitespace or control characters: {endpoint!r}")
    return endpoint


def validate_api_key(api_key: Optional[str]) -> Optional[str]:
    if api_key is None:
        return None
    if not isinstance(api_key, str) or not api_key:
        raise ValidationError("api key must be a non-empty string")
    if len(api_key) > MAX_API_KEY_LENGTH or any(ch.isspace() or ord(ch) < 32 for ch in api_key):
        raise ValidationError("malformed api key")
    return api_key
