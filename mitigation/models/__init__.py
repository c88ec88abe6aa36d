from mitigation.models.security_event import SecurityEvent, EventType
from mitigation.models.ip_list import IPListEntry, IPListType
from mitigation.models.rate_limit_reset import RateLimitReset
from mitigation.models.detector_state import DetectorStateRecord
from mitigation.models.alert_dedup import AlertDedupKey

__all__ = [
    "SecurityEvent",
    "EventType",
    "IPListEntry",
    "IPListType",
    "RateLimitReset",
    "DetectorStateRecord",
    "AlertDedupKey",
]
