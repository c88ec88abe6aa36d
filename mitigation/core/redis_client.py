from typing import Optional

import redis

from mitigation.config import Settings


def create_redis(settings: Settings) -> Optional[redis.Redis]:
    if not settings.redis_url:
        return None
    timeout = settings.store_timeout_seconds
    return redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=timeout,
        socket_timeout=timeout
    )
