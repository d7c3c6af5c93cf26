import logging

import redis
from redis.exceptions import ConnectionError
from tokenguard.core.config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        prefix: str = "login",
        limit: int | None = None,
        window_seconds: int | None = None,
        enabled: bool | None = None,
    ):
        self.prefix = prefix
        self.limit = limit or settings.login_rate_limit
        self.window_seconds = window_seconds or settings.login_rate_window_seconds
        self.enabled = settings.rate_limit_enabled if enabled is None else enabled
        self.client = redis.Redis.from_url(settings.redis_url, decode_responses=True)

    def hit(self, key: str) -> bool:
        if not self.enabled:
            return True
        redis_key = f"{self.prefix}:{key}"
        try:
            count = self.client.incr(redis_key)
            if count == 1:
                self.client.expire(redis_key, self.window_seconds)
            return count <= self.limit
        except ConnectionError:
            logger.warning("Rate limiter unavailable; allowing %s", redis_key)
            return True

    def reset(self, key: str) -> None:
        if not self.enabled:
            return
        redis_key = f"{self.prefix}:{key}"
        try:
            self.client.delete(redis_key)
        except ConnectionError:
            return
