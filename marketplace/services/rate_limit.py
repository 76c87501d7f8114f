"""OTP request throttle: hourly cap per user via Redis."""

from datetime import datetime

from marketplace.core.config import get_settings
from marketplace.core.logging import get_logger

log = get_logger(__name__)

KEY_PREFIX = "otp:requests"
TTL_SECONDS = 2 * 3600  # bucket outlives its hour


def _key(user_id: str, now: datetime) -> str:
    hour = now.strftime("%Y-%m-%dT%H")
    return f"{KEY_PREFIX}:{user_id}:{hour}"


async def incr_otp_requests(redis, user_id: str, now: datetime) -> int:
    """Increment and return new count for the hour containing `now`; set TTL on first increment."""
    key = _key(user_id, now)
    try:
        n = await redis.incr(key)
        if n == 1:
            await redis.expire(key, TTL_SECONDS)
        return n
    except Exception as e:
        # Throttle fails open when Redis is unreachable
        log.warning("otp_throttle_unavailable", user_id=user_id, reason=str(e)[:200])
        return 0


def otp_hourly_cap() -> int:
    return get_settings().otp_requests_per_hour
