import redis
import redis.asyncio as aioredis

from fundops.core.config import settings

# Shared Redis clients (created once, reused across calls)
_redis: aioredis.Redis | None = None
_sync_redis: redis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


def get_sync_redis() -> redis.Redis:
    """Blocking client for Celery tasks, which run outside the event loop."""
    global _sync_redis
    if _sync_redis is None:
        _sync_redis = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    return _sync_redis


# ─── Notification job correlation ─────────────────────────────────────────────

_JOB_PREFIX = "capital_call_job:"

# Delete the key only while it still names the caller's task id.
COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def job_key(job_type: str, correlation_id: str) -> str:
    return f"{_JOB_PREFIX}{job_type}:{correlation_id}"


def claim_job(job_type: str, correlation_id: str, task_id: str) -> bool:
    """Atomically take ownership of a fired job. False means it was cancelled or superseded."""
    r = get_sync_redis()
    return r.eval(COMPARE_AND_DELETE, 1, job_key(job_type, correlation_id), task_id) == 1

