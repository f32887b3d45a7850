"""
Redis distributed locks - serializes rule execution per CRM entity.

Two near-simultaneous webhooks for the same lead could both pass condition
checks before either writes its idempotency marker. The dispatcher wraps
evaluate + check-marker + execute + write-marker in entity_lock().
Uses Redis SET NX with TTL for automatic expiration. While the body runs the
TTL is renewed every ttl/3 seconds.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager, suppress
from typing import Optional

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 60
LOCK_WAIT_SECONDS = 10.0
LOCK_POLL_INTERVAL = 0.1  # 100ms

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""

_EXTEND_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
else
    return 0
end
"""

# _acquire_lock results
HELD = "held"
TIMED_OUT = "timed_out"
UNLOCKED = "unlocked"  # Redis unavailable, proceeding without a lock


def make_lock_key(tenant_id: str, provider: str, entity_id: str) -> str:
    return f"crmbridge:lock:{provider}:{tenant_id}:{entity_id}"


@asynccontextmanager
async def entity_lock(
    tenant_id: str,
    provider: str,
    entity_id: str,
    ttl: int = LOCK_TTL_SECONDS,
    wait: float = LOCK_WAIT_SECONDS,
):
    """
    Acquire a distributed lock for one CRM entity of one tenant.

    Usage:
        async with entity_lock(tenant_id, "amocrm", lead_id):
            # evaluate rules and run actions safely
    """
    lock_key = make_lock_key(tenant_id, provider, entity_id)
    lock_value = uuid.uuid4().hex  # Only release our own lock

    state = await _acquire_lock(lock_key, lock_value, ttl, wait)
    if state == TIMED_OUT:
        raise LockTimeoutError(
            f"Could not acquire lock for {provider} entity {entity_id} within {wait}s"
        )

    renewer: Optional[asyncio.Task] = None
    if state == HELD:
        renewer = asyncio.create_task(_keep_alive(lock_key, lock_value, ttl))
    try:
        yield
    finally:
        if renewer is not None:
            renewer.cancel()
            with suppress(asyncio.CancelledError):
                await renewer
            await _release_lock(lock_key, lock_value)


async def _acquire_lock(key: str, value: str, ttl: int, wait: float) -> str:
    """Try to acquire a Redis lock with polling."""
    try:
        from crmbridge.utils.redis_client import get_redis
        redis = await get_redis()

        was_set = await redis.set(key, value, nx=True, ex=ttl)
        if was_set:
            return HELD

        elapsed = 0.0
        while elapsed < wait:
            await asyncio.sleep(LOCK_POLL_INTERVAL)
            elapsed += LOCK_POLL_INTERVAL
            was_set = await redis.set(key, value, nx=True, ex=ttl)
            if was_set:
                return HELD

        logger.warning("Lock acquisition timed out for %s", key)
        return TIMED_OUT
    except Exception as e:
        # Redis outage must not stall webhook processing
        logger.warning("Redis lock error for %s: %s. Proceeding without lock.", key, str(e))
        return UNLOCKED


async def _keep_alive(key: str, value: str, ttl: int) -> None:
    """Push the lock's expiry forward until cancelled or ownership is lost."""
    interval = max(ttl / 3, LOCK_POLL_INTERVAL)
    while True:
        await asyncio.sleep(interval)
        try:
            from crmbridge.utils.redis_client import get_redis
            redis = await get_redis()
            extended = await redis.eval(_EXTEND_SCRIPT, 1, key, value, int(ttl))
        except Exception as e:
            logger.warning("Redis lock renewal error for %s: %s", key, str(e))
            continue
        if not extended:
            logger.warning("Lock %s expired or was taken over before the run finished", key)
            return


async def _release_lock(key: str, value: str) -> None:
    """Release a Redis lock only if we still own it (compare-and-delete)."""
    try:
        from crmbridge.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.eval(_RELEASE_SCRIPT, 1, key, value)
    except Exception as e:
        logger.warning("Redis lock release error for %s: %s", key, str(e))


class LockTimeoutError(Exception):
    """Raised when an entity lock cannot be acquired within the wait window."""
    pass
