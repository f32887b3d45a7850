"""
CRM cache - Redis read-through cache for rule lists, CRM metadata and the
shared LPTracker token.

One CrmCache object is built at startup and handed to the dispatcher,
connectors and admin endpoints. TTLs come from settings; writes that change
the underlying data call the invalidate_* methods. Redis failures degrade to
direct loads, never to errors.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

KEY_PREFIX = "crmbridge:cache"

Loader = Callable[[], Awaitable[Any]]


async def _default_redis():
    from crmbridge.utils.redis_client import get_redis
    return await get_redis()


class CrmCache:
    def __init__(
        self,
        redis_factory: Optional[Callable[[], Awaitable[Any]]] = None,
        rules_ttl: int = 300,
        metadata_ttl: int = 1800,
        token_ttl: int = 43200,
    ):
        self._redis_factory = redis_factory or _default_redis
        self.rules_ttl = rules_ttl
        self.metadata_ttl = metadata_ttl
        self.token_ttl = token_ttl

    @classmethod
    def from_settings(cls, settings=None) -> "CrmCache":
        if settings is None:
            from crmbridge.config import get_settings
            settings = get_settings()
        return cls(
            rules_ttl=settings.rules_cache_ttl_seconds,
            metadata_ttl=settings.metadata_cache_ttl_seconds,
            token_ttl=settings.lptracker_token_ttl_seconds,
        )

    # -- keys --

    @staticmethod
    def rules_key(tenant_id: str, provider: str) -> str:
        return f"{KEY_PREFIX}:rules:{tenant_id}:{provider}"

    @staticmethod
    def metadata_key(tenant_id: str, provider: str, type: str) -> str:
        return f"{KEY_PREFIX}:metadata:{tenant_id}:{provider}:{type}"

    @staticmethod
    def token_key() -> str:
        return f"{KEY_PREFIX}:lptracker_token"

    # -- rules --

    async def get_rules(self, tenant_id: str, provider: str, loader: Loader) -> list[dict]:
        """Rules for (tenant, provider), loaded through `loader` on a miss."""
        rules = await self._read_through(
            self.rules_key(tenant_id, provider), self.rules_ttl, loader,
        )
        return rules or []

    async def invalidate_rules(self, tenant_id: str, provider: Optional[str] = None) -> None:
        if provider:
            await self._delete(self.rules_key(tenant_id, provider))
        else:
            await self._delete_pattern(f"{KEY_PREFIX}:rules:{tenant_id}:*")

    # -- metadata --

    async def get_metadata(self, tenant_id: str, provider: str, type: str, loader: Loader) -> Optional[Any]:
        return await self._read_through(
            self.metadata_key(tenant_id, provider, type), self.metadata_ttl, loader,
        )

    async def set_metadata(self, tenant_id: str, provider: str, type: str, data: Any) -> None:
        await self._set(self.metadata_key(tenant_id, provider, type), data, self.metadata_ttl)

    async def invalidate_metadata(self, tenant_id: str, provider: Optional[str] = None) -> None:
        pattern = f"{KEY_PREFIX}:metadata:{tenant_id}:"
        pattern += f"{provider}:*" if provider else "*"
        await self._delete_pattern(pattern)

    # -- LPTracker token --

    async def get_lptracker_token(self) -> Optional[str]:
        try:
            redis = await self._redis_factory()
            token = await redis.get(self.token_key())
            return token or None
        except Exception as e:
            logger.warning("Token cache read failed: %s", str(e))
            return None

    async def set_lptracker_token(self, token: str) -> None:
        try:
            redis = await self._redis_factory()
            await redis.set(self.token_key(), token, ex=self.token_ttl)
        except Exception as e:
            logger.warning("Token cache write failed: %s", str(e))

    async def invalidate_lptracker_token(self) -> None:
        await self._delete(self.token_key())

    # -- admin --

    async def clear_all(self) -> int:
        """Drop every cached rule list, metadata blob and token. Returns keys removed."""
        return await self._delete_pattern(f"{KEY_PREFIX}:*")

    # -- internals --

    async def _read_through(self, key: str, ttl: int, loader: Loader) -> Optional[Any]:
        try:
            redis = await self._redis_factory()
            cached = await redis.get(key)
            if cached is not None:
                try:
                    data = json.loads(cached) if cached else None
                    return data
                except (json.JSONDecodeError, TypeError):
                    logger.debug("Discarding unreadable cache entry %s", key)
        except Exception as e:
            logger.warning("Cache read failed for %s: %s", key, str(e))

        data = await loader()
        await self._set(key, data, ttl)
        return data

    async def _set(self, key: str, data: Any, ttl: int) -> None:
        try:
            redis = await self._redis_factory()
            # None is cached as an empty string sentinel
            value = json.dumps(data, default=str) if data is not None else ""
            await redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", key, str(e))

    async def _delete(self, key: str) -> None:
        try:
            redis = await self._redis_factory()
            await redis.delete(key)
        except Exception as e:
            logger.warning("Cache invalidation failed for %s: %s", key, str(e))

    async def _delete_pattern(self, pattern: str) -> int:
        try:
            redis = await self._redis_factory()
            keys = [key async for key in redis.scan_iter(match=pattern)]
            if keys:
                await redis.delete(*keys)
            logger.info("Cache invalidated %d keys matching %s", len(keys), pattern)
            return len(keys)
        except Exception as e:
            logger.warning("Cache invalidation failed for %s: %s", pattern, str(e))
            return 0
