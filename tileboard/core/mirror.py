"""InsightMirror — Redis copy of the insight cache for warm starts.

One hash per model (``tileboard:insights:<model_id>``), field = cache key,
value = payload JSON. The hash expires after ``insight_mirror_ttl_sec``.
Redis is optional: every failure is logged and swallowed so the dashboard
keeps working from the in-memory cache.
"""
import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError

from tileboard.core.models import InsightPayload

log = structlog.get_logger()

KEY_PREFIX = "tileboard:insights"


class InsightMirror:

    def __init__(self, redis: aioredis.Redis | None = None, settings=None):
        from config.settings import get_settings
        self.settings = settings or get_settings()
        self._redis = redis
        self.ttl = self.settings.insight_mirror_ttl_sec

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self.settings.redis_url,
                decode_responses=True,
                max_connections=10,
            )
        return self._redis

    @staticmethod
    def key_for(model_id: str) -> str:
        return f"{KEY_PREFIX}:{model_id}"

    async def save(self, model_id: str, cache_key: str, payload: InsightPayload) -> None:
        try:
            r = await self._get_redis()
            key = self.key_for(model_id)
            await r.hset(key, cache_key, payload.model_dump_json())
            await r.expire(key, self.ttl)
        except Exception as exc:
            log.warning("mirror.save_failed", model_id=model_id, key=cache_key, error=str(exc))

    async def load(self, model_id: str) -> dict[str, InsightPayload]:
        try:
            r = await self._get_redis()
            raw = await r.hgetall(self.key_for(model_id))
        except Exception as exc:
            log.warning("mirror.load_failed", model_id=model_id, error=str(exc))
            return {}

        entries: dict[str, InsightPayload] = {}
        for cache_key, blob in raw.items():
            try:
                entries[cache_key] = InsightPayload.model_validate_json(blob)
            except ValidationError as exc:
                log.warning("mirror.bad_entry", model_id=model_id, key=cache_key, error=str(exc))
        log.info("mirror.loaded", model_id=model_id, entries=len(entries))
        return entries

    async def drop(self, model_id: str) -> None:
        try:
            r = await self._get_redis()
            await r.delete(self.key_for(model_id))
        except Exception as exc:
            log.warning("mirror.drop_failed", model_id=model_id, error=str(exc))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
