from __future__ import annotations

import logging
import math
import time

from redis import asyncio as redis
from redis.asyncio.client import Redis

from bundle_racer.common import guarded_call

from .helpers import Clock, now_epoch_millis, remaining_seconds


class RedisThrottleStore:
    """Cooldown shared by every process pointed at the same Redis key."""

    def __init__(
        self,
        *,
        redis_url: str,
        key: str,
        cooldown_seconds: float,
        logger: logging.Logger,
        clock: Clock = time.time,
        client: Redis | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._key = key
        self._cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._logger = logger
        self._clock = clock
        self._redis = client

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown_seconds

    def _require_redis(self) -> Redis:
        if self._redis is None:
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def remaining(self) -> float:
        remaining = await guarded_call(
            self._read_remaining,
            logger=self._logger,
            event="throttle_read_failed",
            message="Failed to read throttle record from Redis; treating cooldown as clear",
            default=0.0,
            key=self._key,
        )
        return remaining or 0.0

    async def record(self) -> None:
        await guarded_call(
            self._write_now,
            logger=self._logger,
            event="throttle_write_failed",
            message="Failed to persist throttle record to Redis",
            key=self._key,
        )

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
        self._redis = None

    async def _read_remaining(self) -> float:
        raw = await self._require_redis().get(self._key)
        if raw is None:
            return 0.0
        return remaining_seconds(
            last_submission_ms=int(float(raw)),
            cooldown_seconds=self._cooldown_seconds,
            now_ms=now_epoch_millis(self._clock),
        )

    async def _write_now(self) -> None:
        ttl_seconds = max(1, math.ceil(self._cooldown_seconds))
        await self._require_redis().set(self._key, now_epoch_millis(self._clock), ex=ttl_seconds)
