from __future__ import annotations

import logging
from typing import Protocol

from .file_store import FileThrottleStore
from .redis_store import RedisThrottleStore
from .settings import ThrottleSettings


class ThrottleStore(Protocol):
    """Persisted cooldown between bundle submissions.

    ``remaining`` fails open (0.0) and ``record`` never raises: throttling is
    advisory and must not block a submission on a storage error.
    """

    async def remaining(self) -> float:
        ...

    async def record(self) -> None:
        ...

    async def close(self) -> None:
        ...


def build_throttle_store(settings: ThrottleSettings, logger: logging.Logger) -> ThrottleStore:
    if settings.backend == "redis":
        return RedisThrottleStore(
            redis_url=settings.redis_url,
            key=settings.redis_key,
            cooldown_seconds=settings.cooldown_seconds,
            logger=logger,
        )
    return FileThrottleStore(
        path=settings.file_path,
        cooldown_seconds=settings.cooldown_seconds,
        logger=logger,
    )
