from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
import time
from pathlib import Path

from bundle_racer.common import guarded_call

from .helpers import (
    LAST_SUBMISSION_FIELD,
    Clock,
    now_epoch_millis,
    parse_last_submission_ms,
    remaining_seconds,
)


class FileThrottleStore:
    def __init__(
        self,
        *,
        path: str | os.PathLike[str],
        cooldown_seconds: float,
        logger: logging.Logger,
        clock: Clock = time.time,
    ) -> None:
        self._path = Path(path)
        self._cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._logger = logger
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown_seconds

    async def remaining(self) -> float:
        remaining = await guarded_call(
            lambda: asyncio.to_thread(self._read_remaining),
            logger=self._logger,
            event="throttle_read_failed",
            message="Failed to read throttle record; treating cooldown as clear",
            default=0.0,
            path=str(self._path),
        )
        return remaining or 0.0

    async def record(self) -> None:
        await guarded_call(
            lambda: asyncio.to_thread(self._write_now),
            logger=self._logger,
            event="throttle_write_failed",
            message="Failed to persist throttle record",
            path=str(self._path),
        )

    async def close(self) -> None:
        return None

    def _read_remaining(self) -> float:
        if not self._path.exists():
            return 0.0
        payload = json.loads(self._path.read_text(encoding="utf-8"))
        return remaining_seconds(
            last_submission_ms=parse_last_submission_ms(payload),
            cooldown_seconds=self._cooldown_seconds,
            now_ms=now_epoch_millis(self._clock),
        )

    def _write_now(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {LAST_SUBMISSION_FIELD: now_epoch_millis(self._clock)}
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            # os.replace is atomic, so concurrent writers resolve to last-write-wins.
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
