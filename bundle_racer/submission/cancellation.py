from __future__ import annotations

import asyncio

from bundle_racer.common import wait_with_stop


class CancellationToken:
    """Stop signal owned by one bundle submission.

    Checked cooperatively by endpoint tasks before and after every backoff
    sleep. Setting it never aborts an HTTP request already in flight.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_stopped(self) -> bool:
        return self._event.is_set()

    def stop(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    async def wait(self, timeout_seconds: float) -> bool:
        return await wait_with_stop(self._event, timeout_seconds)
