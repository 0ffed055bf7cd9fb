from __future__ import annotations

import json
import logging
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock

from bundle_racer.storage import (
    FileThrottleStore,
    RedisThrottleStore,
    ThrottleSettings,
    build_throttle_store,
)


class _Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FileThrottleStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "keys" / ".jito-cooldown.json"
        self.clock = _Clock(1_700_000_000.0)
        self.store = FileThrottleStore(
            path=self.path,
            cooldown_seconds=120.0,
            logger=logging.getLogger("test.throttle"),
            clock=self.clock,
        )

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_missing_record_means_no_cooldown(self) -> None:
        self.assertEqual(await self.store.remaining(), 0.0)

    async def test_record_starts_full_cooldown_window(self) -> None:
        await self.store.record()

        payload = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(payload, {"lastSubmissionEpochMillis": 1_700_000_000_000})
        self.assertAlmostEqual(await self.store.remaining(), 120.0, places=3)

        self.clock.now += 45.5
        self.assertAlmostEqual(await self.store.remaining(), 74.5, places=3)

        self.clock.now += 200
        self.assertEqual(await self.store.remaining(), 0.0)

    async def test_repeated_record_never_shrinks_remaining(self) -> None:
        await self.store.record()
        first = await self.store.remaining()
        for _ in range(5):
            self.clock.now += 0.01
            await self.store.record()
            later = await self.store.remaining()
            self.assertGreaterEqual(later, first)
            first = later

    async def test_corrupted_record_fails_open(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")

        with self.assertLogs("test.throttle", level="WARNING") as captured:
            self.assertEqual(await self.store.remaining(), 0.0)
        self.assertIn("throttle", captured.output[0])

    async def test_reads_legacy_last_submission_field(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(json.dumps({"lastSubmission": 1_699_999_990_000}), encoding="utf-8")

        self.assertAlmostEqual(await self.store.remaining(), 110.0, places=3)

    async def test_future_timestamp_is_capped_at_one_window(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(
            json.dumps({"lastSubmissionEpochMillis": 1_700_000_900_000}),
            encoding="utf-8",
        )

        self.assertEqual(await self.store.remaining(), 120.0)

    async def test_write_failure_is_swallowed(self) -> None:
        blocker = Path(self._tmp.name) / "blocker"
        blocker.write_text("", encoding="utf-8")
        store = FileThrottleStore(
            path=blocker / "cooldown.json",
            cooldown_seconds=120.0,
            logger=logging.getLogger("test.throttle"),
            clock=self.clock,
        )

        with self.assertLogs("test.throttle", level="WARNING"):
            await store.record()
        self.assertEqual(await store.remaining(), 0.0)


class RedisThrottleStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.redis = AsyncMock()
        self.clock = _Clock(1_700_000_000.0)
        self.store = RedisThrottleStore(
            redis_url="redis://unused:6379/0",
            key="bundle:throttle:test",
            cooldown_seconds=120.0,
            logger=logging.getLogger("test.throttle.redis"),
            clock=self.clock,
            client=self.redis,
        )

    async def test_absent_key_means_no_cooldown(self) -> None:
        self.redis.get.return_value = None

        self.assertEqual(await self.store.remaining(), 0.0)
        self.redis.get.assert_awaited_once_with("bundle:throttle:test")

    async def test_remaining_is_computed_from_stored_millis(self) -> None:
        self.redis.get.return_value = "1699999970000"

        self.assertAlmostEqual(await self.store.remaining(), 90.0, places=3)

    async def test_record_sets_now_with_expiry(self) -> None:
        await self.store.record()

        self.redis.set.assert_awaited_once_with("bundle:throttle:test", 1_700_000_000_000, ex=120)

    async def test_redis_errors_fail_open(self) -> None:
        self.redis.get.side_effect = ConnectionError("redis down")
        self.redis.set.side_effect = ConnectionError("redis down")

        with self.assertLogs("test.throttle.redis", level="WARNING"):
            self.assertEqual(await self.store.remaining(), 0.0)
            await self.store.record()


class BuildThrottleStoreTests(unittest.TestCase):
    def test_backend_selection(self) -> None:
        logger = logging.getLogger("test.throttle")
        self.assertIsInstance(
            build_throttle_store(ThrottleSettings(backend="file"), logger),
            FileThrottleStore,
        )
        self.assertIsInstance(
            build_throttle_store(ThrottleSettings(backend="redis"), logger),
            RedisThrottleStore,
        )


if __name__ == "__main__":
    unittest.main()
