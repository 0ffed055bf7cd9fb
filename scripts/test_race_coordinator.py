from __future__ import annotations

import asyncio
import logging
import unittest
from typing import Any, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock

from bundle_racer.submission import (
    OUTCOME_ACCEPTED,
    OUTCOME_FAILED,
    OUTCOME_STOPPED,
    RESULT_ACCEPTED,
    RESULT_ASSUMED_IN_FLIGHT,
    CancellationToken,
    EndpointOutcome,
    RaceCoordinator,
)

ENDPOINTS = [f"https://engine-{index}.example/api/v1/bundles" for index in range(5)]

Behaviour = Callable[[int, str, CancellationToken], Awaitable[EndpointOutcome]]


def accept_after(delay_seconds: float, bundle_id: str) -> Behaviour:
    async def behaviour(index: int, url: str, token: CancellationToken) -> EndpointOutcome:
        await asyncio.sleep(delay_seconds)
        return EndpointOutcome(endpoint_index=index, url=url, status=OUTCOME_ACCEPTED, bundle_id=bundle_id)

    return behaviour


def fail_after(delay_seconds: float) -> Behaviour:
    async def behaviour(index: int, url: str, token: CancellationToken) -> EndpointOutcome:
        await asyncio.sleep(delay_seconds)
        return EndpointOutcome(endpoint_index=index, url=url, status=OUTCOME_FAILED, error="boom")

    return behaviour


def hang_until_stopped(max_seconds: float = 30.0) -> Behaviour:
    async def behaviour(index: int, url: str, token: CancellationToken) -> EndpointOutcome:
        if await token.wait(max_seconds):
            return EndpointOutcome(endpoint_index=index, url=url, status=OUTCOME_STOPPED)
        return EndpointOutcome(endpoint_index=index, url=url, status=OUTCOME_FAILED, error="gave up")

    return behaviour


def raise_error() -> Behaviour:
    async def behaviour(index: int, url: str, token: CancellationToken) -> EndpointOutcome:
        raise RuntimeError("unexpected client bug")

    return behaviour


class _ScriptedClient:
    def __init__(self, behaviours: list[Behaviour]) -> None:
        self.behaviours = behaviours
        self.calls: list[dict[str, Any]] = []

    async def send_bundle(self, **kwargs: Any) -> EndpointOutcome:
        self.calls.append(kwargs)
        index = kwargs["endpoint_index"]
        return await self.behaviours[index](index, kwargs["url"], kwargs["cancel_token"])


class RaceCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    def _make_coordinator(
        self,
        behaviours: list[Behaviour],
        *,
        ceiling_seconds: float = 2.0,
        background_timeout_seconds: float = 5.0,
        on_outcome: Any = None,
    ) -> tuple[RaceCoordinator, _ScriptedClient]:
        client = _ScriptedClient(behaviours)
        coordinator = RaceCoordinator(
            logger=logging.getLogger("test.race"),
            client=client,  # type: ignore[arg-type]
            ceiling_seconds=ceiling_seconds,
            background_timeout_seconds=background_timeout_seconds,
            max_attempts=8,
            base_delay_ms=2000,
            max_delay_ms=20_000,
            on_outcome=on_outcome,
        )
        return coordinator, client

    async def _race(self, coordinator: RaceCoordinator, token: CancellationToken, **kwargs: Any):
        return await coordinator.race(
            session=MagicMock(),
            endpoints=ENDPOINTS[: kwargs.pop("endpoint_count", len(ENDPOINTS))],
            encoded_transactions=["tx-a", "tx-b"],
            cancel_token=token,
            signature="Sig123",
            **kwargs,
        )

    async def test_first_acceptance_releases_caller_without_waiting_for_siblings(self) -> None:
        behaviours = [hang_until_stopped() for _ in ENDPOINTS]
        behaviours[2] = accept_after(0.05, "bundle-3")
        coordinator, client = self._make_coordinator(behaviours, ceiling_seconds=10.0)
        token = CancellationToken()
        on_accepted = AsyncMock()

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await self._race(coordinator, token, on_accepted=on_accepted)
        elapsed = loop.time() - started

        self.assertLess(elapsed, 1.0)
        self.assertEqual(result.status, RESULT_ACCEPTED)
        self.assertIsNotNone(result.winner)
        self.assertEqual(result.winner.endpoint_index, 2)
        self.assertEqual(result.winner.bundle_id, "bundle-3")
        self.assertEqual(len(client.calls), 5)
        on_accepted.assert_awaited_once()

        self.assertIsNotNone(result.background)
        self.assertFalse(result.background.done())

        token.stop()
        outcomes = await asyncio.wait_for(result.background, timeout=2.0)
        self.assertEqual(len(outcomes), 5)
        self.assertEqual(
            sorted(outcome.status for outcome in outcomes),
            [OUTCOME_ACCEPTED] + [OUTCOME_STOPPED] * 4,
        )

    async def test_ceiling_returns_assumed_in_flight_and_work_continues(self) -> None:
        behaviours = [fail_after(0.01), accept_after(0.3, "late-bundle")]
        coordinator, _ = self._make_coordinator(behaviours, ceiling_seconds=0.1)
        on_accepted = AsyncMock()

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await self._race(
            coordinator,
            CancellationToken(),
            endpoint_count=2,
            on_accepted=on_accepted,
        )
        elapsed = loop.time() - started

        self.assertGreaterEqual(elapsed, 0.09)
        self.assertLess(elapsed, 0.3)
        self.assertEqual(result.status, RESULT_ASSUMED_IN_FLIGHT)
        self.assertIsNone(result.winner)
        self.assertEqual([outcome.status for outcome in result.settled], [OUTCOME_FAILED])
        on_accepted.assert_not_awaited()

        outcomes = await asyncio.wait_for(result.background, timeout=2.0)
        self.assertEqual([outcome.status for outcome in outcomes], [OUTCOME_FAILED, OUTCOME_ACCEPTED])
        on_accepted.assert_awaited_once()

    async def test_all_endpoints_failing_still_holds_caller_until_ceiling(self) -> None:
        coordinator, _ = self._make_coordinator([fail_after(0.01) for _ in ENDPOINTS], ceiling_seconds=0.3)

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await self._race(coordinator, CancellationToken())
        elapsed = loop.time() - started

        self.assertGreaterEqual(elapsed, 0.29)
        self.assertLess(elapsed, 1.0)
        self.assertEqual(result.status, RESULT_ASSUMED_IN_FLIGHT)
        self.assertIsNone(result.background)
        self.assertEqual(len(result.settled), 5)

    async def test_unexpected_endpoint_error_does_not_affect_siblings(self) -> None:
        behaviours = [raise_error(), accept_after(0.02, "bundle-ok")]
        coordinator, _ = self._make_coordinator(behaviours)

        result = await self._race(coordinator, CancellationToken(), endpoint_count=2)

        self.assertEqual(result.status, RESULT_ACCEPTED)
        self.assertEqual(result.winner.bundle_id, "bundle-ok")
        self.assertEqual(result.settled[0].status, OUTCOME_FAILED)
        self.assertIn("unexpected client bug", result.settled[0].error or "")

    async def test_acceptance_handler_fires_once_for_multiple_winners(self) -> None:
        behaviours = [accept_after(0.01, "a"), accept_after(0.02, "b"), accept_after(0.03, "c")]
        coordinator, _ = self._make_coordinator(behaviours)
        on_accepted = AsyncMock()

        result = await self._race(coordinator, CancellationToken(), endpoint_count=3, on_accepted=on_accepted)
        await asyncio.wait_for(result.background, timeout=2.0)

        self.assertEqual(result.winner.bundle_id, "a")
        on_accepted.assert_awaited_once()

    async def test_outcome_handler_sees_every_outcome_and_its_errors_are_contained(self) -> None:
        seen: list[EndpointOutcome] = []

        def on_outcome(outcome: EndpointOutcome) -> None:
            seen.append(outcome)
            raise ValueError("telemetry sink down")

        behaviours = [fail_after(0.01), accept_after(0.02, "bundle-ok")]
        coordinator, _ = self._make_coordinator(behaviours, on_outcome=on_outcome)

        with self.assertLogs("test.race", level="WARNING"):
            result = await self._race(coordinator, CancellationToken(), endpoint_count=2)

        self.assertEqual(result.status, RESULT_ACCEPTED)
        self.assertEqual(sorted(outcome.endpoint_index for outcome in seen), [0, 1])

    async def test_background_lifetime_is_bounded(self) -> None:
        behaviours = [accept_after(0.01, "bundle-ok"), hang_until_stopped(max_seconds=60.0)]
        coordinator, _ = self._make_coordinator(behaviours, background_timeout_seconds=0.1)

        result = await self._race(coordinator, CancellationToken(), endpoint_count=2)
        with self.assertLogs("test.race", level="WARNING") as captured:
            outcomes = await asyncio.wait_for(result.background, timeout=2.0)

        self.assertEqual([outcome.status for outcome in outcomes], [OUTCOME_ACCEPTED])
        self.assertTrue(any("exceeded their lifetime" in line for line in captured.output))
        await asyncio.sleep(0)
        self.assertEqual(coordinator.background_tasks, frozenset())

    async def test_aclose_drains_background_reporters(self) -> None:
        behaviours = [accept_after(0.01, "bundle-ok"), hang_until_stopped(max_seconds=60.0)]
        coordinator, _ = self._make_coordinator(behaviours)

        result = await self._race(coordinator, CancellationToken(), endpoint_count=2)
        self.assertEqual(len(coordinator.background_tasks), 1)

        await coordinator.aclose(timeout_seconds=0.05)
        await asyncio.sleep(0)

        self.assertTrue(result.background.done())
        self.assertEqual(coordinator.background_tasks, frozenset())

    async def test_requires_at_least_one_endpoint(self) -> None:
        coordinator, _ = self._make_coordinator([])

        with self.assertRaises(ValueError):
            await self._race(coordinator, CancellationToken(), endpoint_count=0)


if __name__ == "__main__":
    unittest.main()
