from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

import aiohttp

from bundle_racer.common import guarded_call, log_event

from .cancellation import CancellationToken
from .endpoint_client import BlockEngineClient
from .types import (
    OUTCOME_ACCEPTED,
    OUTCOME_FAILED,
    OUTCOME_STOPPED,
    RESULT_ACCEPTED,
    RESULT_ASSUMED_IN_FLIGHT,
    EndpointOutcome,
    OutcomeHandler,
    RaceResult,
    RateLimitHandler,
)


@dataclass(slots=True)
class _RaceState:
    signature: str
    accepted_seen: bool = False


class RaceCoordinator:
    """Fans one encoded bundle out to every endpoint and takes the first acceptance.

    The caller is released on the first acceptance or at ``ceiling_seconds``,
    whichever comes first. Endpoint tasks still running at that point are
    never cancelled by a sibling's win; they are handed to a detached reporter
    that only logs, and that cancels anything still alive after
    ``background_timeout_seconds``.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        client: BlockEngineClient,
        ceiling_seconds: float = 10.0,
        background_timeout_seconds: float = 300.0,
        max_attempts: int = 8,
        base_delay_ms: int = 2000,
        max_delay_ms: int = 20_000,
        on_outcome: OutcomeHandler | None = None,
    ) -> None:
        self._logger = logger
        self._client = client
        self._ceiling_seconds = max(0.0, float(ceiling_seconds))
        self._background_timeout_seconds = max(0.0, float(background_timeout_seconds))
        self._max_attempts = max(1, int(max_attempts))
        self._base_delay_ms = max(0, int(base_delay_ms))
        self._max_delay_ms = max(0, int(max_delay_ms))
        self._on_outcome = on_outcome
        self._background_tasks: set[asyncio.Task[tuple[EndpointOutcome, ...]]] = set()

    @property
    def background_tasks(self) -> frozenset[asyncio.Task[tuple[EndpointOutcome, ...]]]:
        return frozenset(self._background_tasks)

    async def race(
        self,
        *,
        session: aiohttp.ClientSession,
        endpoints: Sequence[str],
        encoded_transactions: list[str],
        cancel_token: CancellationToken,
        signature: str,
        on_rate_limited: RateLimitHandler | None = None,
        on_accepted: RateLimitHandler | None = None,
    ) -> RaceResult:
        if not endpoints:
            raise ValueError("At least one bundle endpoint is required")

        state = _RaceState(signature=signature)
        tasks = [
            asyncio.create_task(
                self._run_endpoint(
                    state=state,
                    session=session,
                    url=url,
                    endpoint_index=index,
                    encoded_transactions=encoded_transactions,
                    cancel_token=cancel_token,
                    on_rate_limited=on_rate_limited,
                    on_accepted=on_accepted,
                ),
                name=f"bundle-endpoint-{index}",
            )
            for index, url in enumerate(endpoints)
        ]
        log_event(
            self._logger,
            level="info",
            event="bundle_race_started",
            message="Sending bundle to all endpoints; first acceptance wins",
            signature=signature,
            endpoint_count=len(tasks),
            tx_count=len(encoded_transactions),
            ceiling_seconds=self._ceiling_seconds,
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._ceiling_seconds
        pending: set[asyncio.Task[EndpointOutcome]] = set(tasks)
        settled: list[EndpointOutcome] = []
        winner: EndpointOutcome | None = None

        try:
            while pending and winner is None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending,
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in sorted(done, key=tasks.index):
                    outcome = task.result()
                    settled.append(outcome)
                    if winner is None and outcome.accepted:
                        winner = outcome
        except asyncio.CancelledError:
            for task in pending:
                task.cancel()
            raise

        if winner is not None:
            status = RESULT_ACCEPTED
            log_event(
                self._logger,
                level="info",
                event="bundle_race_won",
                message="Bundle accepted; releasing caller",
                signature=signature,
                bundle_id=winner.bundle_id,
                endpoint_index=winner.endpoint_index,
                url=winner.url,
                elapsed_ms=winner.elapsed_ms,
                outstanding=len(pending),
            )
        elif pending:
            status = RESULT_ASSUMED_IN_FLIGHT
            log_event(
                self._logger,
                level="warning",
                event="bundle_race_ceiling_reached",
                message="No acceptance before the wait ceiling; assuming bundle is in flight",
                signature=signature,
                ceiling_seconds=self._ceiling_seconds,
                outstanding=len(pending),
            )
        else:
            status = RESULT_ASSUMED_IN_FLIGHT
            log_event(
                self._logger,
                level="warning",
                event="bundle_race_all_settled",
                message="Every endpoint settled without accepting the bundle; holding until the wait ceiling",
                signature=signature,
                outcomes=[outcome.to_dict() for outcome in settled],
            )
            # Callers are only ever released early by an acceptance.
            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.sleep(remaining)

        background = None
        if pending:
            background = self._continue_in_background(
                state=state,
                pending=pending,
                settled=tuple(settled),
                released_as=status,
            )

        return RaceResult(
            status=status,
            winner=winner,
            settled=tuple(settled),
            background=background,
        )

    async def aclose(self, timeout_seconds: float | None = None) -> None:
        """Wait for background reporters, cancelling any still alive at the bound."""
        if not self._background_tasks:
            return
        tasks = set(self._background_tasks)
        _, still_pending = await asyncio.wait(tasks, timeout=timeout_seconds)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)

    async def _run_endpoint(
        self,
        *,
        state: _RaceState,
        session: aiohttp.ClientSession,
        url: str,
        endpoint_index: int,
        encoded_transactions: list[str],
        cancel_token: CancellationToken,
        on_rate_limited: RateLimitHandler | None,
        on_accepted: RateLimitHandler | None,
    ) -> EndpointOutcome:
        try:
            outcome = await self._client.send_bundle(
                session=session,
                url=url,
                encoded_transactions=encoded_transactions,
                cancel_token=cancel_token,
                endpoint_index=endpoint_index,
                max_attempts=self._max_attempts,
                base_delay_ms=self._base_delay_ms,
                max_delay_ms=self._max_delay_ms,
                on_rate_limited=on_rate_limited,
            )
        except asyncio.CancelledError:
            raise
        except Exception as error:
            outcome = EndpointOutcome(
                endpoint_index=endpoint_index,
                url=url,
                status=OUTCOME_FAILED,
                error=str(error) or type(error).__name__,
            )
            log_event(
                self._logger,
                level="error",
                event="bundle_endpoint_failed",
                message="Bundle endpoint task raised unexpectedly",
                **outcome.to_dict(),
            )

        if outcome.accepted and not state.accepted_seen:
            state.accepted_seen = True
            if on_accepted is not None:
                await guarded_call(
                    on_accepted,
                    logger=self._logger,
                    event="bundle_accept_handler_failed",
                    message="Acceptance handler raised",
                    signature=state.signature,
                    endpoint_index=endpoint_index,
                )

        if self._on_outcome is not None:
            await guarded_call(
                lambda: self._on_outcome(outcome),
                logger=self._logger,
                event="bundle_outcome_handler_failed",
                message="Endpoint outcome handler raised",
                signature=state.signature,
                endpoint_index=endpoint_index,
            )
        return outcome

    def _continue_in_background(
        self,
        *,
        state: _RaceState,
        pending: set[asyncio.Task[EndpointOutcome]],
        settled: tuple[EndpointOutcome, ...],
        released_as: str,
    ) -> asyncio.Task[tuple[EndpointOutcome, ...]]:
        task = asyncio.create_task(
            self._report_background(
                state=state,
                pending=pending,
                settled=settled,
                released_as=released_as,
            ),
            name=f"bundle-background-{state.signature[:8]}",
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _report_background(
        self,
        *,
        state: _RaceState,
        pending: set[asyncio.Task[EndpointOutcome]],
        settled: tuple[EndpointOutcome, ...],
        released_as: str,
    ) -> tuple[EndpointOutcome, ...]:
        try:
            done, still_pending = await asyncio.wait(pending, timeout=self._background_timeout_seconds)
        except asyncio.CancelledError:
            for task in pending:
                task.cancel()
            raise

        if still_pending:
            for task in still_pending:
                task.cancel()
            await asyncio.gather(*still_pending, return_exceptions=True)
            log_event(
                self._logger,
                level="warning",
                event="bundle_background_timeout",
                message="Background endpoint tasks exceeded their lifetime and were cancelled",
                signature=state.signature,
                cancelled=len(still_pending),
                background_timeout_seconds=self._background_timeout_seconds,
            )

        late: list[EndpointOutcome] = []
        for task in done:
            if task.cancelled():
                continue
            late.append(task.result())
        late.sort(key=lambda outcome: outcome.endpoint_index)

        outcomes = settled + tuple(late)
        accepted = [outcome for outcome in outcomes if outcome.status == OUTCOME_ACCEPTED]
        stopped = [outcome for outcome in outcomes if outcome.status == OUTCOME_STOPPED]
        log_event(
            self._logger,
            level="info" if accepted else "warning",
            event="bundle_background_summary",
            message="Background bundle submission finished",
            signature=state.signature,
            released_as=released_as,
            accepted=len(accepted),
            late_accepted=len([outcome for outcome in late if outcome.accepted]),
            stopped=len(stopped),
            failed=len(outcomes) - len(accepted) - len(stopped),
            timed_out=len(still_pending),
            bundle_ids=sorted({outcome.bundle_id for outcome in accepted if outcome.bundle_id}),
        )
        return outcomes
