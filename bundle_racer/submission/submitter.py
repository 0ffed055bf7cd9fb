from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

import aiohttp

from bundle_racer.common import log_event
from bundle_racer.runtime.settings import SubmissionSettings
from bundle_racer.storage import ThrottleStore

from .cancellation import CancellationToken
from .encoding import bundle_signature, encode_bundle
from .endpoint_client import BlockEngineClient
from .race import RaceCoordinator
from .types import BundleSubmissionResult, BundleValidationError, OutcomeHandler, SignedTransaction


class BundleSubmitter:
    """Public entry point for racing a signed bundle across block engines.

    ``submit`` never raises for bad input or endpoint trouble: it returns a
    tagged ``BundleSubmissionResult`` or ``None``. Endpoint calls still running
    when it returns keep going on the shared HTTP session, so call ``aclose``
    before shutting down.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        settings: SubmissionSettings,
        throttle: ThrottleStore,
        client: BlockEngineClient | None = None,
        coordinator: RaceCoordinator | None = None,
        session: aiohttp.ClientSession | None = None,
        on_outcome: OutcomeHandler | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._settings = settings
        self._throttle = throttle
        self._client = client or BlockEngineClient(
            logger=logger,
            timeout_seconds=settings.http_timeout_seconds,
            jitter_ms=settings.send_jitter_ms,
        )
        self._coordinator = coordinator or RaceCoordinator(
            logger=logger,
            client=self._client,
            ceiling_seconds=settings.race_ceiling_seconds,
            background_timeout_seconds=settings.background_timeout_seconds,
            max_attempts=settings.send_max_attempts,
            base_delay_ms=settings.send_base_delay_ms,
            max_delay_ms=settings.send_max_delay_ms,
            on_outcome=on_outcome,
        )
        self._http_session = session
        self._owns_session = session is None
        self._sleep = sleep

    @property
    def coordinator(self) -> RaceCoordinator:
        return self._coordinator

    async def connect(self) -> None:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
            self._owns_session = True

    async def aclose(self) -> None:
        await self._coordinator.aclose(self._settings.background_timeout_seconds)
        if self._owns_session and self._http_session is not None:
            await self._http_session.close()
        self._http_session = None

    async def __aenter__(self) -> "BundleSubmitter":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def submit(
        self,
        transactions: Sequence[SignedTransaction],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> BundleSubmissionResult | None:
        token = cancel_token or CancellationToken()
        token.reset()

        try:
            return await self._submit(transactions, token)
        except asyncio.CancelledError:
            raise
        except BundleValidationError as error:
            log_event(
                self._logger,
                level="error",
                event="bundle_validation_failed",
                message="Bundle rejected before submission",
                error=str(error),
                tx_count=len(transactions or ()),
            )
            return None
        except Exception as error:
            log_event(
                self._logger,
                level="exception",
                event="bundle_submit_failed",
                message="Unexpected error during bundle submission",
                error=str(error),
            )
            return None

    async def _submit(
        self,
        transactions: Sequence[SignedTransaction],
        token: CancellationToken,
    ) -> BundleSubmissionResult:
        signature = bundle_signature(transactions or ())
        encoded = encode_bundle(transactions, encoding=self._settings.tx_encoding)
        log_event(
            self._logger,
            level="info",
            event="bundle_serialized",
            message="Serialized bundle transactions",
            signature=signature,
            tx_count=len(encoded),
            encoding=self._settings.tx_encoding,
        )

        cooldown_remaining = await self._throttle.remaining()
        if cooldown_remaining > 0:
            log_event(
                self._logger,
                level="info",
                event="bundle_cooldown_wait",
                message="Waiting for submission cooldown to avoid rate limits",
                signature=signature,
                remaining_seconds=round(cooldown_remaining, 3),
            )
            await self._sleep(cooldown_remaining)
        else:
            log_event(
                self._logger,
                level="debug",
                event="bundle_cooldown_clear",
                message="No submission cooldown pending",
                signature=signature,
            )

        await self.connect()
        if self._http_session is None:
            raise RuntimeError("HTTP session is not initialized for bundle submission.")

        race = await self._coordinator.race(
            session=self._http_session,
            endpoints=self._settings.endpoints,
            encoded_transactions=encoded,
            cancel_token=token,
            signature=signature,
            on_rate_limited=self._throttle.record,
            on_accepted=self._throttle.record,
        )
        winner = race.winner
        return BundleSubmissionResult(
            signature=signature,
            status=race.status,
            cancel_token=token,
            bundle_id=winner.bundle_id if winner else None,
            endpoint_url=winner.url if winner else None,
            background=race.background,
        )

    async def simulate(self, transactions: Sequence[SignedTransaction]) -> Any:
        if not self._settings.endpoints:
            raise RuntimeError("BUNDLE_ENDPOINTS is required for bundle simulation.")
        encoded = encode_bundle(transactions, encoding="base64")
        await self.connect()
        if self._http_session is None:
            raise RuntimeError("HTTP session is not initialized for bundle submission.")
        return await self._client.simulate_bundle(
            session=self._http_session,
            url=self._settings.endpoints[0],
            encoded_transactions=encoded,
        )
