from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any

import aiohttp

from bundle_racer.common import log_event

from .cancellation import CancellationToken
from .types import (
    OUTCOME_ACCEPTED,
    OUTCOME_FAILED,
    OUTCOME_REJECTED,
    OUTCOME_STOPPED,
    BundleRateLimitError,
    BundleSubmissionError,
    EndpointOutcome,
    RateLimitHandler,
)


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
        details = payload.get("details")
        if details:
            return str(details)
    return str(payload)


def compute_backoff_ms(
    attempt: int,
    *,
    base_delay_ms: int,
    max_delay_ms: int,
    jitter_ms: int = 1000,
    rng: random.Random | None = None,
    retry_after_seconds: float | None = None,
) -> float:
    """Capped exponential backoff (base * 2**attempt) plus uniform jitter.

    A server ``Retry-After`` hint raises the delay to at least that value,
    still capped at ``max_delay_ms``.
    """
    exponential = min(float(base_delay_ms) * (2 ** max(0, attempt)), float(max_delay_ms))
    delay = exponential
    if jitter_ms > 0:
        delay += (rng or random).uniform(0.0, float(jitter_ms))
    if retry_after_seconds is None:
        return delay
    return max(delay, min(retry_after_seconds * 1000.0, float(max_delay_ms)))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class BlockEngineClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        timeout_seconds: float = 30.0,
        jitter_ms: int = 1000,
        rng: random.Random | None = None,
    ) -> None:
        self._logger = logger
        self._timeout = aiohttp.ClientTimeout(total=max(0.1, float(timeout_seconds)))
        self._jitter_ms = max(0, int(jitter_ms))
        self._rng = rng or random.Random()

    async def post_send_bundle(
        self,
        *,
        session: aiohttp.ClientSession,
        url: str,
        encoded_transactions: list[str],
    ) -> str | None:
        """One ``sendBundle`` call. Returns the bundle id, or None when the
        endpoint answered 2xx without a usable ``result``."""
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "sendBundle",
            "params": [encoded_transactions],
        }

        async with session.post(url, json=payload, timeout=self._timeout) as response:
            status = response.status
            retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
            raw_text = await response.text()

        if status == 429:
            raise BundleRateLimitError(
                f"Bundle submission rate-limited: status={status} body={str(raw_text)[:240]!r}",
                retry_after_seconds=retry_after_seconds,
            )

        parsed: Any = None
        try:
            parsed = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw": raw_text}

        if status >= 400:
            error_message = str(raw_text)[:240]
            if isinstance(parsed, dict) and parsed.get("error") is not None:
                error_message = _error_message_from_payload(parsed.get("error"))
            raise BundleSubmissionError(
                f"Bundle submission failed: status={status} error={error_message!r}",
                status=status,
            )

        if isinstance(parsed, dict) and parsed.get("error"):
            raise BundleSubmissionError(
                f"Bundle submission failed: {_error_message_from_payload(parsed['error'])}",
                status=status,
            )

        result = parsed.get("result") if isinstance(parsed, dict) else None
        if isinstance(result, str) and result.strip():
            return result.strip()
        if isinstance(result, dict):
            return str(result.get("bundleId") or result.get("id") or "") or None
        return None

    async def send_bundle(
        self,
        *,
        session: aiohttp.ClientSession,
        url: str,
        encoded_transactions: list[str],
        cancel_token: CancellationToken,
        endpoint_index: int = 0,
        max_attempts: int = 8,
        base_delay_ms: int = 2000,
        max_delay_ms: int = 20_000,
        on_rate_limited: RateLimitHandler | None = None,
    ) -> EndpointOutcome:
        """Submit to one endpoint, retrying only on HTTP 429.

        Any other error fails fast. The first 429 of the call fires
        ``on_rate_limited`` exactly once.
        """
        started = time.monotonic()
        max_attempts = max(1, int(max_attempts))
        rate_limited = 0
        attempts = 0
        last_error: Exception | None = None

        def outcome(status: str, *, bundle_id: str | None = None, error: str | None = None) -> EndpointOutcome:
            return EndpointOutcome(
                endpoint_index=endpoint_index,
                url=url,
                status=status,
                attempts=attempts,
                rate_limited=rate_limited,
                bundle_id=bundle_id,
                error=error,
                elapsed_ms=_elapsed_ms(started),
            )

        for attempt in range(max_attempts):
            if cancel_token.is_stopped:
                return self._stopped(outcome(OUTCOME_STOPPED))

            attempts += 1
            try:
                bundle_id = await self.post_send_bundle(
                    session=session,
                    url=url,
                    encoded_transactions=encoded_transactions,
                )
            except BundleRateLimitError as error:
                last_error = error
                rate_limited += 1
                if rate_limited == 1 and on_rate_limited is not None:
                    await on_rate_limited()
                if attempt >= max_attempts - 1:
                    break
                if cancel_token.is_stopped:
                    return self._stopped(outcome(OUTCOME_STOPPED))

                delay_ms = compute_backoff_ms(
                    attempt,
                    base_delay_ms=base_delay_ms,
                    max_delay_ms=max_delay_ms,
                    jitter_ms=self._jitter_ms,
                    rng=self._rng,
                    retry_after_seconds=error.retry_after_seconds,
                )
                log_event(
                    self._logger,
                    level="warning",
                    event="bundle_endpoint_rate_limited",
                    message="Bundle endpoint rate-limited (429); backing off",
                    endpoint_index=endpoint_index,
                    url=url,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    backoff_ms=round(delay_ms),
                    retry_after_seconds=error.retry_after_seconds,
                )
                if await cancel_token.wait(delay_ms / 1000.0):
                    return self._stopped(outcome(OUTCOME_STOPPED))
                continue
            except (BundleSubmissionError, aiohttp.ClientError, asyncio.TimeoutError) as error:
                failed = outcome(OUTCOME_FAILED, error=str(error) or type(error).__name__)
                log_event(
                    self._logger,
                    level="warning",
                    event="bundle_endpoint_failed",
                    message="Bundle endpoint failed with a non-retryable error",
                    **failed.to_dict(),
                )
                return failed

            if bundle_id:
                return outcome(OUTCOME_ACCEPTED, bundle_id=bundle_id)

            rejected = outcome(OUTCOME_REJECTED, error="Response did not contain a bundle id")
            log_event(
                self._logger,
                level="warning",
                event="bundle_endpoint_rejected",
                message="Bundle endpoint answered without a bundle id",
                **rejected.to_dict(),
            )
            return rejected

        failed = outcome(OUTCOME_FAILED, error=f"Rate-limited on every attempt: {last_error}")
        log_event(
            self._logger,
            level="warning",
            event="bundle_endpoint_failed",
            message="Bundle endpoint exhausted rate-limit retries",
            **failed.to_dict(),
        )
        return failed

    def _stopped(self, stopped: EndpointOutcome) -> EndpointOutcome:
        log_event(
            self._logger,
            level="info",
            event="bundle_endpoint_stopped",
            message="Bundle endpoint retries stopped by cancellation",
            endpoint_index=stopped.endpoint_index,
            url=stopped.url,
            attempts=stopped.attempts,
        )
        return stopped

    async def simulate_bundle(
        self,
        *,
        session: aiohttp.ClientSession,
        url: str,
        encoded_transactions: list[str],
    ) -> Any:
        """``simulateBundle`` takes base64 payloads regardless of send encoding."""
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "simulateBundle",
            "params": [{"encodedTransactions": encoded_transactions}],
        }

        async with session.post(url, json=payload, timeout=self._timeout) as response:
            status = response.status
            raw_text = await response.text()

        parsed: Any = None
        try:
            parsed = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw": raw_text}

        if status == 429:
            raise BundleRateLimitError(f"Bundle simulation rate-limited: body={str(raw_text)[:240]!r}")
        if status >= 400:
            raise BundleSubmissionError(
                f"Bundle simulation failed: status={status} body={str(raw_text)[:240]!r}",
                status=status,
            )
        if isinstance(parsed, dict) and parsed.get("error"):
            raise BundleSubmissionError(
                f"Bundle simulation failed: {_error_message_from_payload(parsed['error'])}",
                status=status,
            )
        if not isinstance(parsed, dict) or "result" not in parsed:
            raise BundleSubmissionError(f"Unexpected simulateBundle response: {str(raw_text)[:240]!r}")
        return parsed["result"]
