from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Sequence, runtime_checkable

from .cancellation import CancellationToken

OUTCOME_ACCEPTED = "accepted"
OUTCOME_REJECTED = "rejected"
OUTCOME_FAILED = "failed"
OUTCOME_STOPPED = "stopped"

RESULT_ACCEPTED = "accepted"
RESULT_ASSUMED_IN_FLIGHT = "assumed_in_flight"


class BundleValidationError(ValueError):
    pass


class BundleSubmissionError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class BundleRateLimitError(BundleSubmissionError):
    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message, status=429)
        self.retry_after_seconds = retry_after_seconds


@runtime_checkable
class SignedTransaction(Protocol):
    @property
    def signatures(self) -> Sequence[Any]:
        ...


@dataclass(slots=True, frozen=True)
class EndpointOutcome:
    endpoint_index: int
    url: str
    status: str
    attempts: int = 0
    rate_limited: int = 0
    bundle_id: str | None = None
    error: str | None = None
    elapsed_ms: int = 0

    @property
    def accepted(self) -> bool:
        return self.status == OUTCOME_ACCEPTED

    @property
    def stopped(self) -> bool:
        return self.status == OUTCOME_STOPPED

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint_index": self.endpoint_index,
            "url": self.url,
            "status": self.status,
            "attempts": self.attempts,
            "rate_limited": self.rate_limited,
            "bundle_id": self.bundle_id,
            "error": self.error,
            "elapsed_ms": self.elapsed_ms,
        }


OutcomeHandler = Callable[[EndpointOutcome], Awaitable[None] | None]
RateLimitHandler = Callable[[], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class RaceResult:
    status: str
    winner: EndpointOutcome | None
    settled: tuple[EndpointOutcome, ...]
    background: asyncio.Task[tuple[EndpointOutcome, ...]] | None = None


@dataclass(slots=True, frozen=True)
class BundleSubmissionResult:
    signature: str
    status: str
    cancel_token: CancellationToken = field(repr=False)
    bundle_id: str | None = None
    endpoint_url: str | None = None
    background: asyncio.Task[tuple[EndpointOutcome, ...]] | None = field(default=None, repr=False)

    @property
    def confirmed(self) -> bool:
        return self.status == RESULT_ACCEPTED

    def stop_retries(self) -> None:
        self.cancel_token.stop()

    def __str__(self) -> str:
        return self.signature
