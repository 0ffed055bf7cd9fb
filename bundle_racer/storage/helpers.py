from __future__ import annotations

import time
from typing import Any, Callable

Clock = Callable[[], float]

LAST_SUBMISSION_FIELD = "lastSubmissionEpochMillis"
LEGACY_LAST_SUBMISSION_FIELD = "lastSubmission"


def now_epoch_millis(clock: Clock = time.time) -> int:
    return int(clock() * 1000)


def parse_last_submission_ms(payload: Any) -> int:
    if not isinstance(payload, dict):
        raise ValueError(f"Throttle record must be an object, got {type(payload).__name__}")
    raw = payload.get(LAST_SUBMISSION_FIELD)
    if raw is None:
        raw = payload.get(LEGACY_LAST_SUBMISSION_FIELD)
    if raw is None:
        return 0
    if isinstance(raw, bool):
        raise ValueError("Throttle timestamp must be numeric")
    return int(float(raw))


def remaining_seconds(*, last_submission_ms: int, cooldown_seconds: float, now_ms: int) -> float:
    if last_submission_ms <= 0 or cooldown_seconds <= 0:
        return 0.0
    elapsed = (now_ms - last_submission_ms) / 1000.0
    # A timestamp from the future (clock skew) never extends past one full window.
    return min(cooldown_seconds, max(0.0, cooldown_seconds - elapsed))
