from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

DEFAULT_BUNDLE_ENDPOINTS = (
    "https://mainnet.block-engine.jito.wtf/api/v1/bundles",
    "https://amsterdam.mainnet.block-engine.jito.wtf/api/v1/bundles",
    "https://frankfurt.mainnet.block-engine.jito.wtf/api/v1/bundles",
    "https://ny.mainnet.block-engine.jito.wtf/api/v1/bundles",
    "https://tokyo.mainnet.block-engine.jito.wtf/api/v1/bundles",
)


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def parse_endpoints(value: str | None) -> tuple[str, ...]:
    if value is None or not value.strip():
        return DEFAULT_BUNDLE_ENDPOINTS
    endpoints = tuple(item.strip() for item in value.split(",") if item.strip())
    return endpoints or DEFAULT_BUNDLE_ENDPOINTS


def normalize_tx_encoding(value: str) -> str:
    encoding = (value or "").strip().lower()
    if encoding in {"base58", "base64"}:
        return encoding
    return "base58"


@dataclass(slots=True, frozen=True)
class SubmissionSettings:
    endpoints: tuple[str, ...] = DEFAULT_BUNDLE_ENDPOINTS
    send_max_attempts: int = 8
    send_base_delay_ms: int = 2000
    send_max_delay_ms: int = 20_000
    send_jitter_ms: int = 1000
    http_timeout_seconds: float = 30.0
    race_ceiling_seconds: float = 10.0
    background_timeout_seconds: float = 300.0
    tx_encoding: str = "base58"

    @classmethod
    def from_env(cls) -> "SubmissionSettings":
        return cls(
            endpoints=parse_endpoints(os.getenv("BUNDLE_ENDPOINTS")),
            send_max_attempts=max(1, to_int(os.getenv("BUNDLE_SEND_MAX_ATTEMPTS"), 8)),
            send_base_delay_ms=max(0, to_int(os.getenv("BUNDLE_SEND_BASE_DELAY_MS"), 2000)),
            send_max_delay_ms=max(0, to_int(os.getenv("BUNDLE_SEND_MAX_DELAY_MS"), 20_000)),
            send_jitter_ms=max(0, to_int(os.getenv("BUNDLE_SEND_JITTER_MS"), 1000)),
            http_timeout_seconds=max(
                1.0,
                to_float(os.getenv("BUNDLE_HTTP_TIMEOUT_SECONDS"), 30.0),
            ),
            race_ceiling_seconds=max(
                0.1,
                to_float(os.getenv("BUNDLE_RACE_CEILING_SECONDS"), 10.0),
            ),
            background_timeout_seconds=max(
                1.0,
                to_float(os.getenv("BUNDLE_BACKGROUND_TIMEOUT_SECONDS"), 300.0),
            ),
            tx_encoding=normalize_tx_encoding(os.getenv("BUNDLE_TX_ENCODING", "base58")),
        )
