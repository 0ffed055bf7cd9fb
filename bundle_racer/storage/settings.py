from __future__ import annotations

import os
from dataclasses import dataclass

from bundle_racer.runtime.settings import to_float


def normalize_throttle_backend(value: str) -> str:
    backend = (value or "").strip().lower()
    if backend in {"file", "redis"}:
        return backend
    return "file"


@dataclass(slots=True, frozen=True)
class ThrottleSettings:
    backend: str = "file"
    cooldown_seconds: float = 120.0
    file_path: str = os.path.join("keys", ".jito-cooldown.json")
    redis_url: str = "redis://localhost:6379/0"
    redis_key: str = "bundle:throttle:last_submission"

    @classmethod
    def from_env(cls) -> "ThrottleSettings":
        return cls(
            backend=normalize_throttle_backend(os.getenv("THROTTLE_BACKEND", "file")),
            cooldown_seconds=max(0.0, to_float(os.getenv("BUNDLE_COOLDOWN_SECONDS"), 120.0)),
            file_path=os.getenv("THROTTLE_FILE_PATH", "").strip()
            or os.path.join("keys", ".jito-cooldown.json"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0").strip(),
            redis_key=os.getenv("REDIS_THROTTLE_KEY", "bundle:throttle:last_submission").strip(),
        )
