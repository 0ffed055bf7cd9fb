from .file_store import FileThrottleStore
from .gateway import ThrottleStore, build_throttle_store
from .redis_store import RedisThrottleStore
from .settings import ThrottleSettings

__all__ = [
    "FileThrottleStore",
    "RedisThrottleStore",
    "ThrottleSettings",
    "ThrottleStore",
    "build_throttle_store",
]
