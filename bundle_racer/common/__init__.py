from .async_utils import guarded_call, wait_with_stop
from .logging import log_event

__all__ = [
    "guarded_call",
    "log_event",
    "wait_with_stop",
]
