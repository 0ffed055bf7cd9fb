from .logging import setup_logger
from .settings import SubmissionSettings

__all__ = [
    "SubmissionSettings",
    "setup_logger",
]
