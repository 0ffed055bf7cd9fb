from .submission import BundleSubmissionResult, BundleSubmitter, CancellationToken

__all__ = [
    "BundleSubmissionResult",
    "BundleSubmitter",
    "CancellationToken",
]
