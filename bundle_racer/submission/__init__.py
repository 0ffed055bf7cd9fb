from .cancellation import CancellationToken
from .encoding import bundle_signature, encode_bundle, serialize_transaction
from .endpoint_client import BlockEngineClient, compute_backoff_ms
from .race import RaceCoordinator
from .submitter import BundleSubmitter
from .types import (
    OUTCOME_ACCEPTED,
    OUTCOME_FAILED,
    OUTCOME_REJECTED,
    OUTCOME_STOPPED,
    RESULT_ACCEPTED,
    RESULT_ASSUMED_IN_FLIGHT,
    BundleRateLimitError,
    BundleSubmissionError,
    BundleSubmissionResult,
    BundleValidationError,
    EndpointOutcome,
    RaceResult,
    SignedTransaction,
)

__all__ = [
    "BlockEngineClient",
    "BundleRateLimitError",
    "BundleSubmissionError",
    "BundleSubmissionResult",
    "BundleSubmitter",
    "BundleValidationError",
    "CancellationToken",
    "EndpointOutcome",
    "OUTCOME_ACCEPTED",
    "OUTCOME_FAILED",
    "OUTCOME_REJECTED",
    "OUTCOME_STOPPED",
    "RESULT_ACCEPTED",
    "RESULT_ASSUMED_IN_FLIGHT",
    "RaceCoordinator",
    "RaceResult",
    "SignedTransaction",
    "bundle_signature",
    "compute_backoff_ms",
    "encode_bundle",
    "serialize_transaction",
]
