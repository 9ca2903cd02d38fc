"""metatx-relay — models package."""

from .fees import FeeQuote, LiquidityPoolState
from .forward_request import ForwardRequest, SignedForwardRequest
from .relay import (
    AttemptStatus,
    ExecutionOutcome,
    ExecutionResult,
    RelayAttempt,
    RelayerConfig,
    RelayerEndpoint,
    SubmissionHandle,
    SubmissionResult,
)

__all__ = [
    "AttemptStatus",
    "ExecutionOutcome",
    "ExecutionResult",
    "FeeQuote",
    "ForwardRequest",
    "LiquidityPoolState",
    "RelayAttempt",
    "RelayerConfig",
    "RelayerEndpoint",
    "SignedForwardRequest",
    "SubmissionHandle",
    "SubmissionResult",
]
