"""
Error Recovery Module

Provides the UserOperation error taxonomy and the retry policy used for
transient transport failures.
"""

from .errors import (
    ErrorCategory,
    ErrorContext,
    RecoverableError,
    UnrecoverableError,
    TransportError,
    SimulationReverted,
    RejectedByBundler,
    ReceiptTimeout,
    SigningUnavailable,
    InvalidCallTarget,
    UnknownAccountState,
    UnestimatedOperation,
    classify_error,
)
from .strategies import (
    RetryConfig,
    RetryStrategy,
    ExponentialBackoffStrategy,
)

__all__ = [
    # Errors
    "ErrorCategory",
    "ErrorContext",
    "RecoverableError",
    "UnrecoverableError",
    "TransportError",
    "SimulationReverted",
    "RejectedByBundler",
    "ReceiptTimeout",
    "SigningUnavailable",
    "InvalidCallTarget",
    "UnknownAccountState",
    "UnestimatedOperation",
    "classify_error",
    # Strategies
    "RetryConfig",
    "RetryStrategy",
    "ExponentialBackoffStrategy",
]
