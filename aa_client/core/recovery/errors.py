"""
Error Classification

Defines the error taxonomy for UserOperation submission.
Errors are classified as recoverable (transport hiccups, safe to retry) or
unrecoverable (the same inputs will fail the same way again).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categories of errors for recovery decisions."""

    NETWORK = "network"           # HTTP / connection / JSON decoding failure
    SIMULATION = "simulation"     # Bundler simulation reverted
    REJECTED = "rejected"         # Bundler policy rejection
    TIMEOUT = "timeout"           # No receipt before the deadline
    SIGNING = "signing"           # Signing backend unavailable
    VALIDATION = "validation"     # Local precondition violation
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Additional context about an error."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    recoverable: bool = True
    retry_after_seconds: Optional[float] = None
    suggested_action: Optional[str] = None
    provider: Optional[str] = None
    operation_hash: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class RecoverableError(Exception):
    """
    Base class for errors that can be retried.

    Only transport-level failures belong here; everything the bundler or the
    chain decided on purpose is unrecoverable.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        retry_after: Optional[float] = None,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.retry_after = retry_after
        self.context = context or ErrorContext(category=category, recoverable=True)


class UnrecoverableError(Exception):
    """
    Base class for errors that must not be retried with the same inputs.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext(category=category, recoverable=False)


class TransportError(RecoverableError):
    """Network, HTTP or JSON decoding failure talking to a bundler or node."""

    def __init__(
        self,
        message: str = "Transport error",
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            context=ErrorContext(
                category=ErrorCategory.NETWORK,
                recoverable=True,
                provider=provider,
                suggested_action="Retry with exponential backoff",
                details={"status_code": status_code} if status_code else {},
            ),
        )
        self.status_code = status_code


class SimulationReverted(UnrecoverableError):
    """The bundler's validation or execution simulation reverted."""

    def __init__(self, reason: str, code: Optional[int] = None, data: Any = None):
        super().__init__(
            f"Simulation reverted: {reason}",
            category=ErrorCategory.SIMULATION,
            context=ErrorContext(
                category=ErrorCategory.SIMULATION,
                recoverable=False,
                suggested_action="Inspect the revert reason; adjust gas overheads or call data",
                details={"reason": reason, "code": code, "data": data},
            ),
        )
        self.reason = reason
        self.code = code
        self.data = data


class RejectedByBundler(UnrecoverableError):
    """Bundler policy rejection: fee too low, throttled sender, malformed fields."""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        super().__init__(
            f"Rejected by bundler ({code}): {message}",
            category=ErrorCategory.REJECTED,
            context=ErrorContext(
                category=ErrorCategory.REJECTED,
                recoverable=False,
                suggested_action="Change the operation inputs before resubmitting",
                details={"code": code, "message": message, "data": data},
            ),
        )
        self.code = code
        self.bundler_message = message
        self.data = data


class ReceiptTimeout(UnrecoverableError):
    """
    No receipt observed before the deadline.

    The outcome is ambiguous: the operation was accepted and may still be
    mined later.
    """

    def __init__(
        self,
        operation_hash: str,
        waited_seconds: float,
        cancelled: bool = False,
    ):
        verb = "cancelled" if cancelled else "timed out"
        super().__init__(
            f"Receipt wait for {operation_hash} {verb} after {waited_seconds:.1f}s",
            category=ErrorCategory.TIMEOUT,
            context=ErrorContext(
                category=ErrorCategory.TIMEOUT,
                recoverable=False,
                operation_hash=operation_hash,
                suggested_action="Query the receipt again later; the operation may still be mined",
                details={"waited_seconds": waited_seconds, "cancelled": cancelled},
            ),
        )
        self.operation_hash = operation_hash
        self.waited_seconds = waited_seconds
        self.cancelled = cancelled


class SigningUnavailable(UnrecoverableError):
    """The signing backend could not produce a signature."""

    def __init__(self, message: str = "Signing backend unavailable", backend: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.SIGNING,
            context=ErrorContext(
                category=ErrorCategory.SIGNING,
                recoverable=False,
                provider=backend,
                suggested_action="Check the signing backend connection",
            ),
        )
        self.backend = backend


class InvalidCallTarget(UnrecoverableError):
    """The requested call cannot be encoded."""

    def __init__(self, message: str, target: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            context=ErrorContext(
                category=ErrorCategory.VALIDATION,
                recoverable=False,
                details={"target": target} if target else {},
            ),
        )
        self.target = target


class UnknownAccountState(UnrecoverableError):
    """Neither a sender address nor factory + owner data is available."""

    def __init__(self, message: str = "Account state is unknown"):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            context=ErrorContext(
                category=ErrorCategory.VALIDATION,
                recoverable=False,
                suggested_action="Provide a deployed sender or factory and owner",
            ),
        )


class UnestimatedOperation(UnrecoverableError):
    """A gas field is still unestimated when the operation is about to be signed."""

    def __init__(self, fields: list):
        super().__init__(
            f"UserOperation gas fields not estimated: {', '.join(fields)}",
            category=ErrorCategory.VALIDATION,
            context=ErrorContext(
                category=ErrorCategory.VALIDATION,
                recoverable=False,
                details={"fields": fields},
            ),
        )
        self.fields = fields


def classify_error(error: Exception) -> ErrorContext:
    """
    Return the error context for an exception.

    Unclassified exceptions are treated as unrecoverable: retries are reserved
    for failures the transport layer has explicitly marked as transient.
    """
    if isinstance(error, (RecoverableError, UnrecoverableError)):
        return error.context

    return ErrorContext(
        category=ErrorCategory.UNKNOWN,
        recoverable=False,
        details={"type": type(error).__name__},
    )
