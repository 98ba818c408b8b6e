"""
UserOperation lifecycle models.

Defines states, transitions and the result record of one lifecycle run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .userop import UserOperation, UserOpReceipt


class LifecycleState(str, Enum):
    """States a UserOperation moves through."""

    DRAFTED = "drafted"          # Built, gas unestimated
    ESTIMATED = "estimated"      # Gas filled with overhead applied
    SIGNED = "signed"            # Signature attached, immutable from here
    SUBMITTED = "submitted"      # Accepted by the bundler
    CONFIRMED = "confirmed"      # Included, execution succeeded
    REVERTED = "reverted"        # Included, execution failed
    TIMED_OUT = "timed_out"      # A stage deadline passed; outcome may be unknown
    REJECTED = "rejected"        # Bundler refused or simulation reverted; never included
    FAILED = "failed"            # Local precondition or exhausted transport retries


TERMINAL_STATES = frozenset({
    LifecycleState.CONFIRMED,
    LifecycleState.REVERTED,
    LifecycleState.TIMED_OUT,
    LifecycleState.REJECTED,
    LifecycleState.FAILED,
})


class InvalidTransitionError(Exception):
    """Raised when attempting an invalid state transition."""

    def __init__(
        self,
        from_state: LifecycleState,
        to_state: LifecycleState,
        message: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            message or f"Invalid transition from {from_state.value} to {to_state.value}"
        )


@dataclass
class StateTransition:
    """Record of a state transition."""

    id: str = field(default_factory=lambda: str(uuid4()))
    from_state: LifecycleState = LifecycleState.DRAFTED
    to_state: LifecycleState = LifecycleState.DRAFTED
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    reason: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    error_message: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fromState": self.from_state.value,
            "toState": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "context": self.context,
            "errorMessage": self.error_message,
            "errorCode": self.error_code,
        }


@dataclass
class LifecycleTimeouts:
    """Per-stage deadlines in seconds."""

    estimate: float = 60.0
    submit: float = 120.0
    receipt: float = 180.0
    poll_interval: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "LifecycleTimeouts":
        return cls(
            estimate=settings.estimate_timeout_seconds,
            submit=settings.submit_timeout_seconds,
            receipt=settings.receipt_timeout_seconds,
            poll_interval=settings.receipt_poll_interval_seconds,
        )


@dataclass
class LifecycleResult:
    """Outcome of a lifecycle run."""

    state: LifecycleState
    user_operation: UserOperation
    operation_hash: Optional[str] = None
    receipt: Optional[UserOpReceipt] = None
    error: Optional[Exception] = None
    history: List[StateTransition] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_success(self) -> bool:
        return self.state == LifecycleState.CONFIRMED

    @property
    def block_number(self) -> Optional[int]:
        return self.receipt.block_number if self.receipt else None

    @property
    def revert_reason(self) -> Optional[str]:
        if self.receipt and self.receipt.revert_reason:
            return self.receipt.revert_reason
        return getattr(self.error, "reason", None)

    def states(self) -> List[LifecycleState]:
        """States visited, in order, starting with DRAFTED."""
        visited = [LifecycleState.DRAFTED]
        visited.extend(t.to_state for t in self.history)
        return visited

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "sender": self.user_operation.sender,
            "nonce": self.user_operation.nonce,
            "operationHash": self.operation_hash,
            "transactionHash": self.receipt.transaction_hash if self.receipt else None,
            "blockNumber": self.block_number,
            "revertReason": self.revert_reason,
            "error": str(self.error) if self.error else None,
            "history": [t.to_dict() for t in self.history],
        }
