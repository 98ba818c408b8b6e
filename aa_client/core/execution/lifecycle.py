"""
UserOperation Lifecycle

Drives one UserOperation from draft to a terminal outcome:

    DRAFTED -> ESTIMATED -> SIGNED -> SUBMITTED -> CONFIRMED | REVERTED

with REJECTED, TIMED_OUT and FAILED reachable from the stages that can
produce them. Transport failures during estimation and submission are
retried with backoff; everything else ends the run.
"""

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    List,
    Optional,
    Protocol,
    Set,
    TypeVar,
)

import structlog

from ..recovery.errors import (
    ReceiptTimeout,
    RejectedByBundler,
    SigningUnavailable,
    SimulationReverted,
    TransportError,
    UnestimatedOperation,
    UnrecoverableError,
)
from ..recovery.strategies import RetryConfig, RetryStrategy
from .gas_policy import GasPolicy, OverheadConfig
from .models import (
    TERMINAL_STATES,
    InvalidTransitionError,
    LifecycleResult,
    LifecycleState,
    LifecycleTimeouts,
    StateTransition,
)
from .signer import UserOpSigner
from .userop import AccountState, Call, FeeHint, UserOperation, UserOpGasEstimate, UserOpReceipt
from .userop_builder import UserOperationBuilder

T = TypeVar("T")

TransitionCallback = Callable[[StateTransition, LifecycleResult], Coroutine[Any, Any, None]]


class BundlerClient(Protocol):
    """The bundler surface the lifecycle drives."""

    @property
    def entry_point(self) -> str: ...

    async def estimate_user_operation_gas(self, user_op: UserOperation) -> UserOpGasEstimate: ...

    async def send_user_operation(self, user_op: UserOperation) -> str: ...

    async def poll_receipt(
        self,
        user_op_hash: str,
        poll_interval: float,
        timeout: float,
        stop: Optional[asyncio.Event] = None,
    ) -> UserOpReceipt: ...


class UserOperationLifecycle:
    """
    Single-use state machine for one UserOperation.

    Each stage method advances exactly one step and returns the new state;
    ``run()`` chains them and stops at the first terminal state. Once the
    operation is signed it is never modified again.
    """

    TRANSITIONS: Dict[LifecycleState, Set[LifecycleState]] = {
        LifecycleState.DRAFTED: {
            LifecycleState.ESTIMATED,
            LifecycleState.REJECTED,   # Simulation reverted
            LifecycleState.TIMED_OUT,
            LifecycleState.FAILED,
        },
        LifecycleState.ESTIMATED: {
            LifecycleState.SIGNED,
            LifecycleState.FAILED,     # Signing backend unavailable
        },
        LifecycleState.SIGNED: {
            LifecycleState.SUBMITTED,
            LifecycleState.REJECTED,
            LifecycleState.TIMED_OUT,
            LifecycleState.FAILED,     # Transport retries exhausted
        },
        LifecycleState.SUBMITTED: {
            LifecycleState.CONFIRMED,
            LifecycleState.REVERTED,
            LifecycleState.TIMED_OUT,
            LifecycleState.FAILED,
        },
        LifecycleState.CONFIRMED: set(),
        LifecycleState.REVERTED: set(),
        LifecycleState.TIMED_OUT: set(),
        LifecycleState.REJECTED: set(),
        LifecycleState.FAILED: set(),
    }

    def __init__(
        self,
        draft: UserOperation,
        bundler: BundlerClient,
        signer: UserOpSigner,
        chain_id: int,
        entry_point: Optional[str] = None,
        gas_policy: Optional[GasPolicy] = None,
        retry: Optional[RetryStrategy] = None,
        timeouts: Optional[LifecycleTimeouts] = None,
        on_transition: Optional[TransitionCallback] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if draft.is_signed:
            raise ValueError("Lifecycle must start from an unsigned draft")

        self.bundler = bundler
        self.signer = signer
        self.chain_id = chain_id
        self.entry_point = entry_point or bundler.entry_point
        self.gas_policy = gas_policy or GasPolicy(OverheadConfig.zero())
        self.timeouts = timeouts or LifecycleTimeouts()
        self.logger = logger or logging.getLogger(__name__)
        self._retry = retry or RetryStrategy(RetryConfig(), logger=self.logger)
        self._on_transition = on_transition

        self._state = LifecycleState.DRAFTED
        self._user_op = draft
        self._raw_estimate: Optional[UserOpGasEstimate] = None
        self._operation_hash: Optional[str] = None
        self._receipt: Optional[UserOpReceipt] = None
        self._error: Optional[Exception] = None
        self._history: List[StateTransition] = []
        self._started = False

    @classmethod
    def from_call(
        cls,
        builder: UserOperationBuilder,
        call: Call,
        account_state: AccountState,
        fee_hint: FeeHint,
        bundler: BundlerClient,
        signer: UserOpSigner,
        chain_id: int,
        paymaster_and_data: bytes = b"",
        **kwargs: Any,
    ) -> "UserOperationLifecycle":
        """Draft ``call`` against ``account_state`` and wrap it in a new lifecycle."""
        draft = builder.draft(call, account_state, fee_hint, paymaster_and_data=paymaster_and_data)
        return cls(draft, bundler, signer, chain_id, **kwargs)

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def user_operation(self) -> UserOperation:
        return self._user_op

    @property
    def raw_estimate(self) -> Optional[UserOpGasEstimate]:
        """The bundler's estimate before overhead was applied."""
        return self._raw_estimate

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def result(self) -> LifecycleResult:
        return LifecycleResult(
            state=self._state,
            user_operation=self._user_op,
            operation_hash=self._operation_hash,
            receipt=self._receipt,
            error=self._error,
            history=list(self._history),
        )

    def can_transition_to(self, to_state: LifecycleState) -> bool:
        return to_state in self.TRANSITIONS.get(self._state, set())

    async def run(self, stop: Optional[asyncio.Event] = None) -> LifecycleResult:
        """
        Drive the operation to a terminal state.

        Setting ``stop`` while waiting for the receipt ends the run as
        TIMED_OUT; the operation may still be included later.
        """
        if self._started:
            raise InvalidTransitionError(
                self._state,
                LifecycleState.ESTIMATED,
                "A lifecycle runs once; draft a new operation to resend",
            )
        self._started = True

        with structlog.contextvars.bound_contextvars(
            sender=self._user_op.sender,
            nonce=self._user_op.nonce,
            chain_id=self.chain_id,
        ):
            for stage in (self.estimate, self.sign, self.submit):
                await stage()
                if self.is_terminal:
                    return self.result
            await self.wait_for_receipt(stop=stop)

        return self.result

    async def estimate(self) -> LifecycleState:
        self._require(LifecycleState.ESTIMATED)
        draft = self._user_op
        try:
            raw = await self._stage(
                "estimate",
                self.timeouts.estimate,
                lambda: self.bundler.estimate_user_operation_gas(draft),
            )
        except Exception as exc:
            return await self._fail_with(exc, stage="estimate")

        adjusted = self.gas_policy.adjust(raw, draft.with_gas(raw))
        self._raw_estimate = raw
        self._user_op = draft.with_gas(adjusted)

        await self._transition(
            LifecycleState.ESTIMATED,
            reason="Gas estimated",
            context={
                "preVerificationGas": adjusted.pre_verification_gas,
                "verificationGasLimit": adjusted.verification_gas_limit,
                "callGasLimit": adjusted.call_gas_limit,
            },
        )
        return self._state

    async def sign(self) -> LifecycleState:
        self._require(LifecycleState.SIGNED)
        try:
            signed = await self.signer.sign_operation(self._user_op, self.chain_id, self.entry_point)
        except (SigningUnavailable, UnestimatedOperation) as exc:
            return await self._fail_with(exc, stage="sign")

        self._user_op = signed
        await self._transition(
            LifecycleState.SIGNED,
            reason="Signed",
            context={"backend": self.signer.backend_name},
        )
        return self._state

    async def submit(self) -> LifecycleState:
        self._require(LifecycleState.SUBMITTED)
        signed = self._user_op
        try:
            op_hash = await self._stage(
                "submit",
                self.timeouts.submit,
                lambda: self.bundler.send_user_operation(signed),
            )
        except Exception as exc:
            return await self._fail_with(exc, stage="submit")

        self._operation_hash = op_hash
        await self._transition(
            LifecycleState.SUBMITTED,
            reason="Accepted by bundler",
            context={"operationHash": op_hash},
        )
        return self._state

    async def wait_for_receipt(self, stop: Optional[asyncio.Event] = None) -> LifecycleState:
        self._require(LifecycleState.CONFIRMED)
        try:
            receipt = await self.bundler.poll_receipt(
                self._operation_hash,
                poll_interval=self.timeouts.poll_interval,
                timeout=self.timeouts.receipt,
                stop=stop,
            )
        except Exception as exc:
            return await self._fail_with(exc, stage="receipt")

        self._receipt = receipt
        context = {
            "transactionHash": receipt.transaction_hash,
            "blockNumber": receipt.block_number,
        }
        if receipt.success:
            await self._transition(LifecycleState.CONFIRMED, reason="Included", context=context)
        else:
            await self._transition(
                LifecycleState.REVERTED,
                reason=receipt.revert_reason or "Execution reverted",
                context=context,
                error_message=receipt.revert_reason,
                error_code="EXECUTION_REVERTED",
            )
        return self._state

    async def _stage(
        self,
        name: str,
        timeout: float,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        return await asyncio.wait_for(
            self._retry.execute(operation, context={"operation": name}),
            timeout=timeout,
        )

    async def _fail_with(self, exc: Exception, stage: str) -> LifecycleState:
        """Map a stage error onto its terminal state; unknown errors propagate."""
        if isinstance(exc, (asyncio.TimeoutError, ReceiptTimeout)):
            to_state = LifecycleState.TIMED_OUT
            code = "CANCELLED" if getattr(exc, "cancelled", False) else "STAGE_TIMEOUT"
            message = str(exc) or f"{stage} timed out"
        elif isinstance(exc, (SimulationReverted, RejectedByBundler)):
            to_state = LifecycleState.REJECTED
            code = type(exc).__name__
            message = str(exc)
        elif isinstance(exc, (TransportError, UnrecoverableError)):
            to_state = LifecycleState.FAILED
            code = type(exc).__name__
            message = str(exc)
        else:
            raise exc

        # Once submitted the operation can no longer be rejected
        if not self.can_transition_to(to_state):
            if not self.can_transition_to(LifecycleState.FAILED):
                raise exc
            to_state = LifecycleState.FAILED

        self._error = exc
        self.logger.warning(f"UserOperation {stage} ended in {to_state.value}: {message}")
        await self._transition(
            to_state,
            reason=f"{stage} failed",
            error_message=message,
            error_code=code,
        )
        return self._state

    def _require(self, to_state: LifecycleState) -> None:
        if not self.can_transition_to(to_state):
            allowed = sorted(s.value for s in self.TRANSITIONS.get(self._state, set()))
            raise InvalidTransitionError(
                self._state,
                to_state,
                f"Invalid transition from {self._state.value} to {to_state.value}. "
                f"Allowed: {allowed}",
            )

    async def _transition(
        self,
        to_state: LifecycleState,
        reason: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> StateTransition:
        self._require(to_state)

        transition = StateTransition(
            from_state=self._state,
            to_state=to_state,
            reason=reason,
            context=context or {},
            error_message=error_message,
            error_code=error_code,
        )
        self._state = to_state
        self._history.append(transition)

        self.logger.info(
            f"UserOperation {self._user_op.sender}/{self._user_op.nonce}: "
            f"{transition.from_state.value} -> {to_state.value}"
            f"{f' ({reason})' if reason else ''}"
        )

        if self._on_transition:
            try:
                await self._on_transition(transition, self.result)
            except Exception as e:
                self.logger.error(f"Transition callback error: {e}")

        return transition
