"""
Tests for the UserOperation lifecycle state machine.

Covers the happy path, rejection before submission, transport retries,
on-chain reverts, stage timeouts and transition validation.
"""

import asyncio
from dataclasses import replace
from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest

from aa_client.core.execution.gas_policy import GasPolicy, OverheadConfig
from aa_client.core.execution.lifecycle import UserOperationLifecycle
from aa_client.core.execution.models import (
    InvalidTransitionError,
    LifecycleState,
    LifecycleTimeouts,
    StateTransition,
)
from aa_client.core.execution.signer import LocalKeyBackend, UserOpSigner
from aa_client.core.execution.userop import (
    UNESTIMATED,
    AccountState,
    Call,
    FeeHint,
    UserOperation,
    UserOpGasEstimate,
    UserOpReceipt,
)
from aa_client.core.execution.userop_builder import UserOperationBuilder
from aa_client.core.recovery.errors import (
    ReceiptTimeout,
    RejectedByBundler,
    SigningUnavailable,
    SimulationReverted,
    TransportError,
    UnknownAccountState,
)
from aa_client.core.recovery.strategies import RetryConfig, RetryStrategy


ENTRY_POINT = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"
SENDER = "0x2222222222222222222222222222222222222222"
OP_HASH = "0xdeadbeef"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def draft() -> UserOperation:
    return UserOperation(
        sender=SENDER,
        nonce=0,
        init_code=bytes.fromhex("1234"),
        call_data=bytes.fromhex("5678"),
        call_gas_limit=UNESTIMATED,
        verification_gas_limit=UNESTIMATED,
        pre_verification_gas=UNESTIMATED,
        max_fee_per_gas=2_000_000_000,
        max_priority_fee_per_gas=1_000_000_000,
    )


@pytest.fixture
def estimate() -> UserOpGasEstimate:
    return UserOpGasEstimate(
        pre_verification_gas=50_000,
        verification_gas_limit=150_000,
        call_gas_limit=100_000,
    )


@pytest.fixture
def bundler(estimate) -> MagicMock:
    bundler = MagicMock()
    bundler.entry_point = ENTRY_POINT
    bundler.estimate_user_operation_gas = AsyncMock(return_value=estimate)
    bundler.send_user_operation = AsyncMock(return_value=OP_HASH)
    bundler.poll_receipt = AsyncMock(
        return_value=UserOpReceipt(
            operation_hash=OP_HASH,
            success=True,
            transaction_hash="0x" + "ab" * 32,
            block_number=12345,
        )
    )
    return bundler


@pytest.fixture
def signer() -> UserOpSigner:
    return UserOpSigner(LocalKeyBackend("0x" + "11" * 32))


@pytest.fixture
def delays() -> List[float]:
    return []


@pytest.fixture
def retry(delays) -> RetryStrategy:
    async def record_sleep(seconds: float) -> None:
        delays.append(seconds)

    return RetryStrategy(RetryConfig(max_attempts=4, jitter=False), sleep=record_sleep)


@pytest.fixture
def make_lifecycle(draft, bundler, signer, retry):
    def _make(**kwargs) -> UserOperationLifecycle:
        params = dict(
            chain_id=11155111,
            gas_policy=GasPolicy(OverheadConfig.zero()),
            retry=retry,
        )
        params.update(kwargs)
        return UserOperationLifecycle(draft, bundler, signer, **params)

    return _make


# =============================================================================
# Happy path
# =============================================================================

class TestConfirmedPath:

    @pytest.mark.asyncio
    async def test_reaches_confirmed_with_block_number(self, make_lifecycle, bundler, estimate):
        result = await make_lifecycle().run()

        assert result.state == LifecycleState.CONFIRMED
        assert result.is_success
        assert result.block_number == 12345
        assert result.operation_hash == OP_HASH
        assert result.states() == [
            LifecycleState.DRAFTED,
            LifecycleState.ESTIMATED,
            LifecycleState.SIGNED,
            LifecycleState.SUBMITTED,
            LifecycleState.CONFIRMED,
        ]

        # Zero overhead: submitted gas equals the bundler estimate
        submitted = bundler.send_user_operation.await_args.args[0]
        assert submitted.pre_verification_gas == estimate.pre_verification_gas
        assert submitted.verification_gas_limit == estimate.verification_gas_limit
        assert submitted.call_gas_limit == estimate.call_gas_limit
        assert submitted.init_code == bytes.fromhex("1234")
        assert submitted.call_data == bytes.fromhex("5678")
        assert len(submitted.signature) == 65

    @pytest.mark.asyncio
    async def test_receipt_polled_with_configured_timing(self, make_lifecycle, bundler):
        stop = asyncio.Event()
        timeouts = LifecycleTimeouts(receipt=30.0, poll_interval=0.5)
        await make_lifecycle(timeouts=timeouts).run(stop=stop)

        bundler.poll_receipt.assert_awaited_once_with(
            OP_HASH, poll_interval=0.5, timeout=30.0, stop=stop
        )

    @pytest.mark.asyncio
    async def test_overhead_applied_to_raw_estimate(self, make_lifecycle, bundler, estimate):
        policy = GasPolicy(OverheadConfig(call_gas_overhead=1_000, verification_gas_percent=10))
        lifecycle = make_lifecycle(gas_policy=policy)
        await lifecycle.run()

        submitted = bundler.send_user_operation.await_args.args[0]
        assert lifecycle.raw_estimate == estimate
        assert submitted.call_gas_limit == estimate.call_gas_limit + 1_000
        assert submitted.verification_gas_limit == 165_000
        assert submitted.pre_verification_gas > estimate.pre_verification_gas

    @pytest.mark.asyncio
    async def test_transition_callback_sees_every_transition(self, make_lifecycle):
        seen: List[StateTransition] = []

        async def on_transition(transition, result):
            seen.append(transition)

        await make_lifecycle(on_transition=on_transition).run()

        assert [t.to_state for t in seen] == [
            LifecycleState.ESTIMATED,
            LifecycleState.SIGNED,
            LifecycleState.SUBMITTED,
            LifecycleState.CONFIRMED,
        ]

    def test_from_call_drafts_with_builder(self, bundler, signer, retry):
        state = AccountState(sender=SENDER, nonce=4, deployed=True)
        fee_hint = FeeHint(max_fee_per_gas=10, max_priority_fee_per_gas=1)

        lifecycle = UserOperationLifecycle.from_call(
            UserOperationBuilder(),
            Call(to="0x3333333333333333333333333333333333333333", value=1),
            state,
            fee_hint,
            bundler=bundler,
            signer=signer,
            chain_id=1,
            retry=retry,
        )

        assert lifecycle.user_operation.nonce == 4
        assert lifecycle.user_operation.init_code == b""
        assert lifecycle.state == LifecycleState.DRAFTED

    def test_from_call_with_bad_sender_never_reaches_bundler(self, bundler, signer, retry):
        state = AccountState(sender="0xAAA", nonce=0, deployed=True)

        with pytest.raises(UnknownAccountState):
            UserOperationLifecycle.from_call(
                UserOperationBuilder(),
                Call(to="0x" + "00" * 20),
                state,
                FeeHint(max_fee_per_gas=100, max_priority_fee_per_gas=10),
                bundler=bundler,
                signer=signer,
                chain_id=1,
                retry=retry,
            )

        bundler.estimate_user_operation_gas.assert_not_awaited()


# =============================================================================
# Rejection and failure
# =============================================================================

class TestRejection:

    @pytest.mark.asyncio
    async def test_simulation_revert_rejects_without_submitting(self, make_lifecycle, bundler):
        bundler.estimate_user_operation_gas.side_effect = SimulationReverted("AA23 reverted")

        result = await make_lifecycle().run()

        assert result.state == LifecycleState.REJECTED
        assert result.revert_reason == "AA23 reverted"
        assert isinstance(result.error, SimulationReverted)
        bundler.send_user_operation.assert_not_awaited()
        bundler.poll_receipt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bundler_rejection_on_submit_is_not_retried(self, make_lifecycle, bundler, delays):
        bundler.send_user_operation.side_effect = RejectedByBundler(-32602, "invalid fields")

        result = await make_lifecycle().run()

        assert result.state == LifecycleState.REJECTED
        assert bundler.send_user_operation.await_count == 1
        assert delays == []
        assert result.history[-1].error_code == "RejectedByBundler"

    @pytest.mark.asyncio
    async def test_simulation_revert_on_submit_rejects(self, make_lifecycle, bundler, delays):
        bundler.send_user_operation.side_effect = SimulationReverted("AA21 didn't pay prefund")

        result = await make_lifecycle().run()

        assert result.state == LifecycleState.REJECTED
        assert result.states()[-2:] == [LifecycleState.SIGNED, LifecycleState.REJECTED]
        assert result.revert_reason == "AA21 didn't pay prefund"
        assert result.history[-1].error_code == "SimulationReverted"
        assert bundler.send_user_operation.await_count == 1
        assert delays == []
        bundler.poll_receipt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_signing_unavailable_fails_before_submit(self, draft, bundler, retry):
        class Offline:
            name = "offline"

            async def sign(self, message_hash: bytes) -> bytes:
                raise SigningUnavailable("HSM offline", backend="offline")

        lifecycle = UserOperationLifecycle(draft, bundler, UserOpSigner(Offline()), chain_id=1, retry=retry)
        result = await lifecycle.run()

        assert result.state == LifecycleState.FAILED
        assert isinstance(result.error, SigningUnavailable)
        bundler.send_user_operation.assert_not_awaited()


# =============================================================================
# Transport retries
# =============================================================================

class TestTransportRetries:

    @pytest.mark.asyncio
    async def test_three_transport_errors_then_success(self, make_lifecycle, bundler, delays):
        bundler.send_user_operation.side_effect = [
            TransportError("connection reset"),
            TransportError("connection reset"),
            TransportError("bad gateway", status_code=502),
            OP_HASH,
        ]

        result = await make_lifecycle().run()

        assert LifecycleState.SUBMITTED in result.states()
        assert result.operation_hash == OP_HASH
        assert bundler.send_user_operation.await_count == 4
        assert delays == [1.0, 2.0, 4.0]
        assert bundler.estimate_user_operation_gas.await_count == 1

    @pytest.mark.asyncio
    async def test_resubmits_identical_signed_operation(self, make_lifecycle, bundler):
        bundler.send_user_operation.side_effect = [TransportError("timeout"), OP_HASH]

        await make_lifecycle().run()

        first, second = (call.args[0] for call in bundler.send_user_operation.await_args_list)
        assert first == second

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail(self, make_lifecycle, bundler, delays):
        bundler.send_user_operation.side_effect = TransportError("connection refused")

        result = await make_lifecycle().run()

        assert result.state == LifecycleState.FAILED
        assert isinstance(result.error, TransportError)
        assert bundler.send_user_operation.await_count == 4
        assert len(delays) == 3

    @pytest.mark.asyncio
    async def test_estimate_transport_errors_are_retried(self, make_lifecycle, bundler, estimate, delays):
        bundler.estimate_user_operation_gas.side_effect = [TransportError("reset"), estimate]

        result = await make_lifecycle().run()

        assert result.state == LifecycleState.CONFIRMED
        assert delays == [1.0]


# =============================================================================
# Inclusion outcomes and timeouts
# =============================================================================

class TestOutcomes:

    @pytest.mark.asyncio
    async def test_reverted_receipt(self, make_lifecycle, bundler):
        bundler.poll_receipt.return_value = UserOpReceipt(
            operation_hash=OP_HASH,
            success=False,
            transaction_hash="0x" + "cd" * 32,
            block_number=777,
            revert_reason="0x08c379a0",
        )

        result = await make_lifecycle().run()

        assert result.state == LifecycleState.REVERTED
        assert result.is_final
        assert not result.is_success
        assert result.block_number == 777
        assert result.revert_reason == "0x08c379a0"

        summary = result.to_dict()
        assert summary["state"] == "reverted"
        assert summary["transactionHash"] == "0x" + "cd" * 32
        assert summary["revertReason"] == "0x08c379a0"
        assert [t["toState"] for t in summary["history"]] == [
            "estimated", "signed", "submitted", "reverted",
        ]

    @pytest.mark.asyncio
    async def test_receipt_timeout(self, make_lifecycle, bundler):
        bundler.poll_receipt.side_effect = ReceiptTimeout(OP_HASH, 180.0)

        result = await make_lifecycle().run()

        assert result.state == LifecycleState.TIMED_OUT
        assert result.operation_hash == OP_HASH
        assert result.history[-1].error_code == "STAGE_TIMEOUT"

    @pytest.mark.asyncio
    async def test_cancelled_polling(self, make_lifecycle, bundler):
        bundler.poll_receipt.side_effect = ReceiptTimeout(OP_HASH, 4.0, cancelled=True)

        result = await make_lifecycle().run()

        assert result.state == LifecycleState.TIMED_OUT
        assert result.history[-1].error_code == "CANCELLED"

    @pytest.mark.asyncio
    async def test_bundler_error_while_polling_fails(self, make_lifecycle, bundler):
        bundler.poll_receipt.side_effect = RejectedByBundler(-32601, "method not found")

        result = await make_lifecycle().run()

        assert result.state == LifecycleState.FAILED
        assert result.operation_hash == OP_HASH

    @pytest.mark.asyncio
    async def test_estimate_stage_deadline(self, make_lifecycle, bundler, estimate):
        async def slow_estimate(user_op):
            await asyncio.sleep(5)
            return estimate

        bundler.estimate_user_operation_gas.side_effect = slow_estimate
        timeouts = LifecycleTimeouts(estimate=0.01)

        result = await make_lifecycle(timeouts=timeouts).run()

        assert result.state == LifecycleState.TIMED_OUT
        bundler.send_user_operation.assert_not_awaited()


# =============================================================================
# Transition validation
# =============================================================================

class TestTransitions:

    @pytest.mark.asyncio
    async def test_cannot_submit_before_signing(self, make_lifecycle, bundler):
        lifecycle = make_lifecycle()

        with pytest.raises(InvalidTransitionError):
            await lifecycle.submit()

        bundler.send_user_operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stepwise_progression(self, make_lifecycle):
        lifecycle = make_lifecycle()

        assert await lifecycle.estimate() == LifecycleState.ESTIMATED
        assert await lifecycle.sign() == LifecycleState.SIGNED
        assert await lifecycle.submit() == LifecycleState.SUBMITTED
        assert await lifecycle.wait_for_receipt() == LifecycleState.CONFIRMED
        assert lifecycle.is_terminal

    @pytest.mark.asyncio
    async def test_lifecycle_runs_once(self, make_lifecycle):
        lifecycle = make_lifecycle()
        await lifecycle.run()

        with pytest.raises(InvalidTransitionError):
            await lifecycle.run()

    def test_terminal_states_have_no_exits(self):
        for state in (
            LifecycleState.CONFIRMED,
            LifecycleState.REVERTED,
            LifecycleState.TIMED_OUT,
            LifecycleState.REJECTED,
            LifecycleState.FAILED,
        ):
            assert UserOperationLifecycle.TRANSITIONS[state] == set()

    def test_signed_draft_is_refused(self, draft, bundler, signer):
        with pytest.raises(ValueError):
            UserOperationLifecycle(replace(draft, signature=b"\x01"), bundler, signer, chain_id=1)
