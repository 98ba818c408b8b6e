"""
Tests for UserOperation hashing and signing backends.
"""

from dataclasses import replace

import httpx
import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from aa_client.core.execution.signer import (
    LocalKeyBackend,
    RemoteSigningBackend,
    SigningBackend,
    UserOpSigner,
    user_operation_hash,
)
from aa_client.core.execution.userop import UserOperation
from aa_client.core.recovery.errors import SigningUnavailable, UnestimatedOperation


PRIVATE_KEY = "0x" + "11" * 32
ENTRY_POINT = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"
OTHER_ENTRY_POINT = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"


@pytest.fixture
def estimated_op() -> UserOperation:
    return UserOperation(
        sender="0x2222222222222222222222222222222222222222",
        nonce=3,
        init_code=b"",
        call_data=bytes.fromhex("5678"),
        call_gas_limit=100_000,
        verification_gas_limit=150_000,
        pre_verification_gas=50_000,
        max_fee_per_gas=2_000_000_000,
        max_priority_fee_per_gas=1_000_000_000,
    )


class FailingBackend:
    name = "failing"

    def __init__(self, error: Exception):
        self.error = error

    async def sign(self, message_hash: bytes) -> bytes:
        raise self.error


class EmptyBackend:
    name = "empty"

    async def sign(self, message_hash: bytes) -> bytes:
        return b""


# =============================================================================
# Hashing
# =============================================================================

class TestUserOperationHash:

    def test_hash_is_32_bytes(self, estimated_op):
        assert len(user_operation_hash(estimated_op, 1, ENTRY_POINT)) == 32

    def test_hash_binds_chain_id(self, estimated_op):
        assert user_operation_hash(estimated_op, 1, ENTRY_POINT) != user_operation_hash(
            estimated_op, 11155111, ENTRY_POINT
        )

    def test_hash_binds_entry_point(self, estimated_op):
        assert user_operation_hash(estimated_op, 1, ENTRY_POINT) != user_operation_hash(
            estimated_op, 1, OTHER_ENTRY_POINT
        )

    def test_hash_ignores_signature(self, estimated_op):
        signed = replace(estimated_op, signature=b"\x01" * 65)
        assert user_operation_hash(signed, 1, ENTRY_POINT) == user_operation_hash(
            estimated_op, 1, ENTRY_POINT
        )


# =============================================================================
# Signing
# =============================================================================

class TestUserOpSigner:

    @pytest.mark.asyncio
    async def test_local_signature_recovers_owner(self, estimated_op):
        backend = LocalKeyBackend(PRIVATE_KEY)
        signature = await UserOpSigner(backend).sign(estimated_op, 1, ENTRY_POINT)

        digest = user_operation_hash(estimated_op, 1, ENTRY_POINT)
        recovered = Account.recover_message(encode_defunct(primitive=digest), signature=signature)

        assert len(signature) == 65
        assert recovered == backend.address

    @pytest.mark.asyncio
    async def test_signatures_differ_across_chains(self, estimated_op):
        signer = UserOpSigner(LocalKeyBackend(PRIVATE_KEY))

        on_chain_a = await signer.sign(estimated_op, 1, ENTRY_POINT)
        on_chain_b = await signer.sign(estimated_op, 137, ENTRY_POINT)

        assert on_chain_a != on_chain_b

    @pytest.mark.asyncio
    async def test_unestimated_operation_is_refused(self, estimated_op):
        draft = replace(estimated_op, call_gas_limit=0, pre_verification_gas=0)
        signer = UserOpSigner(LocalKeyBackend(PRIVATE_KEY))

        with pytest.raises(UnestimatedOperation) as exc_info:
            await signer.sign(draft, 1, ENTRY_POINT)

        assert exc_info.value.fields == ["call_gas_limit", "pre_verification_gas"]

    @pytest.mark.asyncio
    async def test_backend_failure_is_signing_unavailable(self, estimated_op):
        signer = UserOpSigner(FailingBackend(RuntimeError("HSM offline")))

        with pytest.raises(SigningUnavailable) as exc_info:
            await signer.sign(estimated_op, 1, ENTRY_POINT)

        assert exc_info.value.backend == "failing"

    @pytest.mark.asyncio
    async def test_empty_signature_is_signing_unavailable(self, estimated_op):
        with pytest.raises(SigningUnavailable):
            await UserOpSigner(EmptyBackend()).sign(estimated_op, 1, ENTRY_POINT)

    @pytest.mark.asyncio
    async def test_sign_operation_returns_signed_copy(self, estimated_op):
        signer = UserOpSigner(LocalKeyBackend(PRIVATE_KEY))
        signed = await signer.sign_operation(estimated_op, 1, ENTRY_POINT)

        assert signed.is_signed
        assert not estimated_op.is_signed
        assert signed.call_data == estimated_op.call_data

    def test_backends_satisfy_protocol(self):
        assert isinstance(LocalKeyBackend(PRIVATE_KEY), SigningBackend)
        assert isinstance(RemoteSigningBackend("http://signer", "key-1"), SigningBackend)


# =============================================================================
# Remote backend
# =============================================================================

class TestRemoteSigningBackend:

    @pytest.mark.asyncio
    async def test_posts_hash_and_reads_signature(self, estimated_op):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = request.read()
            return httpx.Response(200, json={"signature": "0x" + "ab" * 65})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        backend = RemoteSigningBackend("http://signer/sign", "key-1", client=client)

        signature = await UserOpSigner(backend).sign(estimated_op, 1, ENTRY_POINT)

        assert signature == b"\xab" * 65
        assert b'"keyId":"key-1"' in seen["body"].replace(b" ", b"")
        await backend.close()

    @pytest.mark.asyncio
    async def test_http_error_is_signing_unavailable(self, estimated_op):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="unavailable"))
        )
        backend = RemoteSigningBackend("http://signer/sign", "key-1", client=client)

        with pytest.raises(SigningUnavailable):
            await UserOpSigner(backend).sign(estimated_op, 1, ENTRY_POINT)
        await backend.close()
