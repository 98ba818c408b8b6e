"""
UserOperation signing.

The hash binds the operation fields to the chain id and the EntryPoint
address, so a signature cannot be replayed on another chain or EntryPoint
version. Backends only ever see the 32-byte hash.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak, to_checksum_address

from aa_client.core.recovery.errors import SigningUnavailable, UnestimatedOperation

from .userop import UserOperation, to_bytes

logger = logging.getLogger(__name__)


@runtime_checkable
class SigningBackend(Protocol):
    """Anything able to sign a 32-byte UserOperation hash."""

    async def sign(self, message_hash: bytes) -> bytes:  # pragma: no cover - protocol
        """Return raw signature bytes over ``message_hash``."""


def user_operation_hash(user_op: UserOperation, chain_id: int, entry_point: str) -> bytes:
    """keccak256(abi.encode(keccak256(pack(userOp)), entryPoint, chainId))."""
    inner = keccak(user_op.pack_for_signature())
    return keccak(
        abi_encode(
            ["bytes32", "address", "uint256"],
            [inner, to_checksum_address(entry_point), chain_id],
        )
    )


class LocalKeyBackend:
    """
    Signs with a locally held private key.

    Uses an EIP-191 personal-sign envelope over the hash, which is what
    SimpleAccount's validateUserOp recovers against.
    """

    name = "local"

    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign(self, message_hash: bytes) -> bytes:
        signed = self._account.sign_message(encode_defunct(primitive=message_hash))
        return bytes(signed.signature)


class RemoteSigningBackend:
    """
    Delegates signing to a remote signing service (KMS / HSM gateway).

    The service receives ``{"keyId": ..., "hash": "0x..."}`` and returns
    ``{"signature": "0x..."}``.
    """

    name = "remote"
    timeout_s = 15

    def __init__(
        self,
        url: str,
        key_id: str,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.key_id = key_id
        self._headers = headers or {}
        self._client = client

    async def sign(self, message_hash: bytes) -> bytes:
        if not self._client or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)

        response = await self._client.post(
            self.url,
            json={"keyId": self.key_id, "hash": "0x" + message_hash.hex()},
            headers=self._headers,
        )
        response.raise_for_status()
        payload: Dict[str, Any] = response.json()
        return to_bytes(payload.get("signature"))

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()


class UserOpSigner:
    """
    Produces UserOperation signatures through a pluggable backend.
    """

    def __init__(self, backend: SigningBackend) -> None:
        self.backend = backend

    @property
    def backend_name(self) -> str:
        return getattr(self.backend, "name", type(self.backend).__name__)

    async def sign(self, user_op: UserOperation, chain_id: int, entry_point: str) -> bytes:
        unestimated = user_op.unestimated_fields
        if unestimated:
            raise UnestimatedOperation(unestimated)

        op_hash = user_operation_hash(user_op, chain_id, entry_point)
        try:
            signature = await self.backend.sign(op_hash)
        except SigningUnavailable:
            raise
        except (httpx.HTTPError, OSError, ValueError, RuntimeError) as exc:
            raise SigningUnavailable(
                f"Signing backend {self.backend_name} failed: {exc}",
                backend=self.backend_name,
            ) from exc

        if not signature:
            raise SigningUnavailable(
                f"Signing backend {self.backend_name} returned an empty signature",
                backend=self.backend_name,
            )

        logger.info(f"Signed UserOperation hash=0x{op_hash.hex()} backend={self.backend_name}")
        return bytes(signature)

    async def sign_operation(self, user_op: UserOperation, chain_id: int, entry_point: str) -> UserOperation:
        """Return a signed copy; ``user_op`` is left untouched."""
        signature = await self.sign(user_op, chain_id, entry_point)
        return user_op.with_signature(signature)
