"""
UserOperation calldata builders.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple, Union

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import is_hex, is_hex_address, keccak

from aa_client.config import settings
from aa_client.core.recovery.errors import InvalidCallTarget, UnknownAccountState

from .userop import UNESTIMATED, AccountState, Call, FeeHint, UserOperation, to_bytes

logger = logging.getLogger(__name__)

MAX_UINT256 = 2**256 - 1
ZERO_ADDRESS = "0x" + "00" * 20


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def _encode_uint(value: int) -> str:
    if value < 0:
        raise ValueError("Value must be non-negative")
    if value > MAX_UINT256:
        raise ValueError("Value does not fit in uint256")
    return hex(value)[2:].rjust(64, "0")


def _encode_address(address: str) -> str:
    addr = _strip_0x(address).lower()
    if len(addr) != 40 or not is_hex("0x" + addr):
        raise ValueError(f"Invalid address: {address}")
    return addr.rjust(64, "0")


def _encode_bytes(data: str) -> str:
    hex_data = _strip_0x(data)
    if len(hex_data) % 2 != 0:
        raise ValueError("Byte data must have an even-length hex string")
    if hex_data and not is_hex("0x" + hex_data):
        raise ValueError(f"Invalid hex data: {data}")
    data_len = len(hex_data) // 2
    padded_len = ((data_len + 31) // 32) * 32
    padding = "0" * ((padded_len - data_len) * 2)
    return _encode_uint(data_len) + hex_data.lower() + padding


def _selector_from_signature(signature: str) -> str:
    selector = keccak(text=signature)[:4].hex()
    return f"0x{selector}"


def get_execute_selector(
    signature: Optional[str] = None,
    selector_override: Optional[str] = None,
) -> str:
    selector_override = selector_override or settings.execute_selector_override()
    if selector_override:
        if not selector_override.startswith("0x") or len(selector_override) != 10:
            raise ValueError("Execute selector override must be 4 bytes (0x........)")
        return selector_override.lower()

    signature = signature or settings.account_execute_signature
    return _selector_from_signature(signature)


def build_execute_call_data(
    to_address: str,
    value_wei: int,
    data: str,
    *,
    signature: Optional[str] = None,
    selector_override: Optional[str] = None,
) -> str:
    """
    Build calldata for execute(address,uint256,bytes).
    """
    selector = get_execute_selector(signature, selector_override)
    head = (
        _encode_address(to_address)
        + _encode_uint(value_wei)
        + _encode_uint(96)  # offset to bytes data
    )
    tail = _encode_bytes(data)
    return selector + head + tail


def decode_execute_call_data(call_data: Union[str, bytes]) -> Tuple[str, int, bytes]:
    """
    Decode execute(address,uint256,bytes) calldata into (to, value, data).

    The selector is not checked; any 4-byte prefix is accepted.
    """
    body = to_bytes(call_data)[4:]
    try:
        to_address, value, data = abi_decode(["address", "uint256", "bytes"], body)
    except DecodingError as exc:
        raise ValueError(f"Malformed execute call data: {exc}") from exc
    return to_address.lower(), value, data


def build_entrypoint_get_nonce_call(sender: str, key: int = 0) -> str:
    """
    Build calldata for EntryPoint.getNonce(address,uint192).
    """
    selector = _selector_from_signature("getNonce(address,uint192)")
    head = _encode_address(sender) + _encode_uint(key)
    return selector + head


def build_factory_create_account_call(owner: str, salt: int = 0) -> str:
    """
    Build calldata for SimpleAccountFactory.createAccount(address,uint256).
    """
    selector = _selector_from_signature("createAccount(address,uint256)")
    return selector + _encode_address(owner) + _encode_uint(salt)


def build_factory_get_address_call(owner: str, salt: int = 0) -> str:
    """
    Build calldata for SimpleAccountFactory.getAddress(address,uint256).
    """
    selector = _selector_from_signature("getAddress(address,uint256)")
    return selector + _encode_address(owner) + _encode_uint(salt)


def build_init_code(factory_address: str, owner: str, salt: int = 0) -> bytes:
    """initCode = factory address followed by the createAccount call."""
    factory = _encode_address(factory_address)[24:]
    return bytes.fromhex(factory + _strip_0x(build_factory_create_account_call(owner, salt)))


class UserOperationBuilder:
    """
    Assembles unsigned UserOperations with unestimated gas fields.
    """

    def __init__(
        self,
        execute_signature: Optional[str] = None,
        selector_override: Optional[str] = None,
    ) -> None:
        self.execute_signature = execute_signature
        self.selector_override = selector_override

    def encode_call(self, call: Call) -> bytes:
        data = call.data
        if isinstance(data, (bytes, bytearray)):
            data = "0x" + bytes(data).hex()
        try:
            call_data = build_execute_call_data(
                call.to,
                call.value,
                data or "0x",
                signature=self.execute_signature,
                selector_override=self.selector_override,
            )
        except (ValueError, TypeError, AttributeError) as exc:
            raise InvalidCallTarget(f"Cannot encode call to {call.to!r}: {exc}", target=str(call.to)) from exc
        return to_bytes(call_data)

    def resolve_init_code(self, account_state: AccountState) -> bytes:
        if account_state.deployed:
            return b""
        if account_state.init_code:
            return bytes(account_state.init_code)
        if account_state.factory_address and account_state.owner:
            try:
                return build_init_code(
                    account_state.factory_address,
                    account_state.owner,
                    account_state.salt,
                )
            except ValueError as exc:
                raise UnknownAccountState(f"Invalid factory or owner: {exc}") from exc
        raise UnknownAccountState(
            "Account is not deployed and neither initCode nor factory + owner is available"
        )

    def draft(
        self,
        call: Call,
        account_state: AccountState,
        fee_hint: FeeHint,
        paymaster_and_data: bytes = b"",
    ) -> UserOperation:
        """
        Draft an unsigned UserOperation with all gas limits unestimated.
        """
        if not account_state.sender:
            raise UnknownAccountState(
                "No sender address: resolve the account address from its factory and owner first"
            )
        if not is_hex_address(account_state.sender):
            raise UnknownAccountState(f"Invalid sender address: {account_state.sender!r}")
        if account_state.nonce < 0:
            raise UnknownAccountState(f"Invalid nonce: {account_state.nonce}")

        call_data = self.encode_call(call)
        init_code = self.resolve_init_code(account_state)

        user_op = UserOperation(
            sender=account_state.sender,
            nonce=account_state.nonce,
            init_code=init_code,
            call_data=call_data,
            call_gas_limit=UNESTIMATED,
            verification_gas_limit=UNESTIMATED,
            pre_verification_gas=UNESTIMATED,
            max_fee_per_gas=fee_hint.max_fee_per_gas,
            max_priority_fee_per_gas=fee_hint.max_priority_fee_per_gas,
            paymaster_and_data=paymaster_and_data,
            signature=b"",
        )
        logger.debug(
            f"Drafted UserOperation sender={user_op.sender} nonce={user_op.nonce} "
            f"deploying={bool(init_code)} to={call.to} value={call.value}"
        )
        return user_op
