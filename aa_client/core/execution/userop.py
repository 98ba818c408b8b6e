"""
ERC-4337 UserOperation models and helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Optional, Union

from eth_abi import encode as abi_encode
from eth_utils import is_hex, keccak, to_checksum_address

# Gas limits of a freshly drafted operation; estimation must replace them.
UNESTIMATED = 0

GAS_LIMIT_FIELDS = ("call_gas_limit", "verification_gas_limit", "pre_verification_gas")

HexLike = Union[int, str, bytes, None]


def to_hex_quantity(value: int) -> str:
    if value < 0:
        raise ValueError(f"Quantity must be non-negative: {value}")
    return hex(value)


def to_hex_data(value: Union[bytes, str, None]) -> str:
    """Canonical lowercase 0x-prefixed hex for byte fields."""
    if value is None:
        return "0x"
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = value.lower()
    if not text.startswith("0x"):
        text = "0x" + text
    return text


def to_bytes(value: Union[bytes, str, None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value[2:] if value.startswith(("0x", "0X")) else value
    if text and not is_hex("0x" + text):
        raise ValueError(f"Invalid hex data: {value}")
    if len(text) % 2:
        text = "0" + text
    return bytes.fromhex(text)


def parse_quantity(value: HexLike) -> Optional[int]:
    """Parse an RPC quantity that may arrive as an int, hex string or decimal string."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, bytes):
        return int.from_bytes(value, "big")
    text = str(value).strip()
    if text.lower().startswith("0x"):
        return int(text, 16) if len(text) > 2 else 0
    return int(text)


@dataclass(frozen=True)
class UserOperation:
    """
    ERC-4337 (EntryPoint v0.6) UserOperation payload.

    Values are held in raw units (wei / gas units) and bytes; they are
    encoded as lowercase hex strings for RPC calls.
    """
    sender: str
    nonce: int
    init_code: bytes
    call_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    def __post_init__(self) -> None:
        for name in ("nonce", "max_fee_per_gas", "max_priority_fee_per_gas", *GAS_LIMIT_FIELDS):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")

    @property
    def unestimated_fields(self) -> List[str]:
        return [name for name in GAS_LIMIT_FIELDS if getattr(self, name) == UNESTIMATED]

    @property
    def is_signed(self) -> bool:
        return bool(self.signature)

    def with_gas(self, estimate: "GasEstimate") -> "UserOperation":
        return replace(
            self,
            call_gas_limit=estimate.call_gas_limit,
            verification_gas_limit=estimate.verification_gas_limit,
            pre_verification_gas=estimate.pre_verification_gas,
        )

    def with_signature(self, signature: bytes) -> "UserOperation":
        return replace(self, signature=signature)

    def encode(self, with_signature: bool = True) -> bytes:
        """ABI-encode the operation as it travels inside handleOps calldata."""
        types = [
            "address",  # sender
            "uint256",  # nonce
            "bytes",  # init_code
            "bytes",  # call_data
            "uint256",  # call_gas_limit
            "uint256",  # verification_gas_limit
            "uint256",  # pre_verification_gas
            "uint256",  # max_fee_per_gas
            "uint256",  # max_priority_fee_per_gas
            "bytes",  # paymaster_and_data
        ]
        values = [
            to_checksum_address(self.sender),
            self.nonce,
            self.init_code,
            self.call_data,
            self.call_gas_limit,
            self.verification_gas_limit,
            self.pre_verification_gas,
            self.max_fee_per_gas,
            self.max_priority_fee_per_gas,
            self.paymaster_and_data,
        ]

        if with_signature:
            types.append("bytes")
            values.append(self.signature)

        return abi_encode(types, values)

    def pack_for_signature(self) -> bytes:
        """EntryPoint v0.6 packing: dynamic fields are replaced by their keccak hashes."""
        return abi_encode(
            [
                "address",
                "uint256",
                "bytes32",
                "bytes32",
                "uint256",
                "uint256",
                "uint256",
                "uint256",
                "uint256",
                "bytes32",
            ],
            [
                to_checksum_address(self.sender),
                self.nonce,
                keccak(self.init_code),
                keccak(self.call_data),
                self.call_gas_limit,
                self.verification_gas_limit,
                self.pre_verification_gas,
                self.max_fee_per_gas,
                self.max_priority_fee_per_gas,
                keccak(self.paymaster_and_data),
            ],
        )

    def to_rpc_dict(self) -> Dict[str, Any]:
        return {
            "sender": self.sender.lower(),
            "nonce": to_hex_quantity(self.nonce),
            "initCode": to_hex_data(self.init_code),
            "callData": to_hex_data(self.call_data),
            "callGasLimit": to_hex_quantity(self.call_gas_limit),
            "verificationGasLimit": to_hex_quantity(self.verification_gas_limit),
            "preVerificationGas": to_hex_quantity(self.pre_verification_gas),
            "maxFeePerGas": to_hex_quantity(self.max_fee_per_gas),
            "maxPriorityFeePerGas": to_hex_quantity(self.max_priority_fee_per_gas),
            "paymasterAndData": to_hex_data(self.paymaster_and_data),
            "signature": to_hex_data(self.signature),
        }

    @classmethod
    def from_rpc_dict(cls, data: Dict[str, Any]) -> "UserOperation":
        return cls(
            sender=data["sender"],
            nonce=parse_quantity(data.get("nonce")) or 0,
            init_code=to_bytes(data.get("initCode")),
            call_data=to_bytes(data.get("callData")),
            call_gas_limit=parse_quantity(data.get("callGasLimit")) or 0,
            verification_gas_limit=parse_quantity(data.get("verificationGasLimit")) or 0,
            pre_verification_gas=parse_quantity(data.get("preVerificationGas")) or 0,
            max_fee_per_gas=parse_quantity(data.get("maxFeePerGas")) or 0,
            max_priority_fee_per_gas=parse_quantity(data.get("maxPriorityFeePerGas")) or 0,
            paymaster_and_data=to_bytes(data.get("paymasterAndData")),
            signature=to_bytes(data.get("signature")),
        )


@dataclass(frozen=True)
class UserOpGasEstimate:
    """Gas fields as returned by the bundler, or after overhead is applied."""
    pre_verification_gas: int
    verification_gas_limit: int
    call_gas_limit: int

    def __post_init__(self) -> None:
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValueError(f"{f.name} must be non-negative")

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "UserOpGasEstimate":
        verification = data.get("verificationGasLimit")
        if verification is None:
            verification = data.get("verificationGas")
        return cls(
            pre_verification_gas=parse_quantity(data.get("preVerificationGas")) or 0,
            verification_gas_limit=parse_quantity(verification) or 0,
            call_gas_limit=parse_quantity(data.get("callGasLimit")) or 0,
        )


GasEstimate = UserOpGasEstimate


@dataclass(frozen=True)
class UserOpReceipt:
    operation_hash: str
    success: bool
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    revert_reason: Optional[str] = None
    actual_gas_cost: Optional[int] = None
    actual_gas_used: Optional[int] = None

    @classmethod
    def from_rpc(cls, operation_hash: str, data: Dict[str, Any]) -> "UserOpReceipt":
        """
        Parse an ``eth_getUserOperationReceipt`` result.

        Bundlers nest the transaction receipt under ``receipt``; some also
        echo ``transactionHash``/``blockNumber`` at the top level.
        """
        tx_receipt = data.get("receipt") or {}

        success = data.get("success")
        if success is None:
            status = parse_quantity(tx_receipt.get("status"))
            success = status == 1
        elif isinstance(success, str):
            success = success.lower() in {"true", "0x1", "1"}

        block_number = data.get("blockNumber", tx_receipt.get("blockNumber"))
        reason = data.get("reason") or data.get("revertReason") or None

        return cls(
            operation_hash=operation_hash,
            success=bool(success),
            transaction_hash=data.get("transactionHash") or tx_receipt.get("transactionHash"),
            block_number=parse_quantity(block_number),
            revert_reason=None if success else reason,
            actual_gas_cost=parse_quantity(data.get("actualGasCost")),
            actual_gas_used=parse_quantity(data.get("actualGasUsed")),
        )


Receipt = UserOpReceipt


@dataclass(frozen=True)
class Call:
    """The account's intended call: target, value in wei, calldata."""
    to: str
    value: int = 0
    data: Union[bytes, str] = b""


@dataclass(frozen=True)
class FeeHint:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    def __post_init__(self) -> None:
        if self.max_fee_per_gas < 0 or self.max_priority_fee_per_gas < 0:
            raise ValueError("Fee values must be non-negative")
        if self.max_priority_fee_per_gas > self.max_fee_per_gas:
            raise ValueError("maxPriorityFeePerGas cannot exceed maxFeePerGas")


@dataclass(frozen=True)
class AccountState:
    """
    Account context needed to draft an operation.

    ``sender`` is the deployed or counterfactual account address. An
    undeployed account needs either an explicit ``init_code`` or a factory
    and owner to derive it.
    """
    sender: Optional[str]
    nonce: int
    deployed: bool
    factory_address: Optional[str] = None
    owner: Optional[str] = None
    salt: int = 0
    init_code: Optional[bytes] = None
