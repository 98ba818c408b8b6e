"""
Gas Policy

Adds deterministic safety overhead to bundler gas estimates.

Bundler estimates are often too tight in practice: preVerificationGas
depends on the final calldata length, and the real signature is unknown at
estimation time. The overhead is purely additive, so an adjusted value is
never below the raw estimate.
"""

from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional

from .userop import UserOperation, UserOpGasEstimate


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def _percent_of(value: int, percent: int) -> int:
    return _ceil_div(value * percent, 100)


@dataclass(frozen=True)
class OverheadConfig:
    """
    Overhead configuration.

    The first seven fields match the account-abstraction SDK's preVerificationGas
    overheads; the rest are per-field absolute and percentage extras.
    """

    fixed_overhead: int = 21000
    per_operation_overhead: int = 18300
    per_word_overhead: int = 4
    zero_byte_gas_cost: int = 4
    non_zero_byte_gas_cost: int = 16
    bundle_size: int = 1
    signature_size: int = 65

    verification_gas_overhead: int = 0
    call_gas_overhead: int = 0
    verification_gas_percent: int = 0
    call_gas_percent: int = 0
    pre_verification_gas_percent: int = 0

    def __post_init__(self) -> None:
        for name, value in asdict(self).items():
            if value < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.bundle_size < 1:
            raise ValueError("bundle_size must be at least 1")

    @classmethod
    def zero(cls) -> "OverheadConfig":
        """A config that leaves estimates unchanged."""
        return cls(
            fixed_overhead=0,
            per_operation_overhead=0,
            per_word_overhead=0,
            zero_byte_gas_cost=0,
            non_zero_byte_gas_cost=0,
        )

    @classmethod
    def from_values(cls, values: Dict[str, Any]) -> "OverheadConfig":
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: int(v) for k, v in values.items() if k in known})

    @classmethod
    def from_settings(cls, settings) -> "OverheadConfig":
        return cls.from_values(settings.overhead_values())


def calldata_gas_cost(data: bytes, config: OverheadConfig) -> int:
    zero_bytes = data.count(0)
    return (
        config.zero_byte_gas_cost * zero_bytes
        + config.non_zero_byte_gas_cost * (len(data) - zero_bytes)
    )


def packed_for_overhead(user_op: UserOperation, config: OverheadConfig) -> bytes:
    """
    Encode the operation with a ``signature_size`` signature of non-zero bytes.

    Mirrors what the bundler will put on-chain once the real signature is
    attached.
    """
    placeholder = b"\x01" * config.signature_size
    return replace(user_op, signature=placeholder).encode()


def pre_verification_overhead(config: OverheadConfig, user_op: Optional[UserOperation] = None) -> int:
    packed = packed_for_overhead(user_op, config) if user_op is not None else b""
    words = _ceil_div(len(packed), 32)
    return (
        _ceil_div(config.fixed_overhead, config.bundle_size)
        + config.per_operation_overhead
        + config.per_word_overhead * words
        + calldata_gas_cost(packed, config)
    )


def adjust(
    estimate: UserOpGasEstimate,
    config: OverheadConfig,
    user_op: Optional[UserOperation] = None,
) -> UserOpGasEstimate:
    """
    Return ``estimate`` with overhead applied to each gas field.

    Always apply to the raw bundler estimate: feeding an adjusted estimate
    back in adds the overhead a second time.
    """
    pvg = estimate.pre_verification_gas
    vgl = estimate.verification_gas_limit
    cgl = estimate.call_gas_limit

    return UserOpGasEstimate(
        pre_verification_gas=(
            pvg
            + pre_verification_overhead(config, user_op)
            + _percent_of(pvg, config.pre_verification_gas_percent)
        ),
        verification_gas_limit=(
            vgl
            + config.verification_gas_overhead
            + _percent_of(vgl, config.verification_gas_percent)
        ),
        call_gas_limit=(
            cgl
            + config.call_gas_overhead
            + _percent_of(cgl, config.call_gas_percent)
        ),
    )


class GasPolicy:
    """Holds an overhead config and applies it to raw estimates."""

    def __init__(self, config: Optional[OverheadConfig] = None):
        self.config = config or OverheadConfig()

    def adjust(
        self,
        estimate: UserOpGasEstimate,
        user_op: Optional[UserOperation] = None,
    ) -> UserOpGasEstimate:
        return adjust(estimate, self.config, user_op)
