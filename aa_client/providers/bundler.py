"""
ERC-4337 Bundler Provider.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from .base import JsonRpcError, JsonRpcProvider
from ..config import settings
from ..core.execution.userop import UserOperation, UserOpGasEstimate, UserOpReceipt
from ..core.recovery.errors import (
    ReceiptTimeout,
    RejectedByBundler,
    SimulationReverted,
    TransportError,
)

logger = logging.getLogger(__name__)

# Fixed-pattern placeholder (r, s, v) used while estimating. Its length
# drives calldata-dependent gas.
DUMMY_SIGNATURE_PATTERN = bytes.fromhex(
    "fffffffffffffffffffffffffffffff0000000000000000000000000000000007"
    "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1c"
)

_AA_CODE = re.compile(r"\bAA\d\d\b")


def dummy_signature(size: int = 65) -> bytes:
    repeats = size // len(DUMMY_SIGNATURE_PATTERN) + 1
    return (DUMMY_SIGNATURE_PATTERN * repeats)[:size]


class BundlerErrorNormalizer:
    """
    Translates bundler JSON-RPC errors into the client's error taxonomy.

    Codes follow ERC-4337's RPC error table; ``overrides`` maps vendor
    specific codes to ``"simulation"``, ``"rejected"`` or ``"transport"``.
    """

    SIMULATION_CODES = {-32500, -32501, -32507, -32521}
    REJECTION_CODES = {-32502, -32503, -32504, -32505, -32506, -32601, -32602}
    TRANSPORT_CODES = {-32603}
    REVERT_MARKERS = ("execution reverted", "reverted", "out of gas")

    def __init__(self, overrides: Optional[Dict[int, str]] = None) -> None:
        self.overrides = dict(overrides or {})

    @classmethod
    def from_settings(cls, values: Dict[str, str]) -> "BundlerErrorNormalizer":
        return cls({int(code): kind for code, kind in values.items()})

    def classify(self, error: JsonRpcError) -> str:
        if error.code in self.overrides:
            return self.overrides[error.code]
        if error.status_code == 429:
            return "rejected"
        if error.code in self.SIMULATION_CODES:
            return "simulation"
        message = (error.message or "").lower()
        if _AA_CODE.search(error.message or "") or any(m in message for m in self.REVERT_MARKERS):
            return "simulation"
        if error.code in self.REJECTION_CODES:
            return "rejected"
        if error.code in self.TRANSPORT_CODES:
            return "transport"
        return "rejected"

    def normalize(self, error: JsonRpcError, provider: str = "bundler") -> Exception:
        kind = self.classify(error)
        if kind == "simulation":
            return SimulationReverted(_revert_reason(error), code=error.code, data=error.data)
        if kind == "transport":
            return TransportError(
                f"Bundler internal error ({error.code}): {error.message}",
                provider=provider,
                status_code=error.status_code,
            )
        return RejectedByBundler(error.code, error.message, data=error.data)


def _revert_reason(error: JsonRpcError) -> str:
    data = error.data
    if isinstance(data, dict):
        reason = data.get("reason") or data.get("message")
        if reason:
            return str(reason)
    return error.message


@dataclass
class BundlerConfig:
    rpc_url: str
    entry_point: str
    timeout_s: float = 30
    dummy_signature_size: int = 65
    error_overrides: Dict[int, str] = field(default_factory=dict)


class BundlerProvider(JsonRpcProvider):
    name = "bundler"
    timeout_s = 30

    def __init__(
        self,
        config: Optional[BundlerConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        normalizer: Optional[BundlerErrorNormalizer] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or BundlerConfig(
            rpc_url=settings.bundler_url,
            entry_point=settings.entry_point_address,
            timeout_s=settings.request_timeout_seconds,
            dummy_signature_size=settings.dummy_signature_size,
            error_overrides={int(k): v for k, v in settings.bundler_error_overrides.items()},
        )
        super().__init__(self._config.rpc_url, timeout_s=self._config.timeout_s, client=client)
        self.normalizer = normalizer or BundlerErrorNormalizer(self._config.error_overrides)
        self._clock = clock

    @property
    def entry_point(self) -> str:
        return self._config.entry_point

    async def supported_entry_points(self) -> List[str]:
        result = await self._bundler_call("eth_supportedEntryPoints", [])
        return list(result or [])

    async def chain_id(self) -> int:
        result = await self._bundler_call("eth_chainId", [])
        return int(result, 16)

    async def estimate_user_operation_gas(self, user_op: UserOperation) -> UserOpGasEstimate:
        """
        Estimate gas for an unsigned draft.

        The signature is replaced by a fixed-pattern placeholder of the
        configured length so calldata-size dependent costs come out right.
        """
        payload = user_op.to_rpc_dict()
        payload["signature"] = "0x" + dummy_signature(self._config.dummy_signature_size).hex()

        result = await self._bundler_call(
            "eth_estimateUserOperationGas",
            [payload, self.entry_point],
        )
        if not isinstance(result, dict):
            raise TransportError("Invalid bundler response for eth_estimateUserOperationGas", provider=self.name)
        try:
            estimate = UserOpGasEstimate.from_rpc(result)
        except (ValueError, TypeError, KeyError) as exc:
            raise TransportError(f"Malformed gas estimate from bundler: {exc}", provider=self.name) from exc
        logger.info(
            f"Bundler estimate sender={user_op.sender} pvg={estimate.pre_verification_gas} "
            f"vgl={estimate.verification_gas_limit} cgl={estimate.call_gas_limit}"
        )
        return estimate

    async def send_user_operation(self, user_op: UserOperation) -> str:
        result = await self._bundler_call(
            "eth_sendUserOperation",
            [user_op.to_rpc_dict(), self.entry_point],
        )
        if not isinstance(result, str):
            raise TransportError("Invalid bundler response for eth_sendUserOperation", provider=self.name)
        logger.info(f"UserOperation sent: {result}")
        return result

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[UserOpReceipt]:
        result = await self._bundler_call(
            "eth_getUserOperationReceipt",
            [user_op_hash],
        )
        if not result:
            return None
        if not isinstance(result, dict):
            raise TransportError("Invalid bundler response for eth_getUserOperationReceipt", provider=self.name)
        try:
            return UserOpReceipt.from_rpc(user_op_hash, result)
        except (ValueError, TypeError, KeyError) as exc:
            raise TransportError(f"Malformed UserOperation receipt from bundler: {exc}", provider=self.name) from exc

    async def poll_receipt(
        self,
        user_op_hash: str,
        poll_interval: float,
        timeout: float,
        stop: Optional[asyncio.Event] = None,
    ) -> UserOpReceipt:
        """
        Poll until a receipt is available, ``timeout`` elapses or ``stop`` is set.

        A poll is only issued if the wait before it still fits inside the
        deadline, so a timeout shorter than the interval polls exactly once.
        Each request is itself bounded by the deadline and abandoned as soon
        as ``stop`` is set.
        """
        started = self._clock()
        deadline = started + timeout

        while True:
            poll, stopped = await self._bounded_poll(user_op_hash, deadline - self._clock(), stop)
            if stopped:
                raise ReceiptTimeout(user_op_hash, self._clock() - started, cancelled=True)
            if poll is None:
                raise ReceiptTimeout(user_op_hash, self._clock() - started)

            try:
                receipt = poll.result()
            except TransportError as exc:
                logger.warning(f"Error checking UserOperation receipt {user_op_hash}: {exc}")
                receipt = None

            if receipt is not None:
                return receipt

            if self._clock() + poll_interval > deadline:
                raise ReceiptTimeout(user_op_hash, self._clock() - started)

            if stop is None:
                await asyncio.sleep(poll_interval)
                continue

            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
            raise ReceiptTimeout(user_op_hash, self._clock() - started, cancelled=True)

    async def _bounded_poll(
        self,
        user_op_hash: str,
        remaining: float,
        stop: Optional[asyncio.Event],
    ) -> Tuple[Optional[asyncio.Future], bool]:
        """
        Run one receipt request against the deadline and the stop event.

        Returns the finished request (None if the deadline passed first) and
        whether ``stop`` ended the wait. Unfinished work is cancelled.
        """
        poll = asyncio.ensure_future(self.get_user_operation_receipt(user_op_hash))
        waiters = {poll}
        if stop is not None:
            waiters.add(asyncio.ensure_future(stop.wait()))

        try:
            await asyncio.wait(waiters, timeout=max(remaining, 0.0), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if not poll.cancelled():
            return poll, False
        if stop is not None and stop.is_set():
            logger.info(f"Receipt request for {user_op_hash} abandoned on stop")
            return None, True
        logger.info(f"Receipt request for {user_op_hash} abandoned at deadline")
        return None, False

    async def _bundler_call(self, method: str, params: list[Any]) -> Any:
        if not await self.ready():
            raise TransportError("Bundler provider is not configured", provider=self.name)
        try:
            return await self._rpc_call(method, params)
        except JsonRpcError as exc:
            normalized = self.normalizer.normalize(exc, provider=self.name)
            logger.error(f"Bundler error on {method}: {normalized}")
            raise normalized from exc


_bundler_provider: Optional[BundlerProvider] = None


def get_bundler_provider() -> BundlerProvider:
    global _bundler_provider
    if _bundler_provider is None:
        _bundler_provider = BundlerProvider()
    return _bundler_provider
