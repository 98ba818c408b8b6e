"""
Node JSON-RPC provider: the account, nonce and fee reads the client needs.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from .base import JsonRpcProvider
from ..config import settings
from ..core.execution.userop import parse_quantity, to_bytes


class NodeProvider(JsonRpcProvider):
    name = "node"
    timeout_s = 30

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(
            rpc_url if rpc_url is not None else settings.node_rpc_url,
            timeout_s=timeout_s if timeout_s is not None else settings.request_timeout_seconds,
            client=client,
        )

    async def chain_id(self) -> int:
        return parse_quantity(await self._rpc_call("eth_chainId", [])) or 0

    async def call(self, to: str, data: str, block: str = "latest") -> bytes:
        result = await self._rpc_call("eth_call", [{"to": to, "data": data}, block])
        return to_bytes(result)

    async def get_code(self, address: str, block: str = "latest") -> bytes:
        return to_bytes(await self._rpc_call("eth_getCode", [address, block]))

    async def max_priority_fee_per_gas(self) -> int:
        return parse_quantity(await self._rpc_call("eth_maxPriorityFeePerGas", [])) or 0

    async def get_block(self, block: str = "latest") -> Dict[str, Any]:
        return await self._rpc_call("eth_getBlockByNumber", [block, False]) or {}

    async def base_fee_per_gas(self) -> int:
        block = await self.get_block("latest")
        return parse_quantity(block.get("baseFeePerGas")) or 0


_node_provider: Optional[NodeProvider] = None


def get_node_provider() -> NodeProvider:
    global _node_provider
    if _node_provider is None:
        _node_provider = NodeProvider()
    return _node_provider
