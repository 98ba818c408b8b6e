"""
Fee hints from the node's fee market.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .userop import FeeHint

if TYPE_CHECKING:
    from aa_client.providers.node import NodeProvider

logger = logging.getLogger(__name__)


class NodeFeeOracle:
    """
    maxPriorityFeePerGas = max(node tip, floor); maxFeePerGas = 2 * baseFee + tip.
    """

    def __init__(self, node: "NodeProvider", min_priority_fee_wei: int = 0) -> None:
        self.node = node
        self.min_priority_fee_wei = min_priority_fee_wei

    async def fee_hint(self) -> FeeHint:
        tip = max(await self.node.max_priority_fee_per_gas(), self.min_priority_fee_wei)
        base_fee = await self.node.base_fee_per_gas()
        hint = FeeHint(max_fee_per_gas=2 * base_fee + tip, max_priority_fee_per_gas=tip)
        logger.info(f"Fee hint base_fee={base_fee} max_fee={hint.max_fee_per_gas} tip={tip}")
        return hint
