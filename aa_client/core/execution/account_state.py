"""
Account state reads.

The nonce is read from the EntryPoint on every call and never cached, so
concurrent operations for the same sender always draft against the chain's
current value.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from eth_utils import to_checksum_address

from aa_client.core.recovery.errors import UnknownAccountState

from .userop import AccountState
from .userop_builder import build_entrypoint_get_nonce_call, build_factory_get_address_call

if TYPE_CHECKING:
    from aa_client.providers.node import NodeProvider

logger = logging.getLogger(__name__)


class AccountStateReader:
    def __init__(self, node: "NodeProvider", entry_point: str) -> None:
        self.node = node
        self.entry_point = entry_point

    async def get_nonce(self, sender: str, key: int = 0) -> int:
        """EntryPoint.getNonce(sender, key)."""
        raw = await self.node.call(self.entry_point, build_entrypoint_get_nonce_call(sender, key))
        nonce = int.from_bytes(raw[:32], "big") if raw else 0
        logger.info(f"Current nonce for {sender}: {nonce}")
        return nonce

    async def is_deployed(self, address: str) -> bool:
        return bool(await self.node.get_code(address))

    async def counterfactual_address(self, factory_address: str, owner: str, salt: int = 0) -> str:
        """SimpleAccountFactory.getAddress(owner, salt)."""
        raw = await self.node.call(factory_address, build_factory_get_address_call(owner, salt))
        if len(raw) < 32:
            raise UnknownAccountState(f"Factory {factory_address} returned no address for owner {owner}")
        return to_checksum_address(raw[12:32])

    async def read(
        self,
        sender: Optional[str] = None,
        factory_address: Optional[str] = None,
        owner: Optional[str] = None,
        salt: int = 0,
        nonce_key: int = 0,
    ) -> AccountState:
        """
        Resolve sender, deployment status and a fresh nonce.

        ``sender`` wins when given; otherwise it is derived from the factory
        and owner.
        """
        if not sender:
            if not (factory_address and owner):
                raise UnknownAccountState("Need a sender address or a factory and owner to derive it")
            sender = await self.counterfactual_address(factory_address, owner, salt)

        deployed = await self.is_deployed(sender)
        nonce = await self.get_nonce(sender, nonce_key)
        return AccountState(
            sender=sender,
            nonce=nonce,
            deployed=deployed,
            factory_address=factory_address,
            owner=owner,
            salt=salt,
        )
