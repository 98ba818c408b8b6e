"""
ERC-4337 UserOperation execution helpers.

Wires settings, providers and the lifecycle together for the common case:
send one call from a SimpleAccount and wait for the outcome.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from aa_client.config import Settings, settings as default_settings
from aa_client.core.recovery.strategies import RetryConfig, RetryStrategy
from aa_client.providers.bundler import BundlerProvider, get_bundler_provider
from aa_client.providers.node import NodeProvider, get_node_provider

from .account_state import AccountStateReader
from .fees import NodeFeeOracle
from .gas_policy import GasPolicy, OverheadConfig
from .lifecycle import TransitionCallback, UserOperationLifecycle
from .models import LifecycleResult, LifecycleTimeouts
from .signer import SigningBackend, UserOpSigner
from .userop import Call, FeeHint
from .userop_builder import UserOperationBuilder

logger = logging.getLogger(__name__)


class UserOpExecutionError(Exception):
    """UserOperation execution error."""
    pass


class UserOpExecutor:
    """
    Executes ERC-4337 UserOperations via a bundler.

    Account state and fees are read fresh for every send; nothing carries
    over between operations.
    """

    def __init__(
        self,
        bundler: Optional[BundlerProvider] = None,
        node: Optional[NodeProvider] = None,
        settings: Optional[Settings] = None,
        gas_policy: Optional[GasPolicy] = None,
        builder: Optional[UserOperationBuilder] = None,
        retry: Optional[RetryStrategy] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.bundler = bundler or get_bundler_provider()
        self.node = node or get_node_provider()
        self.entry_point = self.bundler.entry_point or self.settings.entry_point_address
        self.gas_policy = gas_policy or GasPolicy(OverheadConfig.from_settings(self.settings))
        self.builder = builder or UserOperationBuilder(
            execute_signature=self.settings.account_execute_signature,
            selector_override=self.settings.execute_selector_override(),
        )
        self.account_reader = AccountStateReader(self.node, self.entry_point)
        self.fee_oracle = NodeFeeOracle(self.node, self.settings.min_priority_fee_wei)
        self.timeouts = LifecycleTimeouts.from_settings(self.settings)
        self.retry = retry or RetryStrategy(
            RetryConfig(
                max_attempts=self.settings.submit_max_attempts,
                initial_delay_seconds=self.settings.retry_initial_delay_seconds,
                max_delay_seconds=self.settings.retry_max_delay_seconds,
                exponential_base=self.settings.retry_exponential_base,
            )
        )

    async def send(
        self,
        call: Call,
        signing_backend: SigningBackend,
        sender: Optional[str] = None,
        factory_address: Optional[str] = None,
        owner: Optional[str] = None,
        salt: int = 0,
        fee_hint: Optional[FeeHint] = None,
        paymaster_and_data: bytes = b"",
        chain_id: Optional[int] = None,
        stop: Optional[asyncio.Event] = None,
        on_transition: Optional[TransitionCallback] = None,
    ) -> LifecycleResult:
        """
        Draft, estimate, sign, submit and await ``call``.

        Without ``sender`` the account address is derived from the factory
        (defaulting to the configured one) and ``owner``.
        """
        if not self.entry_point:
            raise UserOpExecutionError("EntryPoint address is required to send user operation")

        factory = factory_address or self.settings.account_factory_address or None
        account_state = await self.account_reader.read(
            sender=sender,
            factory_address=factory,
            owner=owner,
            salt=salt,
        )
        fees = fee_hint or await self.fee_oracle.fee_hint()

        lifecycle = UserOperationLifecycle.from_call(
            self.builder,
            call,
            account_state,
            fees,
            bundler=self.bundler,
            signer=UserOpSigner(signing_backend),
            chain_id=chain_id or self.settings.chain_id,
            paymaster_and_data=paymaster_and_data,
            entry_point=self.entry_point,
            gas_policy=self.gas_policy,
            retry=self.retry,
            timeouts=self.timeouts,
            on_transition=on_transition,
        )
        result = await lifecycle.run(stop=stop)
        logger.info(
            f"UserOperation for {account_state.sender} finished: {result.state.value}"
            f"{f' hash={result.operation_hash}' if result.operation_hash else ''}"
        )
        return result

    async def close(self) -> None:
        await self.bundler.close()
        await self.node.close()
