"""
UserOperation Execution Layer

Building, gas adjustment, signing and the submission lifecycle for ERC-4337
(EntryPoint v0.6) UserOperations.

Usage:
    from aa_client.core.execution import (
        UserOperationBuilder,
        GasPolicy,
        UserOpSigner,
        UserOperationLifecycle,
    )

    draft = UserOperationBuilder().draft(call, account_state, fee_hint)
    lifecycle = UserOperationLifecycle(draft, bundler, signer, chain_id)
    result = await lifecycle.run()

The settings-driven facade lives in ``aa_client.core.execution.erc4337_executor``.
"""

from .userop import (
    UNESTIMATED,
    AccountState,
    Call,
    FeeHint,
    GasEstimate,
    Receipt,
    UserOperation,
    UserOpGasEstimate,
    UserOpReceipt,
)

from .userop_builder import (
    UserOperationBuilder,
    build_execute_call_data,
    build_init_code,
    decode_execute_call_data,
)

from .gas_policy import (
    GasPolicy,
    OverheadConfig,
    adjust,
)

from .signer import (
    LocalKeyBackend,
    RemoteSigningBackend,
    SigningBackend,
    UserOpSigner,
    user_operation_hash,
)

from .models import (
    InvalidTransitionError,
    LifecycleResult,
    LifecycleState,
    LifecycleTimeouts,
    StateTransition,
)

from .lifecycle import UserOperationLifecycle

__all__ = [
    # Models
    "UNESTIMATED",
    "AccountState",
    "Call",
    "FeeHint",
    "GasEstimate",
    "Receipt",
    "UserOperation",
    "UserOpGasEstimate",
    "UserOpReceipt",
    # Builder
    "UserOperationBuilder",
    "build_execute_call_data",
    "build_init_code",
    "decode_execute_call_data",
    # Gas
    "GasPolicy",
    "OverheadConfig",
    "adjust",
    # Signing
    "LocalKeyBackend",
    "RemoteSigningBackend",
    "SigningBackend",
    "UserOpSigner",
    "user_operation_hash",
    # Lifecycle
    "InvalidTransitionError",
    "LifecycleResult",
    "LifecycleState",
    "LifecycleTimeouts",
    "StateTransition",
    "UserOperationLifecycle",
]
