from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]

ENTRYPOINT_V06 = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="auto",
        pattern="(?i)^(auto|json|console)$",
        description="Log renderer: json, console, or auto (console at DEBUG)",
    )

    # Endpoints
    bundler_url: str = Field(
        default="",
        description="Bundler JSON-RPC endpoint",
        validation_alias=AliasChoices("bundler_url", "erc4337_bundler_url"),
    )
    node_rpc_url: str = Field(
        default="",
        description="Node JSON-RPC endpoint used for nonce, code and fee reads",
        validation_alias=AliasChoices("node_rpc_url", "rpc_url"),
    )
    chain_id: int = Field(default=11155111, ge=1, description="Target chain id")
    request_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request HTTP timeout")

    # Account abstraction
    entry_point_address: str = Field(default=ENTRYPOINT_V06, description="EntryPoint v0.6 address")
    account_factory_address: str = Field(default="", description="SimpleAccountFactory address")
    account_execute_signature: str = Field(
        default="execute(address,uint256,bytes)",
        description="Account execute function signature",
    )
    account_execute_selector: str = Field(
        default="",
        description="Optional 4-byte override for the execute selector",
    )
    dummy_signature_size: int = Field(default=65, ge=1, description="Placeholder signature length in bytes")

    # Gas overheads added on top of bundler estimates
    gas_overhead_fixed: int = Field(default=21000, ge=0)
    gas_overhead_per_user_op: int = Field(default=18300, ge=0)
    gas_overhead_per_user_op_word: int = Field(default=4, ge=0)
    gas_overhead_zero_byte: int = Field(default=4, ge=0)
    gas_overhead_non_zero_byte: int = Field(default=16, ge=0)
    gas_overhead_bundle_size: int = Field(default=1, ge=1)
    gas_overhead_sig_size: int = Field(default=65, ge=0)
    gas_overhead_verification: int = Field(default=0, ge=0)
    gas_overhead_call: int = Field(default=0, ge=0)
    gas_overhead_verification_percent: int = Field(default=0, ge=0)
    gas_overhead_call_percent: int = Field(default=0, ge=0)
    gas_overhead_pre_verification_percent: int = Field(default=0, ge=0)

    # Fees
    min_priority_fee_wei: int = Field(default=500_000_000, ge=0, description="Floor for maxPriorityFeePerGas")

    # Retry policy for transient transport failures
    submit_max_attempts: int = Field(default=4, ge=1)
    retry_initial_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)
    retry_exponential_base: float = Field(default=2.0, ge=1)

    # Stage timeouts
    estimate_timeout_seconds: float = Field(default=60.0, gt=0)
    submit_timeout_seconds: float = Field(default=120.0, gt=0)
    receipt_poll_interval_seconds: float = Field(default=2.0, gt=0)
    receipt_timeout_seconds: float = Field(default=180.0, gt=0)

    # Bundler vendor error-code overrides, e.g. {"-32000": "simulation"}
    bundler_error_overrides: Dict[str, str] = Field(default_factory=dict)

    deployment_cache_path: Path = Field(
        default=BASE_DIR / ".deployment-cache.json",
        description="JSON file holding the account owner key and deployed addresses",
    )

    @property
    def has_bundler(self) -> bool:
        return bool(self.bundler_url)

    def overhead_values(self) -> Dict[str, Any]:
        """Gas overhead settings keyed by OverheadConfig field name."""
        return {
            "fixed_overhead": self.gas_overhead_fixed,
            "per_operation_overhead": self.gas_overhead_per_user_op,
            "per_word_overhead": self.gas_overhead_per_user_op_word,
            "zero_byte_gas_cost": self.gas_overhead_zero_byte,
            "non_zero_byte_gas_cost": self.gas_overhead_non_zero_byte,
            "bundle_size": self.gas_overhead_bundle_size,
            "signature_size": self.gas_overhead_sig_size,
            "verification_gas_overhead": self.gas_overhead_verification,
            "call_gas_overhead": self.gas_overhead_call,
            "verification_gas_percent": self.gas_overhead_verification_percent,
            "call_gas_percent": self.gas_overhead_call_percent,
            "pre_verification_gas_percent": self.gas_overhead_pre_verification_percent,
        }

    def execute_selector_override(self) -> Optional[str]:
        return self.account_execute_selector or None


# Global settings instance
settings = Settings()
