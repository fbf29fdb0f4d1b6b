from pathlib import Path
from typing import Any, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def model_post_init(self, __context: Any) -> None:
        """Mint wallet falls back to the payment wallet when not configured."""

        super().model_post_init(__context)

        if not self.mint_wallet_private_key and self.payment_wallet_private_key:
            object.__setattr__(self, "mint_wallet_private_key", self.payment_wallet_private_key)

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="json, or console for colored local output")
    queues_enabled: bool = Field(
        default=True,
        description="Start the payment and mint loops alongside FastAPI",
    )

    # Chain
    rpc_url: str = Field(
        default="https://mainnet.base.org",
        description="JSON-RPC endpoint",
        validation_alias=AliasChoices("rpc_url", "RPC_URL", "BASE_RPC_URL"),
    )
    chain_id: int = Field(default=8453, description="EIP-155 chain id")
    rpc_timeout_seconds: float = Field(default=30.0, description="HTTP timeout for RPC calls")
    receipt_poll_interval_seconds: float = Field(
        default=2.0,
        description="Delay between receipt polls while waiting for a confirmation",
    )

    # Signing wallets (one per role)
    payment_wallet_private_key: str = Field(
        default="",
        description="Key that submits transferWithAuthorization transactions",
        validation_alias=AliasChoices("payment_wallet_private_key", "SERVER_PRIVATE_KEY"),
    )
    mint_wallet_private_key: str = Field(
        default="",
        description="Key holding the minter role on token contracts",
        validation_alias=AliasChoices("mint_wallet_private_key", "MINTER_PRIVATE_KEY"),
    )
    allow_shared_wallet: bool = Field(
        default=False,
        description=(
            "Let both queues sign with one wallet. They then share a nonce counter, and a "
            "mint-side resync can hand out nonces the payment queue reserved but has not sent"
        ),
    )
    payment_recipient_address: str = Field(
        default="",
        description="Wallet that signed authorizations must pay",
    )

    # Persistence
    database_url: str = Field(
        default=f"sqlite+aiosqlite:///{BASE_DIR / 'tokenmint.db'}",
        description="SQLAlchemy async database URL",
    )
    sql_echo: bool = Field(default=False, description="Echo SQL statements")

    # Payment settlement queue
    payment_batch_interval_ms: int = Field(default=4000, ge=100, description="Submit loop interval")
    payment_batch_size: int = Field(default=10, ge=1, description="Payments broadcast per submit cycle")
    payment_confirm_interval_ms: int = Field(default=2000, ge=100, description="Confirmation loop interval")
    payment_confirmation_timeout_seconds: int = Field(
        default=300,
        description="Age after which a sent payment without a receipt is failed",
    )
    payment_confirmation_window_seconds: int = Field(
        default=3600,
        description="Only sent payments younger than this are polled for receipts",
    )
    payment_gas_limit: int = Field(default=150_000, description="Gas limit for transferWithAuthorization")
    payment_priority_fee_wei: int = Field(default=10_000_000, description="Base priority fee (0.01 gwei)")
    payment_priority_jitter_percent: int = Field(
        default=20,
        ge=0,
        le=100,
        description="Upper bound of the random priority fee jitter",
    )
    payment_base_fee_multiplier_percent: int = Field(default=120, description="Max fee = base fee x this / 100 + tip")

    # Mint batch queue
    mint_batch_interval_seconds: int = Field(default=10, ge=1, description="Batch loop interval")
    mint_max_batch_size: int = Field(default=50, ge=1, description="FIFO slice size per batch cycle")
    mint_batch_hard_limit: int = Field(
        default=200,
        ge=1,
        description="Ceiling on a batch after pulling in whole payer bursts",
    )
    mint_receipt_timeout_seconds: int = Field(default=120, description="Inline wait for a mint receipt")
    mint_priority_fee_wei: int = Field(default=1_000_000, description="Priority fee for mints (0.001 gwei)")
    mint_base_fee_multiplier_percent: int = Field(default=110, description="Max fee = base fee x this / 100 + tip")
    mint_single_gas_limit: int = Field(default=150_000, description="Gas limit for a single mint")
    mint_batch_base_gas: int = Field(default=100_000, description="Fixed gas for a batchMint call")
    mint_batch_per_recipient_gas: int = Field(default=50_000, description="Extra gas per batchMint recipient")

    # Shared
    default_base_fee_wei: int = Field(
        default=100_000_000,
        description="Base fee assumed when the latest block reports none (0.1 gwei)",
    )
    linked_mint_window_seconds: int = Field(
        default=120,
        description="Mint rows within this distance of a failed payment are cascade-failed",
    )
    status_cache_ttl_seconds: int = Field(default=3, description="TTL for pending mint status lookups")
    payment_token_decimals: int = Field(default=6, description="Decimals of the payment stablecoin")

    @property
    def has_payment_wallet(self) -> bool:
        return bool(self.payment_wallet_private_key)

    @property
    def has_mint_wallet(self) -> bool:
        return bool(self.mint_wallet_private_key)

    @property
    def shares_wallet(self) -> bool:
        """Both roles resolve to the same signing key."""
        def normalize(key: str) -> str:
            return key.lower().removeprefix("0x")

        return bool(self.payment_wallet_private_key) and (
            normalize(self.payment_wallet_private_key) == normalize(self.mint_wallet_private_key)
        )

    @property
    def payment_batch_interval_seconds(self) -> float:
        return self.payment_batch_interval_ms / 1000

    @property
    def payment_confirm_interval_seconds(self) -> float:
        return self.payment_confirm_interval_ms / 1000

    def resolve_recipient(self, fallback: Optional[str] = None) -> str:
        return self.payment_recipient_address or (fallback or "")


# Global settings instance
settings = Settings()
