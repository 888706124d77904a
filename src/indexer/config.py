"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Ledger RPC and program settings."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_")

    network: Literal["localnet", "devnet", "mainnet-beta"] = "localnet"
    rpc_url: str = "http://127.0.0.1:8899"
    ws_url: str = ""  # derived from rpc_url when empty
    program_id: str = ""
    commitment: Literal["processed", "confirmed", "finalized"] = "confirmed"
    request_timeout: float = 10.0
    reconnect_delay: float = 5.0  # seconds between subscription reconnects

    def resolved_ws_url(self) -> str:
        """Return the websocket endpoint, deriving it from rpc_url if unset.

        A local test validator serves websockets on the RPC port + 1.
        """
        if self.ws_url:
            return self.ws_url
        url = self.rpc_url.replace("https://", "wss://").replace("http://", "ws://")
        return url.replace(":8899", ":8900")


class DatabaseSettings(BaseSettings):
    """Relational mirror location."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    path: str = "data/mirror.db"


class WebhookSettings(BaseSettings):
    """Webhook server configuration."""

    model_config = SettingsConfigDict(env_prefix="WEBHOOK_")

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    secret: SecretStr = SecretStr("")
    signature_header: str = "x-helius-signature"


class EpochProcessingSettings(BaseSettings):
    """Downstream epoch-processing collaborator."""

    model_config = SettingsConfigDict(env_prefix="EPOCH_")

    enabled: bool = True
    url: str = "http://127.0.0.1:54321/functions/v1/protocol-belief-epoch-process"
    api_key: SecretStr = SecretStr("")
    timeout_seconds: float = 10.0


class ReconcileSettings(BaseSettings):
    """Reconciliation policy parameters.

    amount_epsilon is compared in display units, so it absorbs the rounding an
    optimistic writer introduces when it stores human-readable amounts.
    """

    model_config = SettingsConfigDict(env_prefix="RECONCILE_")

    amount_epsilon: Decimal = Decimal("0.01")
    belief_lock_fraction: Decimal = Decimal("0.02")  # 2% of paid amount on buys
    token_decimals: int = 6
    unsynced_pool_batch: int = 50


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    ledger: LedgerSettings = LedgerSettings()
    database: DatabaseSettings = DatabaseSettings()
    webhook: WebhookSettings = WebhookSettings()
    epoch: EpochProcessingSettings = EpochProcessingSettings()
    reconcile: ReconcileSettings = ReconcileSettings()
