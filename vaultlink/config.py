from decimal import Decimal
from pathlib import Path
from typing import Any, Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        env_prefix="VAULTLINK_",
        case_sensitive=False,
        extra="ignore"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="auto",
        description="json, console, or auto (console at DEBUG, JSON otherwise)",
    )

    # App metadata sent to providers during the connect handshake
    app_name: str = Field(default="VaultLink", description="Application name shown by signing agents")
    app_icon_url: str = Field(default="", description="Application icon shown by signing agents")

    # Connection lifecycle
    connect_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Deadline for a provider handshake",
    )
    connection_cache_ttl_seconds: float = Field(
        default=300.0,
        gt=0,
        description="How long a successful connect result is reused for the same provider",
    )
    session_expiry_hours: float = Field(
        default=24.0,
        gt=0,
        description="How long a persisted connection session is trusted",
    )
    session_sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Interval of the background expiry sweep",
    )
    session_store_path: str = Field(
        default="",
        description="JSON file used to persist the session (empty = in-memory)",
    )
    provider_failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive handshake failures that open a provider's circuit",
    )
    provider_reset_seconds: float = Field(
        default=60.0,
        gt=0,
        description="How long an open circuit refuses handshakes before a trial attempt",
    )

    # Multi-signature coordination
    multisig_expiry_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="How long a signature collection stays open",
    )
    multisig_tombstone_ttl_seconds: float = Field(
        default=86400.0,
        gt=0,
        description="How long a closed collection is remembered to reject late signatures",
    )

    # Transaction validation
    max_transaction_amount: Decimal = Field(
        default=Decimal("1000000"),
        gt=0,
        description="Upper bound for a single transfer amount",
    )
    recipient_pattern: str = Field(
        default=r"^(SP|SM|ST)[0-9A-Z]{26,28}(\.[a-z0-9-]+)?$",
        description="Regular expression a recipient identity must match",
    )
    max_memo_bytes: int = Field(default=34, ge=0, description="Maximum memo length in UTF-8 bytes")
    max_batch_size: int = Field(default=100, ge=1, description="Maximum intents signed as one batch")

    # Error audit log
    error_log_max_entries: int = Field(
        default=1000,
        ge=1,
        description="Classified errors kept in memory for statistics",
    )

    # Pending-recovery store
    pending_recovery_max_age_seconds: float = Field(
        default=86400.0,
        gt=0,
        description="Age after which stale broadcast attempts are dropped",
    )

    # External collaborators
    remote_signer_url: str = Field(default="", description="JSON-RPC endpoint of a remote signing agent")
    broadcast_url: str = Field(default="", description="Ledger broadcast endpoint")
    http_timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP request timeout")

    @property
    def has_remote_signer(self) -> bool:
        return bool(self.remote_signer_url)

    @property
    def has_broadcast_url(self) -> bool:
        return bool(self.broadcast_url)

    @property
    def session_expiry_seconds(self) -> float:
        return self.session_expiry_hours * 3600

    def app_metadata(self) -> Dict[str, Any]:
        """Metadata handed to a provider's connect call."""
        return {"name": self.app_name, "icon": self.app_icon_url}


# Global settings instance
settings = Settings()
