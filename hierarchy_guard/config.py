"""Hierarchy Guard — Application configuration via environment variables."""

from __future__ import annotations

from decimal import Decimal

from pydantic_settings import BaseSettings

from hierarchy_guard.identity.schema import Action


class GuardSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "GUARD_",
        "extra": "ignore",
    }

    # ── Audit Ledger ───────────────────────────────────────────
    audit_sink: str = "memory"  # "memory" or "database"
    audit_database_url: str = "sqlite:///./hierarchy_audit.db"
    audit_listing_access: bool = True
    audited_allowances: list[Action] = [
        Action.TRANSFER,
        Action.BLOCK,
        Action.UNBLOCK,
        Action.IMPERSONATE,
        Action.BULK_TRANSFER,
        Action.USER_DATA_EXPORT,
        Action.AUDIT_LOG_READ,
        Action.CHANGE_TIER,
        Action.SYSTEM_SETTINGS_WRITE,
        Action.EXCHANGE_RATE_WRITE,
    ]

    # ── Transfers ──────────────────────────────────────────────
    max_transfer_amount: Decimal = Decimal("1000000")

    # ── Query Surface ──────────────────────────────────────────
    default_page_size: int = 20
    max_page_size: int = 100

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def uses_database_sink(self) -> bool:
        return self.audit_sink == "database"


settings = GuardSettings()
