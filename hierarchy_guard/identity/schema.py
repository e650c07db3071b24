"""
Identity Schema — Pydantic models for every entity the access engine reasons about.

These models are the canonical data structures of the engine. Actors describe a
place in the five-tier hierarchy; scopes, visibility decisions and authorization
decisions are ephemeral values recomputed per request; audit entries are the
only persisted record.

Tier authority, strongest first:

    Administrator > Agency > Organization > Admin > General
"""

from __future__ import annotations

import enum
import hashlib
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class Tier(str, enum.Enum):
    """The five ranked actor classes."""

    ADMINISTRATOR = "administrator"
    AGENCY = "agency"
    ORGANIZATION = "organization"
    ADMIN = "admin"
    GENERAL = "general"

    @property
    def rank(self) -> int:
        """Numeric authority (0 = General, 4 = Administrator)."""
        return TIER_RANKS[self]

    def dominates(self, other: Tier) -> bool:
        """Strict dominance: True only when this tier outranks ``other``."""
        return self.rank > other.rank


TIER_RANKS: dict[Tier, int] = {
    Tier.GENERAL: 0,
    Tier.ADMIN: 1,
    Tier.ORGANIZATION: 2,
    Tier.AGENCY: 3,
    Tier.ADMINISTRATOR: 4,
}


class Currency(str, enum.Enum):
    """Balances an actor may hold and transfer."""

    POINTS = "points"
    CREDITS = "credits"


class ScopeKind(str, enum.Enum):
    """Shape of an observer's visibility scope."""

    SELF = "self"
    ORG_SUBTREE = "org_subtree"
    AGENCY_SUBTREE = "agency_subtree"
    GLOBAL = "global"


class VisibilityReason(str, enum.Enum):
    """Why a candidate is or is not visible."""

    ADMIN_GLOBAL = "ADMIN_GLOBAL"
    SELF = "SELF"
    SCOPE_SELF_ONLY = "SCOPE_SELF_ONLY"
    NO_LATERAL_OR_UPWARD_VISIBILITY = "NO_LATERAL_OR_UPWARD_VISIBILITY"
    IN_SUBTREE = "IN_SUBTREE"
    OUT_OF_SUBTREE = "OUT_OF_SUBTREE"


class Action(str, enum.Enum):
    """Every action the authorizer knows how to decide."""

    # Member-directed actions
    VIEW_MEMBER = "view_member"
    LIST_MEMBERS = "list_members"
    TRANSFER = "transfer"
    BLOCK = "block"
    UNBLOCK = "unblock"

    # Settings scoped to an agency / organization
    VIEW_AGENCY_SETTINGS = "view_agency_settings"
    VIEW_ORG_SETTINGS = "view_org_settings"
    MODIFY_REFERRAL_CONFIG = "modify_referral_config"

    # Administrator-only
    VIEW_ADMIN_SETTINGS = "view_admin_settings"
    AUDIT_LOG_READ = "audit_log_read"
    EXCHANGE_RATE_WRITE = "exchange_rate_write"
    IMPERSONATE = "impersonate"
    BULK_TRANSFER = "bulk_transfer"
    USER_DATA_EXPORT = "user_data_export"
    ANALYTICS_READ = "analytics_read"
    SYSTEM_SETTINGS_WRITE = "system_settings_write"
    CHANGE_TIER = "change_tier"
    API_KEY_MANAGE = "api_key_manage"
    WEBHOOK_MANAGE = "webhook_manage"
    PROMO_CODE_MANAGE = "promo_code_manage"
    REPORT_GENERATE = "report_generate"

    # Self-service
    EDIT_OWN_PROFILE = "edit_own_profile"
    CHANGE_OWN_PASSWORD = "change_own_password"


class DenialCode(str, enum.Enum):
    """Caller-facing denial categories. Each maps to an HTTP 403."""

    NOT_VISIBLE = "NOT_VISIBLE"
    TARGET_BLOCKED = "TARGET_BLOCKED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    ACTION_NOT_PERMITTED_FOR_TIER = "ACTION_NOT_PERMITTED_FOR_TIER"
    TARGET_NOT_SUBORDINATE = "TARGET_NOT_SUBORDINATE"
    NOT_SELF_OR_ADMIN = "NOT_SELF_OR_ADMIN"
    SCOPE_SELF_ONLY = "SCOPE_SELF_ONLY"


class AuditAction(str, enum.Enum):
    """Audit log action names."""

    MEMBER_VIEW_ALLOWED = "MEMBER_VIEW_ALLOWED"
    MEMBER_VIEW_DENIED = "MEMBER_VIEW_DENIED"
    HIERARCHY_MEMBERS_ACCESS = "HIERARCHY_MEMBERS_ACCESS"
    HIERARCHY_MEMBERS_DENIED = "HIERARCHY_MEMBERS_DENIED"
    TRANSFER_AUTHORIZED = "TRANSFER_AUTHORIZED"
    TRANSFER_UNAUTHORIZED = "TRANSFER_UNAUTHORIZED"
    BLOCK_ALLOWED = "BLOCK_ALLOWED"
    BLOCK_DENIED = "BLOCK_DENIED"
    UNBLOCK_ALLOWED = "UNBLOCK_ALLOWED"
    UNBLOCK_DENIED = "UNBLOCK_DENIED"
    SETTINGS_ACCESS = "SETTINGS_ACCESS"
    SETTINGS_ACCESS_DENIED = "SETTINGS_ACCESS_DENIED"
    REFERRAL_CONFIG_CHANGE = "REFERRAL_CONFIG_CHANGE"
    REFERRAL_CONFIG_DENIED = "REFERRAL_CONFIG_DENIED"
    PRIVILEGED_ACTION = "PRIVILEGED_ACTION"
    PRIVILEGED_ACTION_DENIED = "PRIVILEGED_ACTION_DENIED"
    PROFILE_CHANGE = "PROFILE_CHANGE"
    PROFILE_CHANGE_DENIED = "PROFILE_CHANGE_DENIED"
    LEDGER_GENESIS = "LEDGER_GENESIS"


class AuditOutcome(str, enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


# ════════════════════════════════════════════════════════════════
# Identity
# ════════════════════════════════════════════════════════════════


class Actor(BaseModel):
    """
    The unit of identity.

    ``tier``, ``agency_ref`` and ``organization_ref`` are fixed at provisioning.
    ``is_blocked`` is flipped only through an authorized BLOCK / UNBLOCK. Actors
    are never deleted; blocking is the only form of suspension.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Opaque unique identifier")
    tier: Tier
    agency_ref: str | None = Field(
        default=None, description="Owning Agency (an Agency may reference itself)"
    )
    organization_ref: str | None = Field(
        default=None, description="Owning Organization (Admin / General only)"
    )
    is_blocked: bool = False
    email: str = ""
    display_name: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    balances: dict[Currency, Decimal] = Field(default_factory=dict)

    def balance(self, currency: Currency) -> Decimal:
        return self.balances.get(currency, Decimal("0"))


class Scope(BaseModel):
    """An observer's visibility scope, derived from tier and containment."""

    model_config = ConfigDict(frozen=True)

    kind: ScopeKind
    observer_id: str
    root_id: str | None = None
    tier_filter: frozenset[Tier] | None = Field(
        default=None,
        description="When set, only candidates of these tiers fall inside the scope",
    )


# ════════════════════════════════════════════════════════════════
# Decisions
# ════════════════════════════════════════════════════════════════


class VisibilityDecision(BaseModel):
    """Result of CanSee. Never persisted."""

    visible: bool
    reason: VisibilityReason
    observer_id: str
    candidate_id: str


class ActionContext(BaseModel):
    """Action-specific inputs (transfer amount, settings owner, ...)."""

    currency: Currency | None = None
    amount: Decimal | None = None
    agency_id: str | None = Field(
        default=None, description="Agency owning the settings / referral config"
    )
    organization_id: str | None = Field(
        default=None, description="Organization owning the settings"
    )
    new_tier: Tier | None = None
    reason: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class AuthorizationDecision(BaseModel):
    """Result of Authorize. Never persisted; a denial is a value, not an error."""

    allowed: bool
    denial_code: DenialCode | None = None
    message: str
    action: Action
    observer_id: str
    target_id: str | None = None

    @property
    def http_status(self) -> int:
        return 200 if self.allowed else 403


# ════════════════════════════════════════════════════════════════
# Audit
# ════════════════════════════════════════════════════════════════


class AuditEntry(BaseModel):
    """
    A persisted authorization record.

    Append-only: once recorded it is never updated or deleted. When written to
    the SQL ledger each entry is hash-chained to its predecessor.
    """

    id: UUID = Field(default_factory=uuid4)
    sequence_number: int | None = Field(
        default=None, description="Assigned by the sink on append"
    )
    actor_id: str
    action: AuditAction
    requested_action: Action | None = None
    target_id: str | None = None
    outcome: AuditOutcome
    denial_code: DenialCode | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    detail: dict[str, Any] = Field(default_factory=dict)
    entry_hash: str = ""

    def compute_hash(self, previous_hash: str) -> str:
        """
        Compute the SHA-256 hash of this entry.

        Hash = SHA-256(previous_hash || canonical_json(hashable_content))
        """
        hashable = {
            "id": str(self.id),
            "sequence_number": self.sequence_number,
            "previous_hash": previous_hash,
            "timestamp": canonical_timestamp(self.timestamp),
            "actor_id": self.actor_id,
            "action": self.action.value,
            "requested_action": self.requested_action.value if self.requested_action else None,
            "target_id": self.target_id,
            "outcome": self.outcome.value,
            "denial_code": self.denial_code.value if self.denial_code else None,
            "detail": self.detail,
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256(
            (previous_hash + canonical).encode("utf-8")
        ).hexdigest()


def canonical_timestamp(value: datetime) -> str:
    """ISO form in naive UTC, stable across databases that drop tzinfo."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat()


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
