"""
Action Authorizer — Per-action policy enforcement over hierarchy visibility.

Every action a route handler may perform on behalf of an actor passes through
ActionAuthorizer.authorize() before execution. Rules live in one table
(ACTION_RULES) instead of being repeated per endpoint, and are composed in a
fixed order; the first failing step short-circuits:

    (a) authentication        established upstream, not checked here
    (b) tier gate             ACTION_NOT_PERMITTED_FOR_TIER / SCOPE_SELF_ONLY
    (c) visibility / target   NOT_VISIBLE, TARGET_NOT_SUBORDINATE, NOT_SELF_OR_ADMIN
    (d) target state          TARGET_BLOCKED, INSUFFICIENT_BALANCE

Denials are returned as values and always audited. Malformed input (unknown
actor, missing transfer amount, ...) raises instead, so integrity bugs never
masquerade as authorization failures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable

from hierarchy_guard.hierarchy.index import HierarchyIndex, MalformedHierarchyError
from hierarchy_guard.governance.visibility import VisibilityResolver
from hierarchy_guard.identity.schema import (
    Action,
    ActionContext,
    Actor,
    AuthorizationDecision,
    Currency,
    DenialCode,
    ScopeKind,
    Tier,
)
from hierarchy_guard.ledger.recorder import AuditRecorder

logger = logging.getLogger(__name__)

BalanceProvider = Callable[[Actor, Currency], Decimal]

DEFAULT_MAX_TRANSFER_AMOUNT = Decimal("1000000")


class InvalidActionContextError(MalformedHierarchyError):
    """Raised when an action request is malformed (maps to HTTP 400)."""
    pass


@dataclass(frozen=True)
class ActionRule:
    """Static policy for one action."""

    permitted_tiers: frozenset[Tier]
    targeted: bool = False
    requires_visibility: bool = False
    self_or_admin: bool = False
    owner: str | None = None  # "agency" or "organization"


ALL_TIERS = frozenset(Tier)
ADMINISTRATOR_ONLY = frozenset({Tier.ADMINISTRATOR})
INITIATING_TIERS = frozenset(
    {Tier.ADMINISTRATOR, Tier.AGENCY, Tier.ORGANIZATION, Tier.ADMIN}
)
CREDIT_TRANSFER_TIERS = frozenset({Tier.ADMINISTRATOR, Tier.AGENCY, Tier.ORGANIZATION})


ACTION_RULES: dict[Action, ActionRule] = {
    Action.VIEW_MEMBER: ActionRule(ALL_TIERS, targeted=True, requires_visibility=True),
    Action.LIST_MEMBERS: ActionRule(ALL_TIERS),
    Action.TRANSFER: ActionRule(INITIATING_TIERS, targeted=True, requires_visibility=True),
    Action.BLOCK: ActionRule(INITIATING_TIERS, targeted=True, requires_visibility=True),
    Action.UNBLOCK: ActionRule(INITIATING_TIERS, targeted=True, requires_visibility=True),
    Action.VIEW_AGENCY_SETTINGS: ActionRule(
        frozenset({Tier.ADMINISTRATOR, Tier.AGENCY}), owner="agency"
    ),
    Action.VIEW_ORG_SETTINGS: ActionRule(
        frozenset({Tier.ADMINISTRATOR, Tier.ORGANIZATION}), owner="organization"
    ),
    Action.MODIFY_REFERRAL_CONFIG: ActionRule(
        frozenset({Tier.ADMINISTRATOR, Tier.AGENCY}), owner="agency"
    ),
    Action.VIEW_ADMIN_SETTINGS: ActionRule(ADMINISTRATOR_ONLY),
    Action.AUDIT_LOG_READ: ActionRule(ADMINISTRATOR_ONLY),
    Action.EXCHANGE_RATE_WRITE: ActionRule(ADMINISTRATOR_ONLY),
    Action.IMPERSONATE: ActionRule(ADMINISTRATOR_ONLY, targeted=True, requires_visibility=True),
    Action.BULK_TRANSFER: ActionRule(ADMINISTRATOR_ONLY),
    Action.USER_DATA_EXPORT: ActionRule(ADMINISTRATOR_ONLY),
    Action.ANALYTICS_READ: ActionRule(ADMINISTRATOR_ONLY),
    Action.SYSTEM_SETTINGS_WRITE: ActionRule(ADMINISTRATOR_ONLY),
    Action.CHANGE_TIER: ActionRule(ADMINISTRATOR_ONLY, targeted=True, requires_visibility=True),
    Action.API_KEY_MANAGE: ActionRule(ADMINISTRATOR_ONLY),
    Action.WEBHOOK_MANAGE: ActionRule(ADMINISTRATOR_ONLY),
    Action.PROMO_CODE_MANAGE: ActionRule(ADMINISTRATOR_ONLY),
    Action.REPORT_GENERATE: ActionRule(ADMINISTRATOR_ONLY),
    Action.EDIT_OWN_PROFILE: ActionRule(ALL_TIERS, targeted=True, self_or_admin=True),
    Action.CHANGE_OWN_PASSWORD: ActionRule(ALL_TIERS, targeted=True, self_or_admin=True),
}


# Messages carry the keywords handlers and clients match on:
# "not authorized", "insufficient", "blocked".
DENIAL_MESSAGES: dict[DenialCode, str] = {
    DenialCode.NOT_VISIBLE: "You are not authorized to access this user",
    DenialCode.TARGET_BLOCKED: "Target user is blocked and cannot receive transfers",
    DenialCode.INSUFFICIENT_BALANCE: "Transfer rejected: insufficient balance",
    DenialCode.ACTION_NOT_PERMITTED_FOR_TIER: "You are not authorized to perform this action",
    DenialCode.TARGET_NOT_SUBORDINATE: (
        "You are not authorized to act on a user of equal or higher tier"
    ),
    DenialCode.NOT_SELF_OR_ADMIN: "You are not authorized to modify another user's account",
    DenialCode.SCOPE_SELF_ONLY: "You are not authorized to view other members",
}


def default_balance(actor: Actor, currency: Currency) -> Decimal:
    return actor.balance(currency)


class ActionAuthorizer:
    """
    Central authorization engine.

    Stateless apart from its collaborators: the hierarchy index (containment),
    the visibility resolver (read access), the balance provider (external
    ledger) and the audit recorder.
    """

    def __init__(
        self,
        index: HierarchyIndex,
        recorder: AuditRecorder | None = None,
        resolver: VisibilityResolver | None = None,
        balance_of: BalanceProvider = default_balance,
        max_transfer_amount: Decimal = DEFAULT_MAX_TRANSFER_AMOUNT,
    ) -> None:
        self.index = index
        self.recorder = recorder if recorder is not None else AuditRecorder()
        self.resolver = resolver if resolver is not None else VisibilityResolver(index)
        self.balance_of = balance_of
        self.max_transfer_amount = max_transfer_amount

    def authorize(
        self,
        observer: Actor,
        action: Action,
        target: Actor | None = None,
        context: ActionContext | None = None,
    ) -> AuthorizationDecision:
        """
        Decide whether ``observer`` may perform ``action`` on ``target``.

        Args:
            observer: The authenticated actor.
            action: The requested action.
            target: The actor acted upon, for member-directed actions.
            context: Amount / currency / settings owner, where relevant.

        Returns:
            AuthorizationDecision. Denials are recorded before returning.

        Raises:
            UnknownActorError: observer or target is not indexed.
            MalformedHierarchyError: observer or target disagrees with the index.
            InvalidActionContextError: the request itself is malformed.
        """
        context = context or ActionContext()
        rule = ACTION_RULES[action]

        indexed_observer = self.index.require_consistent(observer)
        if target is None and rule.self_or_admin:
            target = observer
        if target is None and rule.targeted:
            raise InvalidActionContextError(f"Action {action.value} requires a target")
        indexed_target = self.index.require_consistent(target) if target is not None else None

        if action == Action.TRANSFER:
            self._validate_transfer(observer, target, context)

        code = self._evaluate(rule, action, indexed_observer, observer, indexed_target, target, context)

        decision = AuthorizationDecision(
            allowed=code is None,
            denial_code=code,
            message=DENIAL_MESSAGES[code] if code else f"Action {action.value} authorized",
            action=action,
            observer_id=observer.id,
            target_id=target.id if target is not None else None,
        )
        logger.debug(
            "Authorization: observer=%s action=%s target=%s allowed=%s code=%s",
            observer.id, action.value, decision.target_id, decision.allowed,
            code.value if code else None,
        )
        self.recorder.record_decision(
            decision, self._audit_detail(indexed_observer, indexed_target, context)
        )
        return decision

    def is_allowed(
        self,
        observer: Actor,
        action: Action,
        target: Actor | None = None,
        context: ActionContext | None = None,
    ) -> bool:
        return self.authorize(observer, action, target, context).allowed

    # ── Rule evaluation ─────────────────────────────────────────

    def _evaluate(
        self,
        rule: ActionRule,
        action: Action,
        observer: Actor,
        supplied_observer: Actor,
        target: Actor | None,
        supplied_target: Actor | None,
        context: ActionContext,
    ) -> DenialCode | None:
        # (b) tier gate
        if observer.tier not in rule.permitted_tiers:
            return DenialCode.ACTION_NOT_PERMITTED_FOR_TIER
        if action == Action.TRANSFER and context.currency == Currency.CREDITS:
            if observer.tier not in CREDIT_TRANSFER_TIERS:
                return DenialCode.ACTION_NOT_PERMITTED_FOR_TIER
        if rule.owner is not None and not self._owns_settings(observer, rule.owner, context):
            return DenialCode.ACTION_NOT_PERMITTED_FOR_TIER
        if action == Action.LIST_MEMBERS:
            if self.index.scope_of(observer).kind == ScopeKind.SELF:
                return DenialCode.SCOPE_SELF_ONLY

        # (c) visibility and target relationship
        if target is not None:
            if rule.self_or_admin:
                if target.id != observer.id and observer.tier != Tier.ADMINISTRATOR:
                    return DenialCode.NOT_SELF_OR_ADMIN
            if rule.requires_visibility:
                if not self.resolver.can_see(observer, target).visible:
                    return DenialCode.NOT_VISIBLE
            if action in (Action.BLOCK, Action.UNBLOCK):
                if not self._outranks(observer, target):
                    return DenialCode.TARGET_NOT_SUBORDINATE

        # (d) target state
        if action == Action.TRANSFER:
            if target.is_blocked or supplied_target.is_blocked:
                return DenialCode.TARGET_BLOCKED
            balance = self.balance_of(supplied_observer, context.currency)
            if balance < context.amount:
                return DenialCode.INSUFFICIENT_BALANCE

        return None

    @staticmethod
    def _outranks(observer: Actor, target: Actor) -> bool:
        """Strict dominance; an Administrator outranks every other actor."""
        if observer.tier == Tier.ADMINISTRATOR:
            return target.id != observer.id
        return observer.tier.dominates(target.tier)

    @staticmethod
    def _owns_settings(observer: Actor, owner: str, context: ActionContext) -> bool:
        if observer.tier == Tier.ADMINISTRATOR:
            return True
        owner_id = context.agency_id if owner == "agency" else context.organization_id
        return owner_id is None or owner_id == observer.id

    def _validate_transfer(
        self,
        observer: Actor,
        target: Actor,
        context: ActionContext,
    ) -> None:
        if context.currency is None:
            raise InvalidActionContextError("Transfer requires a currency")
        if context.amount is None or context.amount <= 0:
            raise InvalidActionContextError("Transfer amount must be positive")
        if context.amount > self.max_transfer_amount:
            raise InvalidActionContextError(
                f"Transfer amount {context.amount} exceeds the maximum of "
                f"{self.max_transfer_amount}"
            )
        if target.id == observer.id:
            raise InvalidActionContextError("Cannot transfer to yourself")

    @staticmethod
    def _audit_detail(
        observer: Actor,
        target: Actor | None,
        context: ActionContext,
    ) -> dict[str, Any]:
        detail: dict[str, Any] = {"observer_tier": observer.tier.value}
        if target is not None:
            detail["target_tier"] = target.tier.value
        if context.currency is not None:
            detail["currency"] = context.currency.value
        if context.amount is not None:
            detail["amount"] = str(context.amount)
        if context.agency_id is not None:
            detail["agency_id"] = context.agency_id
        if context.organization_id is not None:
            detail["organization_id"] = context.organization_id
        if context.new_tier is not None:
            detail["new_tier"] = context.new_tier.value
        if context.reason:
            detail["reason"] = context.reason
        return detail
