"""
Tests for the Action Authorizer.

Validates:
- Every row of the action rule table
- Fixed evaluation order (tier gate, visibility, target state)
- Denials returned as values with stable message keywords
- Malformed input raised, never converted into a denial
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from hierarchy_guard.governance.permissions import (
    ACTION_RULES,
    ADMINISTRATOR_ONLY,
    ActionAuthorizer,
    InvalidActionContextError,
)
from hierarchy_guard.hierarchy.index import UnknownActorError
from hierarchy_guard.identity.schema import (
    Action,
    ActionContext,
    Actor,
    AuditAction,
    AuditOutcome,
    Currency,
    DenialCode,
    Tier,
)


def points(amount) -> ActionContext:
    return ActionContext(currency=Currency.POINTS, amount=Decimal(str(amount)))


def credits(amount) -> ActionContext:
    return ActionContext(currency=Currency.CREDITS, amount=Decimal(str(amount)))


class TestRuleTable:

    def test_every_action_has_a_rule(self):
        assert set(ACTION_RULES) == set(Action)

    def test_view_member_requires_visibility(self, authorizer, actors):
        allowed = authorizer.authorize(actors["org-a1"], Action.VIEW_MEMBER, actors["gen-a1"])
        denied = authorizer.authorize(actors["org-a1"], Action.VIEW_MEMBER, actors["gen-a2"])
        assert allowed.allowed
        assert allowed.denial_code is None
        assert not denied.allowed
        assert denied.denial_code == DenialCode.NOT_VISIBLE

    def test_list_members_denied_for_general(self, authorizer, actors):
        decision = authorizer.authorize(actors["gen-a1"], Action.LIST_MEMBERS)
        assert decision.denial_code == DenialCode.SCOPE_SELF_ONLY

    def test_list_members_allowed_for_admin(self, authorizer, actors):
        assert authorizer.is_allowed(actors["admin-a1"], Action.LIST_MEMBERS)


class TestTransfer:

    def test_agency_transfers_points_into_subtree(self, authorizer, actors):
        decision = authorizer.authorize(
            actors["agency-a"], Action.TRANSFER, actors["gen-a1"], points(100)
        )
        assert decision.allowed
        assert decision.http_status == 200

    def test_admin_cannot_transfer_credits(self, authorizer, actors):
        decision = authorizer.authorize(
            actors["admin-a1"], Action.TRANSFER, actors["gen-a1"], credits(1)
        )
        assert not decision.allowed
        assert decision.denial_code == DenialCode.ACTION_NOT_PERMITTED_FOR_TIER

    def test_admin_can_transfer_points(self, authorizer, actors):
        assert authorizer.is_allowed(
            actors["admin-a1"], Action.TRANSFER, actors["gen-a1"], points(10)
        )

    def test_organization_can_transfer_credits(self, authorizer, actors):
        assert authorizer.is_allowed(
            actors["org-a1"], Action.TRANSFER, actors["admin-a1"], credits(10)
        )

    def test_general_never_initiates(self, authorizer, actors, index):
        decision = authorizer.authorize(
            actors["gen-a1"], Action.TRANSFER, actors["gen-a1b"], points(1)
        )
        assert decision.denial_code == DenialCode.ACTION_NOT_PERMITTED_FOR_TIER

    def test_organization_cannot_reach_other_organization(self, authorizer, actors):
        decision = authorizer.authorize(
            actors["org-a1"], Action.TRANSFER, actors["gen-a2"], points(100)
        )
        assert decision.denial_code == DenialCode.NOT_VISIBLE
        assert "not authorized" in decision.message

    def test_cross_agency_transfer_not_visible(self, authorizer, actors):
        decision = authorizer.authorize(
            actors["agency-a"], Action.TRANSFER, actors["gen-b1"], points(1)
        )
        assert decision.denial_code == DenialCode.NOT_VISIBLE

    def test_upward_transfer_not_visible(self, authorizer, actors):
        decision = authorizer.authorize(
            actors["admin-a1"], Action.TRANSFER, actors["org-a1"], points(1)
        )
        assert decision.denial_code == DenialCode.NOT_VISIBLE

    def test_blocked_target(self, authorizer, actors, index):
        index.set_blocked("gen-a1", True)
        decision = authorizer.authorize(
            actors["agency-a"], Action.TRANSFER, actors["gen-a1"], points(100)
        )
        assert decision.denial_code == DenialCode.TARGET_BLOCKED
        assert "blocked" in decision.message

    def test_supplied_blocked_flag_is_honoured(self, authorizer, actors):
        target = actors["gen-a1"].model_copy(update={"is_blocked": True})
        decision = authorizer.authorize(actors["agency-a"], Action.TRANSFER, target, points(1))
        assert decision.denial_code == DenialCode.TARGET_BLOCKED

    def test_insufficient_balance(self, authorizer, actors):
        decision = authorizer.authorize(
            actors["agency-a"], Action.TRANSFER, actors["gen-a1"], points(5000)
        )
        assert decision.denial_code == DenialCode.INSUFFICIENT_BALANCE
        assert "insufficient" in decision.message

    def test_exact_balance_is_enough(self, authorizer, actors):
        assert authorizer.is_allowed(
            actors["agency-a"], Action.TRANSFER, actors["gen-a1"], points(1000)
        )

    def test_balance_provider_is_consulted(self, index, recorder, actors):
        seen = []

        def ledger_balance(actor: Actor, currency: Currency) -> Decimal:
            seen.append((actor.id, currency))
            return Decimal("5")

        authorizer = ActionAuthorizer(index, recorder=recorder, balance_of=ledger_balance)
        decision = authorizer.authorize(
            actors["agency-a"], Action.TRANSFER, actors["gen-a1"], points(6)
        )
        assert decision.denial_code == DenialCode.INSUFFICIENT_BALANCE
        assert seen == [("agency-a", Currency.POINTS)]


class TestEvaluationOrder:
    """The first failing step decides the denial code."""

    def test_invisible_beats_insufficient_balance(self, authorizer, actors):
        decision = authorizer.authorize(
            actors["org-a1"], Action.TRANSFER, actors["gen-a2"], points(999999)
        )
        assert decision.denial_code == DenialCode.NOT_VISIBLE

    def test_tier_gate_beats_visibility(self, authorizer, actors):
        decision = authorizer.authorize(
            actors["admin-a1"], Action.TRANSFER, actors["gen-b1"], credits(1)
        )
        assert decision.denial_code == DenialCode.ACTION_NOT_PERMITTED_FOR_TIER

    def test_blocked_beats_insufficient_balance(self, authorizer, actors, index):
        index.set_blocked("gen-a1", True)
        decision = authorizer.authorize(
            actors["agency-a"], Action.TRANSFER, actors["gen-a1"], points(5000)
        )
        assert decision.denial_code == DenialCode.TARGET_BLOCKED

    def test_visibility_beats_subordination(self, authorizer, actors):
        decision = authorizer.authorize(actors["admin-a1"], Action.BLOCK, actors["admin-a1b"])
        assert decision.denial_code == DenialCode.NOT_VISIBLE

    def test_general_block_is_a_tier_denial(self, authorizer, actors):
        decision = authorizer.authorize(actors["gen-a1"], Action.BLOCK, actors["gen-a1b"])
        assert decision.denial_code == DenialCode.ACTION_NOT_PERMITTED_FOR_TIER


class TestBlock:

    @pytest.mark.parametrize("target_id", ["root-2", "agency-b", "org-a1", "admin-b1", "gen-a2"])
    def test_administrator_blocks_anyone(self, authorizer, actors, target_id):
        decision = authorizer.authorize(actors["root"], Action.BLOCK, actors[target_id])
        assert decision.allowed

    def test_administrator_cannot_block_itself(self, authorizer, actors):
        decision = authorizer.authorize(actors["root"], Action.BLOCK, actors["root"])
        assert decision.denial_code == DenialCode.TARGET_NOT_SUBORDINATE

    @pytest.mark.parametrize(
        "observer_id, target_id",
        [
            ("agency-a", "org-a2"),
            ("agency-a", "gen-a1"),
            ("org-a1", "admin-a1"),
            ("org-a1", "gen-a1b"),
            ("admin-a1", "gen-a1"),
        ],
    )
    def test_dominating_tier_blocks_subordinate(self, authorizer, actors, observer_id, target_id):
        assert authorizer.is_allowed(actors[observer_id], Action.BLOCK, actors[target_id])
        assert authorizer.is_allowed(actors[observer_id], Action.UNBLOCK, actors[target_id])

    def test_self_block_is_not_subordinate(self, authorizer, actors):
        decision = authorizer.authorize(actors["agency-a"], Action.BLOCK, actors["agency-a"])
        assert decision.denial_code == DenialCode.TARGET_NOT_SUBORDINATE

    def test_peer_agency_not_visible(self, authorizer, actors):
        decision = authorizer.authorize(actors["agency-a"], Action.BLOCK, actors["agency-b"])
        assert decision.denial_code == DenialCode.NOT_VISIBLE

    def test_unblock_of_blocked_target(self, authorizer, actors, index):
        index.set_blocked("gen-a1", True)
        assert authorizer.is_allowed(actors["admin-a1"], Action.UNBLOCK, actors["gen-a1"])


class TestSettings:

    def test_agency_reads_own_settings(self, authorizer, actors):
        context = ActionContext(agency_id="agency-a")
        assert authorizer.is_allowed(actors["agency-a"], Action.VIEW_AGENCY_SETTINGS, context=context)

    def test_agency_cannot_read_other_agency_settings(self, authorizer, actors):
        context = ActionContext(agency_id="agency-b")
        decision = authorizer.authorize(
            actors["agency-a"], Action.VIEW_AGENCY_SETTINGS, context=context
        )
        assert decision.denial_code == DenialCode.ACTION_NOT_PERMITTED_FOR_TIER

    def test_organization_cannot_read_agency_settings(self, authorizer, actors):
        decision = authorizer.authorize(
            actors["org-a1"], Action.VIEW_AGENCY_SETTINGS, context=ActionContext(agency_id="agency-a")
        )
        assert decision.denial_code == DenialCode.ACTION_NOT_PERMITTED_FOR_TIER

    def test_organization_settings(self, authorizer, actors):
        own = ActionContext(organization_id="org-a1")
        other = ActionContext(organization_id="org-a2")
        assert authorizer.is_allowed(actors["org-a1"], Action.VIEW_ORG_SETTINGS, context=own)
        assert not authorizer.is_allowed(actors["org-a1"], Action.VIEW_ORG_SETTINGS, context=other)
        assert not authorizer.is_allowed(actors["agency-a"], Action.VIEW_ORG_SETTINGS, context=own)
        assert not authorizer.is_allowed(actors["admin-a1"], Action.VIEW_ORG_SETTINGS, context=own)

    def test_administrator_reads_any_settings(self, authorizer, actors):
        root = actors["root"]
        assert authorizer.is_allowed(
            root, Action.VIEW_AGENCY_SETTINGS, context=ActionContext(agency_id="agency-b")
        )
        assert authorizer.is_allowed(
            root, Action.VIEW_ORG_SETTINGS, context=ActionContext(organization_id="org-b1")
        )

    def test_referral_config(self, authorizer, actors):
        own = ActionContext(agency_id="agency-a")
        assert authorizer.is_allowed(actors["agency-a"], Action.MODIFY_REFERRAL_CONFIG, context=own)
        assert authorizer.is_allowed(actors["root"], Action.MODIFY_REFERRAL_CONFIG, context=own)
        assert not authorizer.is_allowed(
            actors["agency-b"], Action.MODIFY_REFERRAL_CONFIG, context=own
        )
        assert not authorizer.is_allowed(actors["org-a1"], Action.MODIFY_REFERRAL_CONFIG, context=own)


UNTARGETED_ADMINISTRATOR_ACTIONS = [
    action for action, rule in ACTION_RULES.items()
    if rule.permitted_tiers == ADMINISTRATOR_ONLY and not rule.targeted
]


class TestAdministratorOnly:

    @pytest.mark.parametrize("action", UNTARGETED_ADMINISTRATOR_ACTIONS)
    def test_only_administrator(self, authorizer, actors, action):
        assert authorizer.is_allowed(actors["root"], action)
        for observer_id in ("agency-a", "org-a1", "admin-a1", "gen-a1"):
            decision = authorizer.authorize(actors[observer_id], action)
            assert decision.denial_code == DenialCode.ACTION_NOT_PERMITTED_FOR_TIER

    @pytest.mark.parametrize("action", [Action.IMPERSONATE, Action.CHANGE_TIER])
    def test_targeted_administrator_actions(self, authorizer, actors, action):
        context = ActionContext(new_tier=Tier.ADMIN)
        assert authorizer.is_allowed(actors["root"], action, actors["gen-a1"], context)
        decision = authorizer.authorize(actors["agency-a"], action, actors["gen-a1"], context)
        assert decision.denial_code == DenialCode.ACTION_NOT_PERMITTED_FOR_TIER

    def test_audit_log_read_denial_message(self, authorizer, actors):
        decision = authorizer.authorize(actors["agency-a"], Action.AUDIT_LOG_READ)
        assert "not authorized" in decision.message
        assert decision.http_status == 403


class TestSelfService:

    @pytest.mark.parametrize("action", [Action.EDIT_OWN_PROFILE, Action.CHANGE_OWN_PASSWORD])
    def test_every_tier_edits_itself(self, authorizer, actors, action):
        for actor in actors.values():
            decision = authorizer.authorize(actor, action)
            assert decision.allowed
            assert decision.target_id == actor.id

    def test_cannot_edit_someone_else(self, authorizer, actors):
        decision = authorizer.authorize(actors["agency-a"], Action.EDIT_OWN_PROFILE, actors["gen-a1"])
        assert decision.denial_code == DenialCode.NOT_SELF_OR_ADMIN

    def test_administrator_edits_anyone(self, authorizer, actors):
        assert authorizer.is_allowed(actors["root"], Action.CHANGE_OWN_PASSWORD, actors["gen-b1"])


class TestMalformedInput:

    @pytest.mark.parametrize(
        "context",
        [
            ActionContext(amount=Decimal("10")),
            ActionContext(currency=Currency.POINTS),
            points(0),
            points(-5),
            points(1000001),
        ],
    )
    def test_bad_transfer_context_raises(self, authorizer, actors, sink, context):
        with pytest.raises(InvalidActionContextError):
            authorizer.authorize(actors["agency-a"], Action.TRANSFER, actors["gen-a1"], context)
        assert sink.count() == 0

    def test_self_transfer_raises(self, authorizer, actors):
        with pytest.raises(InvalidActionContextError, match="yourself"):
            authorizer.authorize(actors["agency-a"], Action.TRANSFER, actors["agency-a"], points(1))

    def test_max_transfer_amount_is_configurable(self, index, recorder, actors):
        authorizer = ActionAuthorizer(index, recorder=recorder, max_transfer_amount=Decimal("50"))
        with pytest.raises(InvalidActionContextError, match="exceeds"):
            authorizer.authorize(actors["agency-a"], Action.TRANSFER, actors["gen-a1"], points(51))

    def test_missing_target_raises(self, authorizer, actors):
        with pytest.raises(InvalidActionContextError):
            authorizer.authorize(actors["agency-a"], Action.BLOCK)

    def test_unknown_target_raises(self, authorizer, actors, sink):
        ghost = Actor(id="ghost", tier=Tier.GENERAL, organization_ref="org-a1")
        with pytest.raises(UnknownActorError):
            authorizer.authorize(actors["root"], Action.VIEW_MEMBER, ghost)
        assert sink.count() == 0


class TestDecisionAuditing:

    def test_denial_is_recorded(self, authorizer, actors, sink):
        authorizer.authorize(actors["org-a1"], Action.TRANSFER, actors["gen-a2"], points(100))
        entries = sink.entries()
        assert len(entries) == 1
        entry = entries[0]
        assert entry.actor_id == "org-a1"
        assert entry.action == AuditAction.TRANSFER_UNAUTHORIZED
        assert entry.requested_action == Action.TRANSFER
        assert entry.target_id == "gen-a2"
        assert entry.outcome == AuditOutcome.DENIED
        assert entry.denial_code == DenialCode.NOT_VISIBLE
        assert entry.detail["amount"] == "100"
        assert entry.detail["currency"] == "points"

    def test_allowance_not_recorded_by_default(self, authorizer, actors, sink):
        authorizer.authorize(actors["agency-a"], Action.TRANSFER, actors["gen-a1"], points(1))
        assert sink.count() == 0
