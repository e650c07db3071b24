"""Tests for the decision / error → HTTP response helpers."""

from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from hierarchy_guard.governance.permissions import InvalidActionContextError
from hierarchy_guard.governance.responses import decision_to_response, error_to_response
from hierarchy_guard.hierarchy.index import MalformedHierarchyError, UnknownActorError
from hierarchy_guard.identity.schema import Action, ActionContext, Currency
from hierarchy_guard.ledger.recorder import AuditLogQuery


class TestDecisionResponses:

    def test_allowed(self, authorizer, actors):
        decision = authorizer.authorize(actors["root"], Action.ANALYTICS_READ)
        status, body = decision_to_response(decision, data={"rows": 3})
        assert status == 200
        assert body == {"success": True, "data": {"rows": 3}}

    @pytest.mark.parametrize(
        "observer_id, target_id, amount, keyword",
        [
            ("org-a1", "gen-a2", "10", "not authorized"),
            ("agency-a", "gen-a1", "99999", "insufficient"),
        ],
    )
    def test_transfer_denials_carry_keywords(
        self, authorizer, actors, observer_id, target_id, amount, keyword
    ):
        decision = authorizer.authorize(
            actors[observer_id], Action.TRANSFER, actors[target_id],
            ActionContext(currency=Currency.POINTS, amount=Decimal(amount)),
        )
        status, body = decision_to_response(decision)
        assert status == 403
        assert body["success"] is False
        assert keyword in body["message"]
        assert body["code"] == decision.denial_code.value

    def test_blocked_keyword(self, authorizer, actors, index):
        index.set_blocked("gen-a1", True)
        decision = authorizer.authorize(
            actors["agency-a"], Action.TRANSFER, actors["gen-a1"],
            ActionContext(currency=Currency.POINTS, amount=Decimal("1")),
        )
        status, body = decision_to_response(decision)
        assert status == 403
        assert "blocked" in body["message"]
        assert body["code"] == "TARGET_BLOCKED"


class TestErrorResponses:

    def test_unknown_actor_is_404(self):
        status, body = error_to_response(UnknownActorError("ghost"))
        assert status == 404
        assert body["success"] is False

    @pytest.mark.parametrize(
        "exc",
        [InvalidActionContextError("Transfer amount must be positive"),
         MalformedHierarchyError("broken")],
    )
    def test_malformed_input_is_400(self, exc):
        status, body = error_to_response(exc)
        assert status == 400
        assert body["message"] == str(exc)

    def test_unexpected_error_is_500(self):
        status, body = error_to_response(RuntimeError("db down"))
        assert status == 500
        assert "db down" not in body["message"]

    def test_invalid_query_parameters_are_400(self):
        with pytest.raises(ValidationError) as excinfo:
            AuditLogQuery(limit=500)
        status, body = error_to_response(excinfo.value)
        assert status == 400
        assert body["message"] == "Invalid parameters: limit"
