"""
Translate authorization outcomes into (HTTP status, JSON body) pairs.

Route handlers own the transport; these helpers keep the status mapping in one
place so every surface answers a denial the same way.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from hierarchy_guard.governance.permissions import InvalidActionContextError
from hierarchy_guard.hierarchy.index import MalformedHierarchyError, UnknownActorError
from hierarchy_guard.identity.schema import AuthorizationDecision

logger = logging.getLogger(__name__)


def decision_to_response(
    decision: AuthorizationDecision,
    data: Any = None,
) -> tuple[int, dict[str, Any]]:
    """200 with ``data`` when allowed, 403 with the denial message otherwise."""
    if decision.allowed:
        body: dict[str, Any] = {"success": True}
        if data is not None:
            body["data"] = data
        return 200, body
    return 403, {
        "success": False,
        "message": decision.message,
        "code": decision.denial_code.value,
    }


def error_to_response(exc: Exception) -> tuple[int, dict[str, Any]]:
    """
    Map an engine exception to a response.

    UnknownActorError → 404, malformed input or invalid query parameters → 400,
    anything else → 500.
    Internal error details are logged, not returned.
    """
    if isinstance(exc, UnknownActorError):
        return 404, {"success": False, "message": "User not found"}
    if isinstance(exc, (InvalidActionContextError, MalformedHierarchyError)):
        return 400, {"success": False, "message": str(exc)}
    if isinstance(exc, ValidationError):
        fields = sorted(
            {".".join(str(p) for p in err["loc"]) for err in exc.errors()} - {""}
        )
        return 400, {
            "success": False,
            "message": f"Invalid parameters: {', '.join(fields) or exc.title}",
        }

    logger.error("Unhandled authorization error: %s", exc, exc_info=exc)
    return 500, {"success": False, "message": "Internal server error"}
