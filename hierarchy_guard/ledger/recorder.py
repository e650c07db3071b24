"""
Audit Recorder — Append-only record of security-relevant authorization decisions.

Every denial is recorded. Allowances are recorded only for a configurable subset
of actions (transfers, blocks, privileged operations) plus listing access. The
write happens synchronously, before the decision is handed back, so a caller
that inspects the log right after a denied request always finds the entry.

Sinks:
- InMemoryAuditSink: process-local list, used by tests and single-process hosts
- AuditLedgerService: SQL-backed, hash-chained (hierarchy_guard.ledger.service)
"""

from __future__ import annotations

import logging
import math
import threading
from collections import Counter
from datetime import datetime
from typing import Any, Iterable, Protocol

from pydantic import BaseModel, Field, model_validator

from hierarchy_guard.identity.schema import (
    Action,
    AuditAction,
    AuditEntry,
    AuditOutcome,
    AuthorizationDecision,
    as_utc,
)

logger = logging.getLogger(__name__)


# (recorded when allowed, recorded when denied)
AUDIT_ACTIONS: dict[Action, tuple[AuditAction, AuditAction]] = {
    Action.VIEW_MEMBER: (AuditAction.MEMBER_VIEW_ALLOWED, AuditAction.MEMBER_VIEW_DENIED),
    Action.LIST_MEMBERS: (
        AuditAction.HIERARCHY_MEMBERS_ACCESS,
        AuditAction.HIERARCHY_MEMBERS_DENIED,
    ),
    Action.TRANSFER: (AuditAction.TRANSFER_AUTHORIZED, AuditAction.TRANSFER_UNAUTHORIZED),
    Action.BLOCK: (AuditAction.BLOCK_ALLOWED, AuditAction.BLOCK_DENIED),
    Action.UNBLOCK: (AuditAction.UNBLOCK_ALLOWED, AuditAction.UNBLOCK_DENIED),
    Action.VIEW_AGENCY_SETTINGS: (
        AuditAction.SETTINGS_ACCESS,
        AuditAction.SETTINGS_ACCESS_DENIED,
    ),
    Action.VIEW_ORG_SETTINGS: (
        AuditAction.SETTINGS_ACCESS,
        AuditAction.SETTINGS_ACCESS_DENIED,
    ),
    Action.MODIFY_REFERRAL_CONFIG: (
        AuditAction.REFERRAL_CONFIG_CHANGE,
        AuditAction.REFERRAL_CONFIG_DENIED,
    ),
    Action.EDIT_OWN_PROFILE: (AuditAction.PROFILE_CHANGE, AuditAction.PROFILE_CHANGE_DENIED),
    Action.CHANGE_OWN_PASSWORD: (
        AuditAction.PROFILE_CHANGE,
        AuditAction.PROFILE_CHANGE_DENIED,
    ),
}

PRIVILEGED_AUDIT_ACTIONS = (AuditAction.PRIVILEGED_ACTION, AuditAction.PRIVILEGED_ACTION_DENIED)


def audit_action_for(action: Action, allowed: bool) -> AuditAction:
    """Audit log name for a decision on ``action``."""
    allowed_name, denied_name = AUDIT_ACTIONS.get(action, PRIVILEGED_AUDIT_ACTIONS)
    return allowed_name if allowed else denied_name


class AuditSink(Protocol):
    """Storage behind the recorder. Append-only: no update, no delete."""

    def append(self, entry: AuditEntry) -> AuditEntry: ...

    def entries(
        self,
        actor_id: str | None = None,
        action: AuditAction | None = None,
        outcome: AuditOutcome | None = None,
        limit: int | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AuditEntry]: ...

    def count(self) -> int: ...


def select_entries(
    entries: Iterable[AuditEntry],
    actor_id: str | None = None,
    action: AuditAction | None = None,
    outcome: AuditOutcome | None = None,
    limit: int | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> list[AuditEntry]:
    """Filter entries in sequence order; ``limit`` keeps the most recent.

    ``since`` and ``until`` are inclusive bounds on the entry timestamp.
    """
    since = as_utc(since) if since is not None else None
    until = as_utc(until) if until is not None else None
    selected = [
        e for e in entries
        if (actor_id is None or e.actor_id == actor_id)
        and (action is None or e.action == action)
        and (outcome is None or e.outcome == outcome)
        and (since is None or as_utc(e.timestamp) >= since)
        and (until is None or as_utc(e.timestamp) <= until)
    ]
    if limit is not None:
        selected = selected[-limit:] if limit > 0 else []
    return selected


class AuditLogQuery(BaseModel):
    """Filters and paging for an audit log read."""

    actor_id: str | None = None
    action: AuditAction | None = None
    outcome: AuditOutcome | None = None
    since: datetime | None = None
    until: datetime | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)

    @model_validator(mode="after")
    def _check_range(self) -> AuditLogQuery:
        if self.since and self.until and as_utc(self.since) > as_utc(self.until):
            raise ValueError("since must not be later than until")
        return self


class AuditLogPage(BaseModel):
    """One page of audit entries, newest first."""

    entries: list[AuditEntry]
    total: int
    page: int
    limit: int
    pages: int


class ActorActivity(BaseModel):
    actor_id: str
    count: int


class AuditStatistics(BaseModel):
    total_entries: int
    denied_entries: int
    action_counts: dict[AuditAction, int]
    recent_activity: list[AuditEntry] = Field(description="Newest first")
    top_actors: list[ActorActivity]


class InMemoryAuditSink:
    """Process-local append-only sink."""

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            stored = entry.model_copy(
                update={"sequence_number": len(self._entries) + 1}
            )
            self._entries.append(stored)
            return stored

    def entries(
        self,
        actor_id: str | None = None,
        action: AuditAction | None = None,
        outcome: AuditOutcome | None = None,
        limit: int | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AuditEntry]:
        with self._lock:
            snapshot = list(self._entries)
        return select_entries(snapshot, actor_id, action, outcome, limit, since, until)

    def count(self) -> int:
        with self._lock:
            return len(self._entries)


class AuditRecorder:
    """
    Records authorization decisions into an append-only sink.

    Appends are serialized, so entries from one actor keep the order in which
    their decisions were made even under concurrent requests.
    """

    def __init__(
        self,
        sink: AuditSink | None = None,
        audited_allowances: Iterable[Action] = (),
        record_listing_access: bool = True,
    ) -> None:
        self.sink: AuditSink = sink if sink is not None else InMemoryAuditSink()
        self.audited_allowances = frozenset(audited_allowances)
        self.record_listing_access = record_listing_access
        self._lock = threading.Lock()

    def record(self, entry: AuditEntry) -> AuditEntry:
        """Durably append ``entry`` and return the stored copy."""
        with self._lock:
            stored = self.sink.append(entry)

        if stored.outcome == AuditOutcome.DENIED:
            logger.warning(
                "Unauthorized attempt: actor=%s action=%s target=%s code=%s",
                stored.actor_id,
                stored.action.value,
                stored.target_id,
                stored.denial_code.value if stored.denial_code else None,
            )
        else:
            logger.info(
                "Audit: actor=%s action=%s target=%s",
                stored.actor_id, stored.action.value, stored.target_id,
            )
        return stored

    def should_record(self, action: Action, allowed: bool) -> bool:
        return not allowed or action in self.audited_allowances

    def record_decision(
        self,
        decision: AuthorizationDecision,
        detail: dict[str, Any] | None = None,
    ) -> AuditEntry | None:
        """Record a decision if it is security-relevant. Denials always are."""
        if not self.should_record(decision.action, decision.allowed):
            return None
        return self.record(
            AuditEntry(
                actor_id=decision.observer_id,
                action=audit_action_for(decision.action, decision.allowed),
                requested_action=decision.action,
                target_id=decision.target_id,
                outcome=AuditOutcome.ALLOWED if decision.allowed else AuditOutcome.DENIED,
                denial_code=decision.denial_code,
                detail=dict(detail or {}, message=decision.message),
            )
        )

    def record_listing(
        self,
        observer_id: str,
        surface: str,
        detail: dict[str, Any] | None = None,
    ) -> AuditEntry | None:
        """Record an allowed listing / search / tree access."""
        if not self.record_listing_access:
            return None
        return self.record(
            AuditEntry(
                actor_id=observer_id,
                action=AuditAction.HIERARCHY_MEMBERS_ACCESS,
                requested_action=Action.LIST_MEMBERS,
                outcome=AuditOutcome.ALLOWED,
                detail=dict(detail or {}, surface=surface),
            )
        )

    def entries(
        self,
        actor_id: str | None = None,
        action: AuditAction | None = None,
        outcome: AuditOutcome | None = None,
        limit: int | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AuditEntry]:
        return self.sink.entries(
            actor_id=actor_id, action=action, outcome=outcome,
            limit=limit, since=since, until=until,
        )

    def page(self, query: AuditLogQuery) -> AuditLogPage:
        """Newest-first page of the entries matching ``query``."""
        matched = self.entries(
            actor_id=query.actor_id,
            action=query.action,
            outcome=query.outcome,
            since=query.since,
            until=query.until,
        )
        matched.reverse()
        total = len(matched)
        start = (query.page - 1) * query.limit
        return AuditLogPage(
            entries=matched[start:start + query.limit],
            total=total,
            page=query.page,
            limit=query.limit,
            pages=math.ceil(total / query.limit) if total else 0,
        )

    def statistics(
        self,
        actor_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        top: int = 10,
    ) -> AuditStatistics:
        """
        Aggregate counts over the matching entries.

        ``recent_activity`` holds the ``top`` newest entries and ``top_actors``
        the ``top`` most active actors; ties keep first-seen order.
        """
        matched = self.entries(actor_id=actor_id, since=since, until=until)
        action_counts = Counter(e.action for e in matched)
        actor_counts = Counter(e.actor_id for e in matched)
        return AuditStatistics(
            total_entries=len(matched),
            denied_entries=sum(1 for e in matched if e.outcome == AuditOutcome.DENIED),
            action_counts=dict(action_counts),
            recent_activity=matched[::-1][:top],
            top_actors=[
                ActorActivity(actor_id=actor, count=count)
                for actor, count in actor_counts.most_common(top)
            ],
        )
