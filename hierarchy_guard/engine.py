"""
Hierarchy Guard — Engine facade.

Wires the hierarchy index, visibility resolver, action authorizer, query
surface and audit recorder into the single object route handlers call:

    configure_logging()
    engine = build_engine(loader=fetch_all_actors)
    decision = engine.authorize(observer, Action.TRANSFER, target, context)
    decision, page = engine.list_members(observer, query=MemberQuery(page=2))
    engine.refresh()
    engine.close()
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Any, Iterable

import structlog

from hierarchy_guard.config import GuardSettings, settings as default_settings
from hierarchy_guard.governance.permissions import (
    ActionAuthorizer,
    BalanceProvider,
    InvalidActionContextError,
    default_balance,
)
from hierarchy_guard.governance.query import (
    HierarchyStats,
    MemberPage,
    MemberQuery,
    MemberTreeNode,
    QuerySurfaceAdapter,
)
from hierarchy_guard.governance.visibility import VisibilityResolver
from hierarchy_guard.hierarchy.index import ActorLoader, HierarchyIndex
from hierarchy_guard.identity.schema import (
    Action,
    ActionContext,
    Actor,
    AuditAction,
    AuditEntry,
    AuditOutcome,
    AuthorizationDecision,
    VisibilityDecision,
)
from hierarchy_guard.ledger.recorder import (
    AuditLogPage,
    AuditLogQuery,
    AuditRecorder,
    AuditSink,
    AuditStatistics,
    InMemoryAuditSink,
)
from hierarchy_guard.ledger.service import AuditLedgerService


def configure_logging(settings: GuardSettings = default_settings) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class GuardEngine:
    """In-process boundary of the visibility and authorization engine."""

    def __init__(
        self,
        index: HierarchyIndex,
        recorder: AuditRecorder,
        authorizer: ActionAuthorizer,
        adapter: QuerySurfaceAdapter,
        sink: AuditSink | None = None,
    ) -> None:
        self.index = index
        self.recorder = recorder
        self.authorizer = authorizer
        self.resolver = authorizer.resolver
        self.adapter = adapter
        self.sink = sink
        self.log = structlog.get_logger()

    # ── Visibility ──────────────────────────────────────────────

    def can_see(self, observer: Actor, candidate: Actor) -> VisibilityDecision:
        return self.resolver.can_see(observer, candidate)

    def filter_visible(self, observer: Actor, candidates: Iterable[Actor]) -> list[Actor]:
        return self.resolver.filter_visible(observer, candidates)

    # ── Authorization ───────────────────────────────────────────

    def authorize(
        self,
        observer: Actor,
        action: Action,
        target: Actor | None = None,
        context: ActionContext | None = None,
    ) -> AuthorizationDecision:
        return self.authorizer.authorize(observer, action, target, context)

    def block(
        self,
        observer: Actor,
        target: Actor,
        reason: str = "",
    ) -> tuple[AuthorizationDecision, Actor | None]:
        """
        Authorize BLOCK and, when allowed, publish the blocked flag.

        The flag lives in the index snapshot only. Persist it to the actor
        store before the next loader-backed refresh, which rebuilds from the
        store.

        Raises:
            InvalidActionContextError: If the target is already blocked.
        """
        return self._set_blocked(observer, target, Action.BLOCK, reason)

    def unblock(
        self,
        observer: Actor,
        target: Actor,
        reason: str = "",
    ) -> tuple[AuthorizationDecision, Actor | None]:
        """
        Authorize UNBLOCK and, when allowed, clear the blocked flag.

        Raises:
            InvalidActionContextError: If the target is not blocked.
        """
        return self._set_blocked(observer, target, Action.UNBLOCK, reason)

    def _set_blocked(
        self,
        observer: Actor,
        target: Actor,
        action: Action,
        reason: str,
    ) -> tuple[AuthorizationDecision, Actor | None]:
        blocking = action == Action.BLOCK
        decision = self.authorizer.authorize(
            observer, action, target, ActionContext(reason=reason)
        )
        if not decision.allowed:
            return decision, None

        # Denied callers never learn the target's state.
        if self.index.require(target.id).is_blocked == blocking:
            raise InvalidActionContextError(
                "User is already blocked" if blocking else "User is not blocked"
            )

        updated = self.index.set_blocked(target.id, blocking)
        self.log.info(
            "hierarchy_guard.engine.blocked" if blocking
            else "hierarchy_guard.engine.unblocked",
            observer=observer.id,
            target=target.id,
            index_version=self.index.version,
        )
        return decision, updated

    # ── Query surface ───────────────────────────────────────────

    def list_members(
        self,
        observer: Actor,
        candidates: Iterable[Actor] | None = None,
        query: MemberQuery | None = None,
    ) -> tuple[AuthorizationDecision, MemberPage | None]:
        decision = self.authorizer.authorize(observer, Action.LIST_MEMBERS)
        if not decision.allowed:
            return decision, None
        return decision, self.adapter.list_members(observer, candidates, query)

    def search_members(
        self,
        observer: Actor,
        term: str,
        candidates: Iterable[Actor] | None = None,
        query: MemberQuery | None = None,
    ) -> tuple[AuthorizationDecision, MemberPage | None]:
        decision = self.authorizer.authorize(observer, Action.LIST_MEMBERS)
        if not decision.allowed:
            return decision, None
        return decision, self.adapter.search_members(observer, term, candidates, query)

    def blocked_members(
        self,
        observer: Actor,
        candidates: Iterable[Actor] | None = None,
        query: MemberQuery | None = None,
    ) -> tuple[AuthorizationDecision, MemberPage | None]:
        """Blocked members the observer can see, for unblock review."""
        query = (query or MemberQuery()).model_copy(update={"blocked": True})
        return self.list_members(observer, candidates, query)

    def member_tree(
        self,
        observer: Actor,
    ) -> tuple[AuthorizationDecision, list[MemberTreeNode] | None]:
        decision = self.authorizer.authorize(observer, Action.LIST_MEMBERS)
        if not decision.allowed:
            return decision, None
        return decision, self.adapter.member_tree(observer)

    def member_stats(
        self,
        observer: Actor,
        candidates: Iterable[Actor] | None = None,
    ) -> tuple[AuthorizationDecision, HierarchyStats | None]:
        decision = self.authorizer.authorize(observer, Action.LIST_MEMBERS)
        if not decision.allowed:
            return decision, None
        return decision, self.adapter.member_stats(observer, candidates)

    # ── Audit ───────────────────────────────────────────────────

    def read_audit_log(
        self,
        observer: Actor,
        actor_id: str | None = None,
        action: AuditAction | None = None,
        outcome: AuditOutcome | None = None,
        limit: int | None = 100,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> tuple[AuthorizationDecision, list[AuditEntry]]:
        """Administrator-only read of the audit log, itself gated and audited."""
        decision = self._authorize_audit_read(
            observer, actor_id=actor_id, action=action, outcome=outcome,
            since=since, until=until,
        )
        if not decision.allowed:
            return decision, []
        return decision, self.recorder.entries(
            actor_id=actor_id, action=action, outcome=outcome,
            limit=limit, since=since, until=until,
        )

    def audit_log_page(
        self,
        observer: Actor,
        query: AuditLogQuery | None = None,
    ) -> tuple[AuthorizationDecision, AuditLogPage | None]:
        """Newest-first page of the audit log."""
        query = query or AuditLogQuery()
        decision = self._authorize_audit_read(
            observer, actor_id=query.actor_id, action=query.action,
            outcome=query.outcome, since=query.since, until=query.until,
        )
        if not decision.allowed:
            return decision, None
        return decision, self.recorder.page(query)

    def audit_statistics(
        self,
        observer: Actor,
        actor_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> tuple[AuthorizationDecision, AuditStatistics | None]:
        decision = self._authorize_audit_read(
            observer, actor_id=actor_id, since=since, until=until, surface="statistics"
        )
        if not decision.allowed:
            return decision, None
        return decision, self.recorder.statistics(actor_id=actor_id, since=since, until=until)

    def _authorize_audit_read(
        self,
        observer: Actor,
        surface: str = "log",
        **filters: Any,
    ) -> AuthorizationDecision:
        metadata: dict[str, Any] = {"surface": surface}
        for key, value in filters.items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, enum.Enum):
                value = value.value
            metadata[key] = value
        return self.authorizer.authorize(
            observer, Action.AUDIT_LOG_READ, context=ActionContext(metadata=metadata)
        )

    # ── Lifecycle ───────────────────────────────────────────────

    def refresh(self, actors: Iterable[Actor] | None = None) -> int:
        """Rebuild the index; returns the new snapshot version."""
        snapshot = self.index.refresh(actors)
        self.log.info(
            "hierarchy_guard.engine.refreshed",
            index_version=snapshot.version,
            actors=len(snapshot.actors),
        )
        return snapshot.version

    def register(self, *actors: Actor) -> int:
        snapshot = self.index.register(*actors)
        self.log.info(
            "hierarchy_guard.engine.registered",
            actor_ids=[a.id for a in actors],
            index_version=snapshot.version,
        )
        return snapshot.version

    def close(self) -> None:
        self.index.close()
        if isinstance(self.sink, AuditLedgerService):
            self.sink.close()
        self.log.info("hierarchy_guard.engine.closed")


def build_engine(
    actors: Iterable[Actor] | None = None,
    loader: ActorLoader | None = None,
    settings: GuardSettings = default_settings,
    sink: AuditSink | None = None,
    balance_of: BalanceProvider = default_balance,
) -> GuardEngine:
    """
    Assemble a GuardEngine from settings.

    Args:
        actors: Initial actor set; defaults to ``loader()``.
        loader: Store callback used for the initial build and later refreshes.
        settings: Sink, transfer limit and paging configuration.
        sink: Explicit audit sink, overriding ``settings.audit_sink``.
        balance_of: Balance lookup for transfer checks.
    """
    log = structlog.get_logger()

    if sink is None:
        if settings.uses_database_sink:
            ledger = AuditLedgerService(settings.audit_database_url)
            ledger.initialize()
            sink = ledger
        else:
            sink = InMemoryAuditSink()

    index = HierarchyIndex(actors=actors, loader=loader)
    recorder = AuditRecorder(
        sink=sink,
        audited_allowances=settings.audited_allowances,
        record_listing_access=settings.audit_listing_access,
    )
    resolver = VisibilityResolver(index)
    authorizer = ActionAuthorizer(
        index,
        recorder=recorder,
        resolver=resolver,
        balance_of=balance_of,
        max_transfer_amount=settings.max_transfer_amount,
    )
    adapter = QuerySurfaceAdapter(
        resolver,
        recorder=recorder,
        default_page_size=settings.default_page_size,
        max_page_size=settings.max_page_size,
    )

    log.info(
        "hierarchy_guard.engine.ready",
        actors=len(index),
        index_version=index.version,
        audit_sink=type(sink).__name__,
    )
    return GuardEngine(index, recorder, authorizer, adapter, sink=sink)
