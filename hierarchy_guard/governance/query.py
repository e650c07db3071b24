"""
Query Surface Adapter — Visibility-safe listing, search, pagination and sorting.

Data-access layers usually pre-narrow member queries by tier or organization.
That narrowing is an optimization, not a trust boundary: this adapter always
re-applies VisibilityResolver.filter_visible() to whatever rows it is handed,
and computes totals and page counts on the post-filter set, so a page total
never implies rows the observer could not retrieve.
"""

from __future__ import annotations

import enum
import math
from decimal import Decimal
from typing import Any, Iterable

from pydantic import BaseModel, Field

from hierarchy_guard.governance.permissions import InvalidActionContextError
from hierarchy_guard.governance.visibility import VisibilityResolver
from hierarchy_guard.identity.schema import Actor, Currency, Tier
from hierarchy_guard.ledger.recorder import AuditRecorder


class SortField(str, enum.Enum):
    CREATED_AT = "created_at"
    EMAIL = "email"
    DISPLAY_NAME = "display_name"
    TIER = "tier"


class MemberQuery(BaseModel):
    """Filters, ordering and paging requested by the caller."""

    tier: Tier | None = None
    blocked: bool | None = Field(
        default=None, description="Only blocked (True) or only active (False) members"
    )
    search: str | None = Field(
        default=None, description="Case-insensitive match on email, display name or id"
    )
    sort_by: SortField = SortField.CREATED_AT
    descending: bool = True
    page: int = Field(default=1, ge=1)
    limit: int | None = Field(default=None, ge=1)


class MemberPage(BaseModel):
    """One page of visible members."""

    members: list[dict[str, Any]]
    actors: list[Actor]
    total: int
    page: int
    limit: int
    pages: int


class MemberTreeNode(BaseModel):
    id: str
    tier: Tier
    display_name: str = ""
    is_blocked: bool = False
    children: list[MemberTreeNode] = Field(default_factory=list)


MemberTreeNode.model_rebuild()


class HierarchyStats(BaseModel):
    tier_counts: dict[Tier, int]
    total_members: int
    blocked_members: int
    total_points: Decimal
    total_credits: Decimal


def project_member(viewer: Actor, actor: Actor) -> dict[str, Any]:
    """
    Fields of ``actor`` that ``viewer``'s tier may read.

    Administrators see everything; lower tiers see progressively less; every
    actor sees its own balances.
    """
    data: dict[str, Any] = {
        "id": actor.id,
        "email": actor.email,
        "display_name": actor.display_name,
        "tier": actor.tier.value,
        "created_at": actor.created_at.isoformat(),
    }

    if viewer.tier in (Tier.ADMINISTRATOR, Tier.AGENCY):
        data.update(
            is_blocked=actor.is_blocked,
            agency_ref=actor.agency_ref,
            organization_ref=actor.organization_ref,
        )
    elif viewer.tier == Tier.ORGANIZATION:
        data.update(is_blocked=actor.is_blocked, organization_ref=actor.organization_ref)
    elif viewer.tier == Tier.ADMIN:
        data.update(is_blocked=actor.is_blocked)

    if viewer.tier == Tier.ADMINISTRATOR or viewer.id == actor.id:
        data["balances"] = {c.value: str(actor.balance(c)) for c in Currency}
    return data


def _matches(actor: Actor, query: MemberQuery) -> bool:
    if query.tier is not None and actor.tier != query.tier:
        return False
    if query.blocked is not None and actor.is_blocked != query.blocked:
        return False
    if query.search:
        needle = query.search.casefold()
        return any(
            needle in field.casefold()
            for field in (actor.email, actor.display_name, actor.id)
        )
    return True


def _sort_key(field: SortField):
    if field == SortField.TIER:
        return lambda a: a.tier.rank
    if field == SortField.EMAIL:
        return lambda a: a.email.casefold()
    if field == SortField.DISPLAY_NAME:
        return lambda a: a.display_name.casefold()
    return lambda a: a.created_at


class QuerySurfaceAdapter:
    """Applies visibility as the authoritative filter for result sets."""

    def __init__(
        self,
        resolver: VisibilityResolver,
        recorder: AuditRecorder | None = None,
        default_page_size: int = 20,
        max_page_size: int = 100,
    ) -> None:
        self.resolver = resolver
        self.recorder = recorder
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    @property
    def index(self):
        return self.resolver.index

    def visible_members(
        self,
        observer: Actor,
        candidates: Iterable[Actor] | None = None,
        query: MemberQuery | None = None,
    ) -> list[Actor]:
        """Every visible candidate matching ``query``, sorted, unpaginated."""
        query = query or MemberQuery()
        if candidates is None:
            candidates = self.index.actors()
        visible = self.resolver.filter_visible(observer, candidates)
        matched = [a for a in visible if _matches(a, query)]
        # list.sort is stable, including with reverse=True
        matched.sort(key=_sort_key(query.sort_by), reverse=query.descending)
        return matched

    def list_members(
        self,
        observer: Actor,
        candidates: Iterable[Actor] | None = None,
        query: MemberQuery | None = None,
    ) -> MemberPage:
        """
        Return one page of members visible to ``observer``.

        Args:
            observer: The requesting actor.
            candidates: Rows from the data layer, possibly pre-narrowed.
                Defaults to every indexed actor.
            query: Tier filter, search term, sort order and paging.
        """
        query = query or MemberQuery()
        limit = min(query.limit or self.default_page_size, self.max_page_size)

        matched = self.visible_members(observer, candidates, query)
        total = len(matched)
        start = (query.page - 1) * limit
        page_items = matched[start:start + limit]

        viewer = self.index.require(observer.id)
        self._record(observer, "list", query, total)
        return MemberPage(
            members=[project_member(viewer, a) for a in page_items],
            actors=page_items,
            total=total,
            page=query.page,
            limit=limit,
            pages=math.ceil(total / limit) if total else 0,
        )

    def search_members(
        self,
        observer: Actor,
        term: str,
        candidates: Iterable[Actor] | None = None,
        query: MemberQuery | None = None,
    ) -> MemberPage:
        """Keyword search across tiers; visibility is applied to every hit."""
        if not term or not term.strip():
            raise InvalidActionContextError("Search term is required")
        query = (query or MemberQuery()).model_copy(update={"search": term.strip()})
        return self.list_members(observer, candidates, query)

    def member_tree(self, observer: Actor) -> list[MemberTreeNode]:
        """
        Visible members arranged by containment.

        A visible actor hangs under its nearest visible ancestor; actors with
        no visible ancestor become roots (an Admin's Generals, for instance).
        """
        visible = self.resolver.filter_visible(observer, self.index.actors())
        visible_ids = {a.id for a in visible}
        nodes = {
            a.id: MemberTreeNode(
                id=a.id, tier=a.tier, display_name=a.display_name, is_blocked=a.is_blocked
            )
            for a in visible
        }

        roots: list[MemberTreeNode] = []
        for actor in visible:
            parent_id = next(
                (p for p in self.index.ancestors_of(actor.id) if p in visible_ids), None
            )
            if parent_id is None:
                roots.append(nodes[actor.id])
            else:
                nodes[parent_id].children.append(nodes[actor.id])

        self._record(observer, "tree", None, len(visible))
        return roots

    def member_stats(
        self,
        observer: Actor,
        candidates: Iterable[Actor] | None = None,
    ) -> HierarchyStats:
        """Aggregates over the visible set only."""
        visible = self.visible_members(observer, candidates)
        tier_counts = {tier: 0 for tier in Tier}
        for actor in visible:
            tier_counts[actor.tier] += 1

        self._record(observer, "stats", None, len(visible))
        return HierarchyStats(
            tier_counts=tier_counts,
            total_members=len(visible),
            blocked_members=sum(1 for a in visible if a.is_blocked),
            total_points=sum((a.balance(Currency.POINTS) for a in visible), Decimal("0")),
            total_credits=sum((a.balance(Currency.CREDITS) for a in visible), Decimal("0")),
        )

    def _record(
        self,
        observer: Actor,
        surface: str,
        query: MemberQuery | None,
        total: int,
    ) -> None:
        if self.recorder is None:
            return
        detail: dict[str, Any] = {"total": total}
        if query is not None:
            detail.update(page=query.page, sort_by=query.sort_by.value)
            if query.tier is not None:
                detail["tier"] = query.tier.value
            if query.blocked is not None:
                detail["blocked"] = query.blocked
            if query.search:
                detail["search"] = query.search
        self.recorder.record_listing(observer.id, surface, detail)
