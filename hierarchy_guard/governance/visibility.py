"""
Visibility Resolver — the single source of truth for "can observer see candidate".

Consumed by listings, search, tree views, and as the precondition of every
member-directed action in the authorizer. Rules, evaluated in order:

1. Administrator sees everyone.
2. Everyone sees themselves.
3. A SELF-scoped observer (General) sees nobody else.
4. No lateral or upward visibility: a candidate of equal or higher tier is
   never visible.
5. Otherwise the candidate is visible iff it lies inside the observer's scope.

Blocking never removes visibility; blocked actors are returned with
``is_blocked`` set so authorized observers can review and unblock them.
"""

from __future__ import annotations

from typing import Iterable

from hierarchy_guard.hierarchy.index import HierarchyIndex
from hierarchy_guard.identity.schema import (
    Actor,
    ScopeKind,
    Tier,
    VisibilityDecision,
    VisibilityReason,
)


class VisibilityResolver:
    """Stateless resolver over a HierarchyIndex."""

    def __init__(self, index: HierarchyIndex) -> None:
        self.index = index

    def can_see(self, observer: Actor, candidate: Actor) -> VisibilityDecision:
        """
        Decide whether ``observer`` may see ``candidate``.

        Raises:
            UnknownActorError: If either actor is not indexed.
            MalformedHierarchyError: If either actor disagrees with the index.
        """
        observer = self.index.require_consistent(observer)
        candidate = self.index.require_consistent(candidate)
        return self._decide(observer, candidate)

    def filter_visible(
        self,
        observer: Actor,
        candidates: Iterable[Actor],
    ) -> list[Actor]:
        """
        Keep only the candidates ``observer`` may see, preserving input order.

        The returned records are the indexed ones, so ``is_blocked`` reflects
        the latest published snapshot.
        """
        observer = self.index.require_consistent(observer)
        visible = []
        for candidate in candidates:
            indexed = self.index.require_consistent(candidate)
            if self._decide(observer, indexed).visible:
                visible.append(indexed)
        return visible

    def visible_ids(self, observer: Actor) -> list[str]:
        """Every indexed actor id the observer may see, in index order."""
        return [a.id for a in self.filter_visible(observer, self.index.actors())]

    def _decide(self, observer: Actor, candidate: Actor) -> VisibilityDecision:
        def decision(visible: bool, reason: VisibilityReason) -> VisibilityDecision:
            return VisibilityDecision(
                visible=visible,
                reason=reason,
                observer_id=observer.id,
                candidate_id=candidate.id,
            )

        if observer.tier == Tier.ADMINISTRATOR:
            return decision(True, VisibilityReason.ADMIN_GLOBAL)

        if candidate.id == observer.id:
            return decision(True, VisibilityReason.SELF)

        scope = self.index.scope_of(observer)
        if scope.kind == ScopeKind.SELF:
            return decision(False, VisibilityReason.SCOPE_SELF_ONLY)

        if not observer.tier.dominates(candidate.tier):
            return decision(False, VisibilityReason.NO_LATERAL_OR_UPWARD_VISIBILITY)

        if self.index.is_within_scope(scope, candidate.id):
            return decision(True, VisibilityReason.IN_SUBTREE)
        return decision(False, VisibilityReason.OUT_OF_SUBTREE)
