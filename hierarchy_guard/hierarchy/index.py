"""
Hierarchy Index — Read-mostly containment graph with atomic snapshot swap.

Maps every actor to its ancestors and descendants so that scope membership is a
set lookup instead of a recursive query. The index is an explicitly constructed
dependency with an explicit lifecycle:

    index = HierarchyIndex.build(actors)      # or HierarchyIndex(loader=fetch_all)
    index.scope_of(observer)
    index.refresh()                           # rebuild off to the side, then swap
    index.close()

Readers grab the current snapshot reference once per operation and never block
on a rebuild. Writers (refresh / register / set_blocked) serialize on a lock,
build a complete new snapshot, and only then publish it. A failed rebuild keeps
serving the last-known-good snapshot.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, NoReturn

from hierarchy_guard.identity.schema import Actor, Scope, ScopeKind, Tier

logger = logging.getLogger(__name__)

ActorLoader = Callable[[], Iterable[Actor]]


class MalformedHierarchyError(Exception):
    """Raised when containment data is inconsistent with the tier model."""
    pass


class UnknownActorError(MalformedHierarchyError):
    """Raised when an actor id is not present in the index."""

    def __init__(self, actor_id: str) -> None:
        super().__init__(f"Unknown actor: {actor_id}")
        self.actor_id = actor_id


class HierarchyRefreshError(Exception):
    """Raised when a rebuild fails; the previous snapshot stays live."""
    pass


class IndexClosedError(Exception):
    """Raised when the index is used after close()."""
    pass


@dataclass(frozen=True)
class HierarchySnapshot:
    """An immutable, fully built view of the containment graph."""

    actors: dict[str, Actor]
    agency_members: dict[str, frozenset[str]]
    org_members: dict[str, frozenset[str]]
    ancestors: dict[str, tuple[str, ...]]
    children: dict[str, tuple[str, ...]]
    version: int
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def require(self, actor_id: str) -> Actor:
        actor = self.actors.get(actor_id)
        if actor is None:
            raise UnknownActorError(actor_id)
        return actor


def build_snapshot(actors: Iterable[Actor], version: int = 1) -> HierarchySnapshot:
    """
    Validate containment and build the ancestor / descendant maps.

    Raises:
        MalformedHierarchyError: duplicate ids, a missing ancestor, or an
            ancestor reference that points at an actor of the wrong tier.
    """
    by_id: dict[str, Actor] = {}
    for actor in actors:
        if actor.id in by_id:
            raise MalformedHierarchyError(f"Duplicate actor id: {actor.id}")
        by_id[actor.id] = actor

    agency_members: dict[str, set[str]] = {}
    org_members: dict[str, set[str]] = {}
    ancestors: dict[str, tuple[str, ...]] = {}
    children: dict[str, list[str]] = {}

    def _ancestor(ref: str | None, expected: Tier, owner: Actor, label: str) -> Actor:
        if ref is None:
            raise MalformedHierarchyError(
                f"{owner.tier.value} {owner.id} has no {label}"
            )
        parent = by_id.get(ref)
        if parent is None:
            raise MalformedHierarchyError(
                f"{owner.tier.value} {owner.id} references missing {label} {ref}"
            )
        if parent.tier != expected:
            raise MalformedHierarchyError(
                f"{owner.tier.value} {owner.id} {label} {ref} is a "
                f"{parent.tier.value}, expected {expected.value}"
            )
        return parent

    for actor in by_id.values():
        if actor.tier == Tier.ADMINISTRATOR:
            if actor.agency_ref is not None or actor.organization_ref is not None:
                raise MalformedHierarchyError(
                    f"administrator {actor.id} may not belong to an agency or organization"
                )
            ancestors[actor.id] = ()

        elif actor.tier == Tier.AGENCY:
            if actor.agency_ref not in (None, actor.id) or actor.organization_ref is not None:
                raise MalformedHierarchyError(
                    f"agency {actor.id} may only reference itself"
                )
            agency_members.setdefault(actor.id, set())
            ancestors[actor.id] = ()

        elif actor.tier == Tier.ORGANIZATION:
            if actor.organization_ref is not None:
                raise MalformedHierarchyError(
                    f"organization {actor.id} may not reference an organization"
                )
            agency = _ancestor(actor.agency_ref, Tier.AGENCY, actor, "agency")
            agency_members.setdefault(agency.id, set()).add(actor.id)
            org_members.setdefault(actor.id, set())
            children.setdefault(agency.id, []).append(actor.id)
            ancestors[actor.id] = (agency.id,)

        else:  # Admin / General
            org = _ancestor(actor.organization_ref, Tier.ORGANIZATION, actor, "organization")
            if actor.agency_ref is not None and actor.agency_ref != org.agency_ref:
                raise MalformedHierarchyError(
                    f"{actor.tier.value} {actor.id} agency {actor.agency_ref} does not "
                    f"match its organization's agency {org.agency_ref}"
                )
            org_members.setdefault(org.id, set()).add(actor.id)
            agency_members.setdefault(org.agency_ref, set()).add(actor.id)
            children.setdefault(org.id, []).append(actor.id)
            ancestors[actor.id] = (org.id, org.agency_ref)

    return HierarchySnapshot(
        actors=by_id,
        agency_members={k: frozenset(v) for k, v in agency_members.items()},
        org_members={k: frozenset(v) for k, v in org_members.items()},
        ancestors=ancestors,
        children={k: tuple(v) for k, v in children.items()},
        version=version,
    )


class HierarchyIndex:
    """
    Containment index answering "what is A's scope?" and "is B inside it?".

    Reads are lock-free against an immutable snapshot. Rebuilds happen under a
    writer lock and are published with a single reference assignment.
    """

    def __init__(
        self,
        actors: Iterable[Actor] | None = None,
        loader: ActorLoader | None = None,
    ) -> None:
        """
        Initialize and build the first snapshot.

        Args:
            actors: Initial actor set. If omitted, ``loader`` is called.
            loader: Callable returning the current actor set from the store;
                used by refresh() when no explicit actors are given.

        Raises:
            MalformedHierarchyError: If the initial data is inconsistent.
        """
        self._loader = loader
        self._write_lock = threading.Lock()
        self._closed = False
        self.last_refresh_error: Exception | None = None

        if actors is None:
            actors = loader() if loader is not None else ()
        self._snapshot: HierarchySnapshot | None = build_snapshot(actors)
        logger.info(
            "Hierarchy index built: actors=%d version=%d",
            len(self._snapshot.actors), self._snapshot.version,
        )

    @classmethod
    def build(
        cls,
        actors: Iterable[Actor],
        loader: ActorLoader | None = None,
    ) -> HierarchyIndex:
        """Construct an index from an explicit actor set."""
        return cls(actors=list(actors), loader=loader)

    # ── Snapshot access ─────────────────────────────────────────

    @property
    def snapshot(self) -> HierarchySnapshot:
        snap = self._snapshot
        if self._closed or snap is None:
            raise IndexClosedError("Hierarchy index is closed")
        return snap

    @property
    def version(self) -> int:
        return self.snapshot.version

    def __len__(self) -> int:
        return len(self.snapshot.actors)

    def __contains__(self, actor_id: object) -> bool:
        return actor_id in self.snapshot.actors

    def get(self, actor_id: str) -> Actor | None:
        return self.snapshot.actors.get(actor_id)

    def require(self, actor_id: str) -> Actor:
        """Return the indexed actor or raise UnknownActorError."""
        return self.snapshot.require(actor_id)

    def require_consistent(self, actor: Actor) -> Actor:
        """
        Check that a caller-supplied actor matches the indexed record.

        Callers hand in Actor objects they fetched themselves; a record whose
        tier or containment disagrees with the index is an integrity bug.
        """
        indexed = self.require(actor.id)
        if (
            indexed.tier != actor.tier
            or indexed.agency_ref != actor.agency_ref
            or indexed.organization_ref != actor.organization_ref
        ):
            raise MalformedHierarchyError(
                f"Actor {actor.id} disagrees with the indexed record "
                f"(tier {actor.tier.value} vs {indexed.tier.value})"
            )
        return indexed

    def actors(self) -> list[Actor]:
        return list(self.snapshot.actors.values())

    def ancestors_of(self, actor_id: str) -> tuple[str, ...]:
        """Ancestor ids, nearest first."""
        snap = self.snapshot
        snap.require(actor_id)
        return snap.ancestors[actor_id]

    def descendants_of(self, actor_id: str) -> frozenset[str]:
        snap = self.snapshot
        actor = snap.require(actor_id)
        if actor.tier == Tier.ADMINISTRATOR:
            return frozenset(k for k in snap.actors if k != actor_id)
        if actor.tier == Tier.AGENCY:
            return snap.agency_members.get(actor_id, frozenset())
        if actor.tier == Tier.ORGANIZATION:
            return snap.org_members.get(actor_id, frozenset())
        return frozenset()

    def children_of(self, actor_id: str) -> tuple[str, ...]:
        """Direct containment children, in registration order."""
        snap = self.snapshot
        snap.require(actor_id)
        return snap.children.get(actor_id, ())

    # ── Scope ───────────────────────────────────────────────────

    def scope_of(self, observer: Actor) -> Scope:
        """
        Return the observer's visibility scope.

        - Administrator → GLOBAL
        - Agency        → AGENCY_SUBTREE rooted at itself
        - Organization  → ORG_SUBTREE rooted at itself
        - Admin         → ORG_SUBTREE rooted at its organization, Generals only
        - General       → SELF
        """
        indexed = self.require(observer.id)
        tier = indexed.tier

        if tier == Tier.ADMINISTRATOR:
            return Scope(kind=ScopeKind.GLOBAL, observer_id=indexed.id)
        if tier == Tier.AGENCY:
            return Scope(
                kind=ScopeKind.AGENCY_SUBTREE, observer_id=indexed.id, root_id=indexed.id
            )
        if tier == Tier.ORGANIZATION:
            return Scope(
                kind=ScopeKind.ORG_SUBTREE, observer_id=indexed.id, root_id=indexed.id
            )
        if tier == Tier.ADMIN:
            return Scope(
                kind=ScopeKind.ORG_SUBTREE,
                observer_id=indexed.id,
                root_id=indexed.organization_ref,
                tier_filter=frozenset({Tier.GENERAL}),
            )
        return Scope(kind=ScopeKind.SELF, observer_id=indexed.id, root_id=indexed.id)

    def is_within_scope(self, scope: Scope, candidate_id: str) -> bool:
        """Membership test against the precomputed descendant maps."""
        snap = self.snapshot
        candidate = snap.require(candidate_id)

        if scope.tier_filter is not None and candidate.tier not in scope.tier_filter:
            return False

        if scope.kind == ScopeKind.GLOBAL:
            return True
        if scope.kind == ScopeKind.SELF:
            return candidate_id == scope.observer_id
        if candidate_id == scope.root_id:
            return True
        if scope.kind == ScopeKind.AGENCY_SUBTREE:
            return candidate_id in snap.agency_members.get(scope.root_id, frozenset())
        return candidate_id in snap.org_members.get(scope.root_id, frozenset())

    # ── Lifecycle ───────────────────────────────────────────────

    def refresh(self, actors: Iterable[Actor] | None = None) -> HierarchySnapshot:
        """
        Rebuild the index and atomically publish the new snapshot.

        Args:
            actors: Explicit actor set. Defaults to the loader, or to the
                currently indexed actors when no loader was configured.

        Returns:
            The newly published snapshot.

        Raises:
            HierarchyRefreshError: If loading or validation fails. The previous
                snapshot remains in service.
        """
        with self._write_lock:
            current = self.snapshot
            try:
                if actors is None:
                    actors = self._loader() if self._loader else current.actors.values()
            except Exception as exc:
                self._refresh_failed(current, exc)
            return self._rebuild_locked(current, actors)

    def register(self, *actors: Actor) -> HierarchySnapshot:
        """Add newly provisioned actors and rebuild from the current snapshot."""
        with self._write_lock:
            current = self.snapshot
            for actor in actors:
                if actor.id in current.actors:
                    raise MalformedHierarchyError(f"Actor already registered: {actor.id}")
            return self._rebuild_locked(
                current, list(current.actors.values()) + list(actors)
            )

    def _rebuild_locked(
        self,
        current: HierarchySnapshot,
        actors: Iterable[Actor],
    ) -> HierarchySnapshot:
        # Caller holds _write_lock and read ``current`` under it.
        try:
            new_snapshot = build_snapshot(actors, version=current.version + 1)
        except Exception as exc:
            self._refresh_failed(current, exc)

        self._snapshot = new_snapshot
        self.last_refresh_error = None
        logger.info(
            "Hierarchy index refreshed: actors=%d version=%d",
            len(new_snapshot.actors), new_snapshot.version,
        )
        return new_snapshot

    def _refresh_failed(self, current: HierarchySnapshot, exc: Exception) -> NoReturn:
        self.last_refresh_error = exc
        logger.critical(
            "Hierarchy refresh failed, keeping version %d: %s",
            current.version, exc,
        )
        raise HierarchyRefreshError(
            f"Refresh failed; still serving version {current.version}: {exc}"
        ) from exc

    def set_blocked(self, actor_id: str, blocked: bool) -> Actor:
        """
        Publish a snapshot with ``actor_id``'s blocked flag set.

        Containment is untouched, so the structural maps are reused.
        """
        with self._write_lock:
            current = self.snapshot
            updated = current.require(actor_id).model_copy(update={"is_blocked": blocked})
            actors = dict(current.actors)
            actors[actor_id] = updated
            self._snapshot = replace(
                current,
                actors=actors,
                version=current.version + 1,
                built_at=datetime.now(timezone.utc),
            )
            return updated

    def close(self) -> None:
        """Release the snapshot. Further use raises IndexClosedError."""
        with self._write_lock:
            self._closed = True
            self._snapshot = None
        logger.info("Hierarchy index closed")
