"""
Shared org chart for the engine tests.

    root, root-2                      Administrators
    agency-a                          Agency
      org-a1                          Organization
        admin-a1, admin-a1b           Admins
        gen-a1, gen-a1b               Generals
      org-a2
        gen-a2
    agency-b
      org-b1
        admin-b1
        gen-b1
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from hierarchy_guard.governance.permissions import ActionAuthorizer
from hierarchy_guard.governance.query import QuerySurfaceAdapter
from hierarchy_guard.governance.visibility import VisibilityResolver
from hierarchy_guard.hierarchy.index import HierarchyIndex
from hierarchy_guard.identity.schema import Actor, Currency, Tier
from hierarchy_guard.ledger.recorder import AuditRecorder, InMemoryAuditSink

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)

ORG_CHART = [
    # (id, tier, agency_ref, organization_ref)
    ("root", Tier.ADMINISTRATOR, None, None),
    ("root-2", Tier.ADMINISTRATOR, None, None),
    ("agency-a", Tier.AGENCY, "agency-a", None),
    ("agency-b", Tier.AGENCY, None, None),
    ("org-a1", Tier.ORGANIZATION, "agency-a", None),
    ("org-a2", Tier.ORGANIZATION, "agency-a", None),
    ("org-b1", Tier.ORGANIZATION, "agency-b", None),
    ("admin-a1", Tier.ADMIN, "agency-a", "org-a1"),
    ("admin-a1b", Tier.ADMIN, "agency-a", "org-a1"),
    ("gen-a1", Tier.GENERAL, "agency-a", "org-a1"),
    ("gen-a1b", Tier.GENERAL, None, "org-a1"),
    ("gen-a2", Tier.GENERAL, "agency-a", "org-a2"),
    ("admin-b1", Tier.ADMIN, "agency-b", "org-b1"),
    ("gen-b1", Tier.GENERAL, "agency-b", "org-b1"),
]


def make_actors() -> dict[str, Actor]:
    """Fresh actors keyed by id; later rows are created later."""
    actors = {}
    for position, (actor_id, tier, agency_ref, org_ref) in enumerate(ORG_CHART):
        actors[actor_id] = Actor(
            id=actor_id,
            tier=tier,
            agency_ref=agency_ref,
            organization_ref=org_ref,
            email=f"{actor_id}@example.com",
            display_name=actor_id.replace("-", " ").title(),
            created_at=EPOCH + timedelta(days=position),
            balances={Currency.POINTS: Decimal("1000"), Currency.CREDITS: Decimal("500")},
        )
    return actors


@pytest.fixture
def actors() -> dict[str, Actor]:
    return make_actors()


@pytest.fixture
def index(actors) -> HierarchyIndex:
    return HierarchyIndex.build(actors.values())


@pytest.fixture
def resolver(index) -> VisibilityResolver:
    return VisibilityResolver(index)


@pytest.fixture
def sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def recorder(sink) -> AuditRecorder:
    return AuditRecorder(sink=sink)


@pytest.fixture
def authorizer(index, recorder, resolver) -> ActionAuthorizer:
    return ActionAuthorizer(index, recorder=recorder, resolver=resolver)


@pytest.fixture
def adapter(resolver, recorder) -> QuerySurfaceAdapter:
    return QuerySurfaceAdapter(resolver, recorder=recorder)
