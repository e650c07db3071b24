"""
Audit Ledger Service — Append-only, hash-chained store for authorization decisions.

Implements the AuditSink protocol on top of SQLAlchemy:
- Append entries with automatic hash chain computation
- Verify the integrity of the full chain
- Query entries by actor, audit action, outcome and time range

There is no update and no delete.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from hierarchy_guard.identity.schema import (
    Action,
    AuditAction,
    AuditEntry,
    AuditOutcome,
    DenialCode,
    as_utc,
    utcnow,
)
from hierarchy_guard.ledger.models import AuditEntryDB, Base

logger = logging.getLogger(__name__)


GENESIS_HASH = "0" * 64  # The "previous hash" for the first entry in the chain
SYSTEM_ACTOR_ID = "system"


class LedgerIntegrityError(Exception):
    """Raised when the hash chain cannot be extended or verified."""
    pass


def _json_safe(detail: dict[str, Any]) -> dict[str, Any]:
    # Decimals, datetimes and enums become strings, exactly as the JSON column
    # will hand them back, so the stored hash recomputes identically.
    return json.loads(json.dumps(detail, default=str))


class AuditLedgerService:
    """
    SQL-backed audit sink.

    Usage:
        service = AuditLedgerService(database_url)
        service.initialize()  # Create tables, seed genesis entry

        recorder = AuditRecorder(sink=service)
    """

    def __init__(self, database_url: str) -> None:
        """
        Initialize the ledger service.

        Args:
            database_url: SQLAlchemy connection string (sync driver).
        """
        self.engine = create_engine(database_url, echo=False)
        self.SessionLocal = sessionmaker(bind=self.engine)
        self._append_lock = threading.Lock()

    def initialize(self) -> None:
        """Create the schema and seed the genesis entry if missing."""
        Base.metadata.create_all(self.engine)

        with self.SessionLocal() as session:
            existing = session.execute(
                select(AuditEntryDB).where(AuditEntryDB.sequence_number == 0)
            ).scalar_one_or_none()

            if existing is None:
                genesis = self._create_genesis_entry()
                session.add(genesis)
                session.commit()
                logger.info("Audit genesis entry created: hash=%s", genesis.entry_hash[:16])

    def close(self) -> None:
        self.engine.dispose()

    def _create_genesis_entry(self) -> AuditEntryDB:
        genesis = AuditEntry(
            sequence_number=0,
            actor_id=SYSTEM_ACTOR_ID,
            action=AuditAction.LEDGER_GENESIS,
            outcome=AuditOutcome.ALLOWED,
            detail={"message": "Genesis of the authorization audit ledger"},
        )
        return self._to_row(genesis, GENESIS_HASH, genesis.compute_hash(GENESIS_HASH))

    # ── AuditSink ───────────────────────────────────────────────

    def append(self, entry: AuditEntry) -> AuditEntry:
        """
        Append an entry to the ledger. This is the ONLY write operation.

        Returns:
            The stored entry with sequence_number and entry_hash assigned.

        Raises:
            LedgerIntegrityError: If the ledger has not been initialized.
        """
        with self._append_lock, self.SessionLocal() as session:
            last_entry = session.execute(
                select(AuditEntryDB)
                .order_by(AuditEntryDB.sequence_number.desc())
                .limit(1)
            ).scalar_one_or_none()

            if last_entry is None:
                raise LedgerIntegrityError(
                    "Cannot append: no genesis entry found. Call initialize() first."
                )

            previous_hash = last_entry.entry_hash
            stored = entry.model_copy(
                update={
                    "sequence_number": last_entry.sequence_number + 1,
                    "detail": _json_safe(entry.detail),
                }
            )
            entry_hash = stored.compute_hash(previous_hash)
            stored = stored.model_copy(update={"entry_hash": entry_hash})

            session.add(self._to_row(stored, previous_hash, entry_hash))
            session.commit()

            logger.debug(
                "Audit entry appended: seq=%d action=%s hash=%s",
                stored.sequence_number, stored.action.value, entry_hash[:16],
            )
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
        """
        Authorization entries in sequence order; ``limit`` keeps the most recent.

        ``since`` and ``until`` are inclusive timestamp bounds, compared in UTC.
        """
        stmt = select(AuditEntryDB).where(AuditEntryDB.sequence_number > 0)
        if since is not None:
            stmt = stmt.where(AuditEntryDB.timestamp >= as_utc(since))
        if until is not None:
            stmt = stmt.where(AuditEntryDB.timestamp <= as_utc(until))
        if actor_id is not None:
            stmt = stmt.where(AuditEntryDB.actor_id == actor_id)
        if action is not None:
            stmt = stmt.where(AuditEntryDB.action == action.value)
        if outcome is not None:
            stmt = stmt.where(AuditEntryDB.outcome == outcome.value)

        if limit is not None:
            if limit <= 0:
                return []
            stmt = stmt.order_by(AuditEntryDB.sequence_number.desc()).limit(limit)
        else:
            stmt = stmt.order_by(AuditEntryDB.sequence_number.asc())

        with self.SessionLocal() as session:
            rows = session.execute(stmt).scalars().all()
            result = [self._to_entry(row) for row in rows]

        if limit is not None:
            result.reverse()
        return result

    def count(self) -> int:
        """Number of authorization entries, excluding genesis."""
        with self.SessionLocal() as session:
            result = session.execute(
                select(func.count())
                .select_from(AuditEntryDB)
                .where(AuditEntryDB.sequence_number > 0)
            )
            return result.scalar() or 0

    # ── Integrity ───────────────────────────────────────────────

    def verify_chain(self) -> tuple[bool, int, str]:
        """
        Walk every entry from genesis forward, recomputing each hash.

        Returns:
            Tuple of (is_valid, entries_verified, message).
        """
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AuditEntryDB).order_by(AuditEntryDB.sequence_number.asc())
            ).scalars().all()

            if not rows:
                return False, 0, "No entries found in ledger"

            first = rows[0]
            if first.sequence_number != 0:
                return False, 0, f"First entry has sequence {first.sequence_number}, expected 0"
            if first.previous_hash != GENESIS_HASH:
                return False, 0, "Genesis entry has incorrect previous_hash"

            for i, row in enumerate(rows):
                expected_hash = self._to_entry(row).compute_hash(row.previous_hash)
                if row.entry_hash != expected_hash:
                    return (
                        False, i,
                        f"Hash mismatch at sequence {row.sequence_number}: "
                        f"stored={row.entry_hash[:16]}... "
                        f"computed={expected_hash[:16]}..."
                    )

                if i > 0 and row.previous_hash != rows[i - 1].entry_hash:
                    return (
                        False, i,
                        f"Chain break at sequence {row.sequence_number}: "
                        f"previous_hash does not match prior entry's hash"
                    )

            return (
                True, len(rows),
                f"Chain verified: {len(rows)} entries, integrity intact"
            )

    # ── Queries ─────────────────────────────────────────────────

    def get_entry(self, entry_id: UUID) -> AuditEntry | None:
        """Retrieve a single entry by ID."""
        with self.SessionLocal() as session:
            row = session.execute(
                select(AuditEntryDB).where(AuditEntryDB.id == entry_id)
            ).scalar_one_or_none()
            return self._to_entry(row) if row is not None else None

    def get_latest_entries(self, limit: int = 50) -> list[AuditEntry]:
        """Most recent entries first, genesis included."""
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AuditEntryDB)
                .order_by(AuditEntryDB.sequence_number.desc())
                .limit(limit)
            ).scalars().all()
            return [self._to_entry(row) for row in rows]

    def get_entry_count(self) -> int:
        """Total rows in the ledger, genesis included."""
        with self.SessionLocal() as session:
            return session.execute(
                select(func.count()).select_from(AuditEntryDB)
            ).scalar() or 0

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _to_row(entry: AuditEntry, previous_hash: str, entry_hash: str) -> AuditEntryDB:
        return AuditEntryDB(
            id=entry.id or uuid4(),
            sequence_number=entry.sequence_number,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            timestamp=entry.timestamp or utcnow(),
            actor_id=entry.actor_id,
            action=entry.action.value,
            requested_action=entry.requested_action.value if entry.requested_action else None,
            target_id=entry.target_id,
            outcome=entry.outcome.value,
            denial_code=entry.denial_code.value if entry.denial_code else None,
            detail=entry.detail,
        )

    @staticmethod
    def _to_entry(row: AuditEntryDB) -> AuditEntry:
        return AuditEntry(
            id=row.id,
            sequence_number=row.sequence_number,
            actor_id=row.actor_id,
            action=AuditAction(row.action),
            requested_action=Action(row.requested_action) if row.requested_action else None,
            target_id=row.target_id,
            outcome=AuditOutcome(row.outcome),
            denial_code=DenialCode(row.denial_code) if row.denial_code else None,
            timestamp=row.timestamp,
            detail=row.detail or {},
            entry_hash=row.entry_hash,
        )
