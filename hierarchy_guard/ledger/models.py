"""
Audit Ledger — SQLAlchemy models for the persisted authorization record.

The audit table is APPEND-ONLY. Each row stores the SHA-256 hash of
(previous_hash || canonical_json(content)), so a retroactive edit to any row
breaks the chain and is caught by AuditLedgerService.verify_chain().

Column types are the generic SQLAlchemy ones so the same schema runs on
PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all ledger models."""
    pass


class AuditEntryDB(Base):
    """
    One authorization decision in the audit ledger.

    Rows are only ever INSERTed. Sequence 0 is the genesis row that anchors
    the hash chain; it is not an authorization record.
    """

    __tablename__ = "audit_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    sequence_number = Column(
        Integer, nullable=False, unique=True, index=True,
        comment="Monotonically increasing sequence number",
    )

    previous_hash = Column(
        String(64), nullable=False,
        comment="SHA-256 hash of the previous entry",
    )
    entry_hash = Column(
        String(64), nullable=False, unique=True,
        comment="SHA-256 hash of this entry",
    )

    timestamp = Column(
        DateTime(timezone=True), nullable=False, default=func.now(),
        comment="When the decision was made",
    )

    actor_id = Column(String(100), nullable=False, comment="Requesting actor")
    action = Column(
        String(50), nullable=False,
        comment="Audit action name, e.g. TRANSFER_UNAUTHORIZED",
    )
    requested_action = Column(String(50), nullable=True)
    target_id = Column(String(100), nullable=True)
    outcome = Column(String(10), nullable=False, comment="allowed or denied")
    denial_code = Column(String(40), nullable=True)

    detail = Column(
        JSON, nullable=False, default=dict,
        comment="Decision context: tiers, amount, owners, message",
    )

    __table_args__ = (
        Index("ix_audit_actor_sequence", "actor_id", "sequence_number"),
        Index("ix_audit_action_timestamp", "action", "timestamp"),
        Index("ix_audit_outcome", "outcome"),
        Index("ix_audit_target", "target_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditEntry seq={self.sequence_number} "
            f"action={self.action} hash={self.entry_hash[:12]}...>"
        )
