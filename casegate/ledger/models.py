"""
Persistence models — SQLAlchemy tables behind the core's narrow store interface.

The audit table is the compliance ground truth and is APPEND-ONLY: the ORM
refuses to update or delete its rows, and corrections are new rows whose
``supersedes`` points at the original. Send records are guarded the same way.
Drafts are mutable only through compare-and-swap writes on ``version``.

Types are kept portable (JSON with a JSONB variant on PostgreSQL, string ids)
so the same schema runs on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

from casegate.errors import LedgerIntegrityError

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all CaseGate tables."""
    pass


class AuditRecordDB(Base):
    """
    A single audit record — one attempted or completed action.

    The hash chain is per tenant: each row stores SHA-256 of
    (previous_hash || canonical_json(fields)), so a deleted, edited or
    reordered row breaks verification.
    """

    __tablename__ = "audit_records"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    sequence = Column(
        Integer, nullable=False,
        comment="Per-tenant monotonically increasing sequence number",
    )
    timestamp = Column(DateTime(timezone=True), nullable=False)

    actor_id = Column(String(64), nullable=True, comment="Null for system-initiated entries")
    actor_role = Column(String(40), nullable=True)

    action = Column(String(40), nullable=False)
    resource_type = Column(String(40), nullable=False)
    resource_id = Column(String(64), nullable=True)
    matter_id = Column(String(64), nullable=True)
    outcome = Column(String(16), nullable=False)
    detail = Column(JSONType, nullable=False, default=dict)
    origin = Column(String(255), nullable=False, default="unknown")

    supersedes = Column(
        String(36), ForeignKey("audit_records.id"), nullable=True,
        comment="ID of the record this corrects (original preserved)",
    )

    previous_hash = Column(String(64), nullable=False)
    record_hash = Column(String(64), nullable=False, unique=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "sequence", name="uq_audit_tenant_sequence"),
        Index("ix_audit_tenant_timestamp", "tenant_id", "timestamp", "sequence"),
        Index("ix_audit_actor", "tenant_id", "actor_id"),
        Index("ix_audit_action", "tenant_id", "action"),
        Index("ix_audit_matter", "tenant_id", "matter_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditRecord tenant={self.tenant_id} seq={self.sequence} "
            f"action={self.action} outcome={self.outcome} hash={self.record_hash[:12]}...>"
        )


class MatterDB(Base):
    """Matters as maintained by intake. Read-only to the core."""

    __tablename__ = "matters"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    number = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default="open")
    assigned_professional_id = Column(String(64), nullable=True)
    assigned_staff_id = Column(String(64), nullable=True)
    client_id = Column(String(64), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "number", name="uq_matter_tenant_number"),
    )


class PartyDB(Base):
    """The represented person(s) of a matter."""

    __tablename__ = "parties"

    id = Column(Integer, primary_key=True, autoincrement=True)
    matter_id = Column(String(36), ForeignKey("matters.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    normalized_name = Column(String(255), nullable=False, index=True)


class CounterpartyDB(Base):
    """Creditors and other third parties of a matter."""

    __tablename__ = "counterparties"

    id = Column(Integer, primary_key=True, autoincrement=True)
    matter_id = Column(String(36), ForeignKey("matters.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    normalized_name = Column(String(255), nullable=False, index=True)


class DraftDB(Base):
    """
    Generated documents under review.

    ``version`` doubles as the optimistic concurrency token: every
    transition is an UPDATE ... WHERE version = :expected AND status = 'pending'.
    """

    __tablename__ = "drafts"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    matter_id = Column(String(36), nullable=False, index=True)
    draft_type = Column(String(32), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    status = Column(String(32), nullable=False, default="pending")
    content = Column(Text, nullable=False)
    flags = Column(JSONType, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_transitioned_at = Column(DateTime(timezone=True), nullable=True)
    last_transitioned_by = Column(String(64), nullable=True)
    predecessor_id = Column(String(36), ForeignKey("drafts.id"), nullable=True)
    review_comment = Column(Text, nullable=True)


class DraftRevisionDB(Base):
    """Content history. A modified approval adds a row; nothing is discarded."""

    __tablename__ = "draft_revisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    draft_id = Column(String(36), ForeignKey("drafts.id"), nullable=False)
    version = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    created_by = Column(String(64), nullable=True)

    __table_args__ = (
        UniqueConstraint("draft_id", "version", name="uq_revision_draft_version"),
    )


class SendRecordDB(Base):
    """Proof of transmission. One row per (draft, recipient, method)."""

    __tablename__ = "send_records"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    draft_id = Column(String(36), ForeignKey("drafts.id"), nullable=False)
    matter_id = Column(String(36), nullable=False, index=True)
    recipient_type = Column(String(16), nullable=False)
    recipient_name = Column(String(255), nullable=False)
    recipient_address = Column(String(512), nullable=False, default="")
    recipient_key = Column(String(800), nullable=False)
    method = Column(String(32), nullable=False)
    authorized_by = Column(String(64), nullable=False)
    authorized_role = Column(String(40), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=False)
    draft_version = Column(Integer, nullable=False)
    content_snapshot = Column(Text, nullable=False)
    transport_reference = Column(String(255), nullable=True)
    audit_record_id = Column(String(36), ForeignKey("audit_records.id"), nullable=False)

    __table_args__ = (
        UniqueConstraint("draft_id", "recipient_key", "method", name="uq_send_target"),
    )


class SendLeaseDB(Base):
    """Short-lived exclusive lease serializing sends of one draft."""

    __tablename__ = "send_leases"

    draft_id = Column(String(36), primary_key=True)
    holder = Column(String(64), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    # Set while the holder waits on the transport; blocks takeover until cleared.
    transmit_started_at = Column(DateTime(timezone=True), nullable=True)


# ── Append-only enforcement ────────────────────────────────────


def _refuse_mutation(mapper, connection, target) -> None:
    raise LedgerIntegrityError(
        f"{type(target).__name__} rows are append-only; record a correction instead"
    )


for _model in (AuditRecordDB, SendRecordDB):
    event.listen(_model, "before_update", _refuse_mutation)
    event.listen(_model, "before_delete", _refuse_mutation)
