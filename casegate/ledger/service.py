"""
Audit Ledger Service — Append-only, hash-chained record of every attempted action.

This service provides the core operations for the audit ledger:
- Append new records with automatic per-tenant sequence and hash chain
- Join a caller's unit of work so a domain write and its record commit together
- Verify the integrity of a tenant's hash chain
- Query records by actor, action, resource, matter, outcome and time range

Durability contract: ``append`` returns only after the record is committed.
Any storage failure surfaces as ``AuditWriteFailure`` and the surrounding
unit of work is rolled back, so an action never proceeds un-logged.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator

from pydantic import BaseModel, Field
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from casegate.domain.schema import (
    GENESIS_HASH,
    AuditAction,
    AuditEntry,
    AuditOutcome,
    AuditRecord,
    as_utc,
    utcnow,
)
from casegate.errors import AuditWriteFailure, ResourceNotFound, ValidationError
from casegate.ledger.database import Database
from casegate.ledger.models import AuditRecordDB

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000


class AuditFilter(BaseModel):
    """Query filter. ``tenant_id`` is mandatory: there is no cross-tenant scan."""

    tenant_id: str
    actor_id: str | None = None
    actions: list[AuditAction] | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    matter_id: str | None = None
    outcome: AuditOutcome | None = None
    since: datetime | None = None
    until: datetime | None = None


class AuditPage(BaseModel):
    records: list[AuditRecord] = Field(default_factory=list)
    next_page_token: str | None = None


class AuditLedger:
    """
    Audit Ledger — the compliance ground truth.

    All other components may be rebuilt from it. There is no update and no
    delete; corrections are new records that reference the original.

    Usage:
        ledger = AuditLedger(database)

        record = ledger.append(AuditEntry.for_actor(
            actor,
            action=AuditAction.APPROVE_DRAFT,
            resource_type="draft",
            resource_id=draft_id,
            outcome=AuditOutcome.SUCCESS,
            detail={"review_seconds": 42.0},
        ))

        with ledger.unit_of_work(tenant_id) as session:
            ...  # domain writes
            ledger.append(entry, session=session)
    """

    def __init__(
        self,
        database: Database,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.SessionLocal = database.SessionLocal
        self._clock = clock
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ── Writes ──────────────────────────────────────────────────

    def _tenant_lock(self, tenant_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = self._locks[tenant_id] = threading.RLock()
            return lock

    @contextmanager
    def unit_of_work(self, tenant_id: str) -> Iterator[Session]:
        """
        Open a transaction in which domain writes and audit appends commit together.

        Appends for one tenant are serialized for the lifetime of the unit so
        the chain stays linear. Storage errors roll everything back and are
        raised as ``AuditWriteFailure``.
        """
        with self._tenant_lock(tenant_id):
            session = self.SessionLocal()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error("Audit unit of work aborted: tenant=%s error=%s", tenant_id, exc)
                raise AuditWriteFailure(
                    f"Audit write could not be durably confirmed for tenant {tenant_id}"
                ) from exc
            except BaseException:
                session.rollback()
                raise
            finally:
                session.close()

    def append(self, entry: AuditEntry, session: Session | None = None) -> AuditRecord:
        """
        Append a new record to the tenant's chain.

        This is the ONLY write operation. Without ``session`` the record is
        committed before returning. With ``session`` (obtained from
        ``unit_of_work``) it becomes durable when that unit commits.

        Raises:
            AuditWriteFailure: If the record cannot be durably written.
            ValidationError: If ``entry.supersedes`` names no record of the tenant.
        """
        if session is not None:
            return self._append(session, entry)

        with self.unit_of_work(entry.tenant_id) as own:
            record = self._append(own, entry)
        logger.info(
            "Audit record appended: tenant=%s seq=%d action=%s outcome=%s hash=%s",
            record.tenant_id, record.sequence, record.action.value,
            record.outcome.value, record.record_hash[:16],
        )
        return record

    def append_correction(self, original_id: str, entry: AuditEntry) -> AuditRecord:
        """Record a correction. The original stays in place, untouched."""
        return self.append(entry.model_copy(update={"supersedes": original_id}))

    def _append(self, session: Session, entry: AuditEntry) -> AuditRecord:
        last = session.execute(
            select(AuditRecordDB)
            .where(AuditRecordDB.tenant_id == entry.tenant_id)
            .order_by(AuditRecordDB.sequence.desc())
            .limit(1)
        ).scalar_one_or_none()

        if entry.supersedes is not None:
            original = session.execute(
                select(AuditRecordDB.id).where(
                    AuditRecordDB.id == entry.supersedes,
                    AuditRecordDB.tenant_id == entry.tenant_id,
                )
            ).scalar_one_or_none()
            if original is None:
                raise ValidationError(
                    f"Cannot correct unknown record {entry.supersedes} in tenant {entry.tenant_id}"
                )

        timestamp = self._clock()
        if last is not None:
            # Keep time order identical to sequence order within a tenant.
            timestamp = max(timestamp, as_utc(last.timestamp))

        record = AuditRecord(
            tenant_id=entry.tenant_id,
            sequence=(last.sequence + 1) if last is not None else 1,
            timestamp=timestamp,
            actor_id=entry.actor_id,
            actor_role=entry.actor_role,
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            matter_id=entry.matter_id,
            outcome=entry.outcome,
            detail=json.loads(json.dumps(entry.detail, default=str)),
            origin=entry.origin or "unknown",
            supersedes=entry.supersedes,
            previous_hash=last.record_hash if last is not None else GENESIS_HASH,
        )
        record.record_hash = record.compute_hash()

        session.add(AuditRecordDB(
            id=record.id,
            tenant_id=record.tenant_id,
            sequence=record.sequence,
            timestamp=record.timestamp,
            actor_id=record.actor_id,
            actor_role=record.actor_role.value if record.actor_role else None,
            action=record.action.value,
            resource_type=record.resource_type,
            resource_id=record.resource_id,
            matter_id=record.matter_id,
            outcome=record.outcome.value,
            detail=record.detail,
            origin=record.origin,
            supersedes=record.supersedes,
            previous_hash=record.previous_hash,
            record_hash=record.record_hash,
        ))
        session.flush()
        return record

    # ── Verification ────────────────────────────────────────────

    def verify_chain(self, tenant_id: str) -> tuple[bool, int, str]:
        """
        Verify the integrity of one tenant's hash chain.

        Walks every record in sequence order, recomputing each hash and
        checking linkage and sequence contiguity.

        Returns:
            Tuple of (is_valid, records_verified, message).
        """
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AuditRecordDB)
                .where(AuditRecordDB.tenant_id == tenant_id)
                .order_by(AuditRecordDB.sequence.asc())
                .execution_options(yield_per=500)
            ).scalars()

            previous_hash = GENESIS_HASH
            expected_sequence = 1
            verified = 0
            for row in rows:
                record = _to_record(row)
                if record.sequence != expected_sequence:
                    return (
                        False, verified,
                        f"Sequence gap at {record.sequence}: expected {expected_sequence}",
                    )
                if record.previous_hash != previous_hash:
                    return (
                        False, verified,
                        f"Chain break at sequence {record.sequence}: "
                        f"previous_hash does not match prior record's hash",
                    )
                computed = record.compute_hash()
                if computed != record.record_hash:
                    return (
                        False, verified,
                        f"Hash mismatch at sequence {record.sequence}: "
                        f"stored={record.record_hash[:16]}... computed={computed[:16]}...",
                    )
                previous_hash = record.record_hash
                expected_sequence += 1
                verified += 1

        if verified == 0:
            return True, 0, f"No records for tenant {tenant_id}"
        return True, verified, f"Chain verified: {verified} records, integrity intact"

    # ── Reads ───────────────────────────────────────────────────

    def get_record(self, tenant_id: str, record_id: str) -> AuditRecord:
        with self.SessionLocal() as session:
            row = session.execute(
                select(AuditRecordDB).where(
                    AuditRecordDB.id == record_id,
                    AuditRecordDB.tenant_id == tenant_id,
                )
            ).scalar_one_or_none()
        if row is None:
            raise ResourceNotFound(f"Audit record {record_id} not found")
        return _to_record(row)

    def query(
        self,
        audit_filter: AuditFilter,
        page_token: str | None = None,
        limit: int = 100,
    ) -> AuditPage:
        """
        Return one page of records in replay order (timestamp, then sequence).

        ``next_page_token`` is None on the last page. Tokens are stable: a
        page fetched again later returns the same records plus any newer ones.
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = self._filtered(audit_filter)
        if page_token:
            after_ts, after_seq = _decode_token(page_token)
            stmt = stmt.where(
                or_(
                    AuditRecordDB.timestamp > after_ts,
                    and_(
                        AuditRecordDB.timestamp == after_ts,
                        AuditRecordDB.sequence > after_seq,
                    ),
                )
            )
        stmt = stmt.order_by(
            AuditRecordDB.timestamp.asc(), AuditRecordDB.sequence.asc()
        ).limit(limit + 1)

        with self.SessionLocal() as session:
            rows = list(session.execute(stmt).scalars().all())

        has_more = len(rows) > limit
        records = [_to_record(r) for r in rows[:limit]]
        token = _encode_token(records[-1]) if has_more and records else None
        return AuditPage(records=records, next_page_token=token)

    def iter_records(
        self,
        audit_filter: AuditFilter,
        page_size: int = 500,
    ) -> Iterator[AuditRecord]:
        """Lazily yield every matching record. Closing the generator stops the scan."""
        token: str | None = None
        while True:
            page = self.query(audit_filter, page_token=token, limit=page_size)
            yield from page.records
            if page.next_page_token is None:
                return
            token = page.next_page_token

    def count(self, audit_filter: AuditFilter) -> int:
        stmt = select(func.count()).select_from(self._filtered(audit_filter).subquery())
        with self.SessionLocal() as session:
            return session.execute(stmt).scalar() or 0

    def latest(self, tenant_id: str, limit: int = 50) -> list[AuditRecord]:
        """Most recent records of a tenant, newest first."""
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AuditRecordDB)
                .where(AuditRecordDB.tenant_id == tenant_id)
                .order_by(AuditRecordDB.sequence.desc())
                .limit(limit)
            ).scalars().all()
        return [_to_record(r) for r in rows]

    def tenants(self) -> list[str]:
        with self.SessionLocal() as session:
            return sorted(session.execute(
                select(AuditRecordDB.tenant_id).distinct()
            ).scalars().all())

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _filtered(f: AuditFilter):
        stmt = select(AuditRecordDB).where(AuditRecordDB.tenant_id == f.tenant_id)
        if f.actor_id:
            stmt = stmt.where(AuditRecordDB.actor_id == f.actor_id)
        if f.actions:
            stmt = stmt.where(AuditRecordDB.action.in_([a.value for a in f.actions]))
        if f.resource_type:
            stmt = stmt.where(AuditRecordDB.resource_type == f.resource_type)
        if f.resource_id:
            stmt = stmt.where(AuditRecordDB.resource_id == f.resource_id)
        if f.matter_id:
            stmt = stmt.where(AuditRecordDB.matter_id == f.matter_id)
        if f.outcome:
            stmt = stmt.where(AuditRecordDB.outcome == f.outcome.value)
        if f.since:
            stmt = stmt.where(AuditRecordDB.timestamp >= as_utc(f.since))
        if f.until:
            stmt = stmt.where(AuditRecordDB.timestamp <= as_utc(f.until))
        return stmt


def _to_record(row: AuditRecordDB) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        sequence=row.sequence,
        timestamp=as_utc(row.timestamp),
        actor_id=row.actor_id,
        actor_role=row.actor_role,
        action=row.action,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        matter_id=row.matter_id,
        outcome=row.outcome,
        detail=row.detail or {},
        origin=row.origin,
        supersedes=row.supersedes,
        previous_hash=row.previous_hash,
        record_hash=row.record_hash,
    )


def _encode_token(record: AuditRecord) -> str:
    payload: dict[str, Any] = {"t": as_utc(record.timestamp).isoformat(), "s": record.sequence}
    return base64.urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def _decode_token(token: str) -> tuple[datetime, int]:
    try:
        payload = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
        return as_utc(datetime.fromisoformat(payload["t"])), int(payload["s"])
    except (binascii.Error, ValueError, KeyError, TypeError) as exc:
        raise ValidationError(f"Malformed page token: {token!r}") from exc
