"""
Send-Gate Coordinator — the mandatory check-and-record step before any
externally visible transmission.

A send happens only when ALL of the following hold, checked server-side:
1. The actor passes ``execute-send`` for the draft's matter
2. The draft is APPROVED or MODIFIED_APPROVED
3. The three acknowledgments are present and exactly ``True``
4. Every flag on the draft is acknowledged

A second call for the same (draft, recipient, method) returns the original
SendRecord instead of transmitting again. Concurrent calls for one draft
are serialized by a short database lease; a crashed holder's lease expires
unless it crashed inside the transport call. The transport call has its own
deadline, shorter than the lease.

Outcomes are always recorded. Transport errors and non-delivered receipts
become a retryable ``TransportFailure``. No answer before the deadline is a
non-retryable ``TransportFailure``: the draft stays locked until the send is
reconciled. A delivery that cannot be recorded is a
``ReconciliationRequired`` incident and also keeps the draft locked.
"""

from __future__ import annotations

import enum
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Mapping, Protocol

from pydantic import BaseModel
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from casegate.domain.schema import (
    REQUIRED_ACKNOWLEDGMENTS,
    Action,
    Actor,
    AuditAction,
    AuditEntry,
    AuditOutcome,
    Draft,
    DraftType,
    Recipient,
    SendMethod,
    SendRecord,
    as_utc,
    new_id,
    utcnow,
)
from casegate.errors import (
    AuditWriteFailure,
    CaseGateError,
    ReconciliationRequired,
    ResourceNotFound,
    SendInProgress,
    TransportFailure,
    UnacknowledgedFlags,
    ValidationError,
)
from casegate.governance.guard import ActionGuard
from casegate.governance.policy import AuthorizationDecision, ResourceRef
from casegate.ledger.database import Database
from casegate.ledger.models import SendLeaseDB, SendRecordDB
from casegate.ledger.service import AuditLedger
from casegate.workflow.drafts import DraftWorkflow

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Transport collaborator
# ════════════════════════════════════════════════════════════════


class TransportStatus(str, enum.Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    UNKNOWN = "unknown"


class TransmissionRequest(BaseModel):
    """Everything the transport needs to deliver one document."""

    tenant_id: str
    draft_id: str
    matter_id: str
    draft_type: DraftType
    draft_version: int
    content: str
    recipient: Recipient
    method: SendMethod
    idempotency_key: str


class TransportReceipt(BaseModel):
    status: TransportStatus
    reference: str | None = None
    message: str = ""


class Transport(Protocol):
    """Mail, fax, e-mail or filing-portal adapter. Must answer definitively."""

    def transmit(self, request: TransmissionRequest, timeout: float) -> TransportReceipt: ...


# ════════════════════════════════════════════════════════════════
# Per-draft lease
# ════════════════════════════════════════════════════════════════


class SendLease:
    """
    Exclusive, time-bounded lease on a draft, held in the ``send_leases`` table.

    A row is inserted to take the lease. An expired row may be taken over by
    swapping its holder; a live one makes the caller wait up to
    ``wait_seconds`` and then fail with ``SendInProgress``.

    While the holder is inside the transport call the row is marked with
    ``transmit_started_at``. A marked row is never taken over, even after it
    expires, and ``release`` leaves it in place: whether that transmission
    went out is unknown until someone reconciles it and calls
    ``force_release``.
    """

    def __init__(
        self,
        database: Database,
        lease_seconds: float = 120.0,
        wait_seconds: float = 0.0,
        clock: Callable[[], datetime] = utcnow,
        poll_interval: float = 0.05,
    ) -> None:
        self.SessionLocal = database.SessionLocal
        self.lease_seconds = lease_seconds
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self._clock = clock

    def acquire(self, draft_id: str) -> str:
        token = new_id()
        deadline = time.monotonic() + self.wait_seconds
        while True:
            if self._try_acquire(draft_id, token):
                logger.debug("Send lease acquired: draft=%s holder=%s", draft_id, token)
                return token
            if time.monotonic() >= deadline:
                if self.in_doubt(draft_id):
                    raise SendInProgress(
                        f"A transmission of draft {draft_id} is in flight or its outcome is unknown"
                    )
                raise SendInProgress(f"Another send for draft {draft_id} is in progress")
            time.sleep(self.poll_interval)

    def _try_acquire(self, draft_id: str, token: str) -> bool:
        now = self._clock()
        expires = now + timedelta(seconds=self.lease_seconds)
        with self.SessionLocal() as session:
            try:
                session.add(SendLeaseDB(
                    draft_id=draft_id, holder=token, acquired_at=now, expires_at=expires,
                ))
                session.commit()
                return True
            except IntegrityError:
                session.rollback()

            result = session.execute(
                update(SendLeaseDB)
                .where(
                    SendLeaseDB.draft_id == draft_id,
                    SendLeaseDB.expires_at < now,
                    SendLeaseDB.transmit_started_at.is_(None),
                )
                .values(holder=token, acquired_at=now, expires_at=expires)
            )
            session.commit()
            if result.rowcount == 1:
                logger.warning("Expired send lease taken over: draft=%s", draft_id)
                return True
            return False

    def begin_transmit(self, draft_id: str, token: str) -> None:
        """
        Renew the lease and mark the transmission as started.

        Raises:
            SendInProgress: The lease expired and was taken over before the
                transport was called.
        """
        now = self._clock()
        with self.SessionLocal() as session:
            result = session.execute(
                update(SendLeaseDB)
                .where(
                    SendLeaseDB.draft_id == draft_id,
                    SendLeaseDB.holder == token,
                    SendLeaseDB.expires_at > now,
                )
                .values(
                    expires_at=now + timedelta(seconds=self.lease_seconds),
                    transmit_started_at=now,
                )
            )
            session.commit()
        if result.rowcount != 1:
            logger.warning("Send lease lost before transmission: draft=%s holder=%s", draft_id, token)
            raise SendInProgress(f"Lease on draft {draft_id} was lost before transmission")

    def end_transmit(self, draft_id: str, token: str) -> None:
        """The transport answered definitively; the lease may be released again."""
        with self.SessionLocal() as session:
            session.execute(
                update(SendLeaseDB)
                .where(SendLeaseDB.draft_id == draft_id, SendLeaseDB.holder == token)
                .values(transmit_started_at=None)
            )
            session.commit()

    def in_doubt(self, draft_id: str) -> bool:
        with self.SessionLocal() as session:
            marked = session.execute(
                select(SendLeaseDB.transmit_started_at).where(SendLeaseDB.draft_id == draft_id)
            ).scalar_one_or_none()
        return marked is not None

    def release(self, draft_id: str, token: str) -> None:
        with self.SessionLocal() as session:
            session.execute(
                delete(SendLeaseDB).where(
                    SendLeaseDB.draft_id == draft_id,
                    SendLeaseDB.holder == token,
                    SendLeaseDB.transmit_started_at.is_(None),
                )
            )
            session.commit()

    def force_release(self, draft_id: str) -> None:
        """Drop the lease whatever its state, once an in-doubt send has been reconciled."""
        with self.SessionLocal() as session:
            session.execute(delete(SendLeaseDB).where(SendLeaseDB.draft_id == draft_id))
            session.commit()
        logger.warning("Send lease force-released: draft=%s", draft_id)

    @contextmanager
    def hold(self, draft_id: str) -> Iterator[str]:
        token = self.acquire(draft_id)
        try:
            yield token
        finally:
            self.release(draft_id, token)


# ════════════════════════════════════════════════════════════════
# Coordinator
# ════════════════════════════════════════════════════════════════


class SendGateCoordinator:
    """
    Composes policy, draft state, acknowledgments and the ledger around
    one transport call.

    Usage:
        gate = SendGateCoordinator(database, ledger, guard, workflow, transport, lease)
        record = gate.execute_send(
            actor, draft.id,
            Recipient(recipient_type=RecipientType.CREDITOR, name="Acme Finance Co."),
            SendMethod.POSTAL,
            {"content_reviewed": True, "recipient_verified": True, "responsibility_accepted": True},
        )
    """

    def __init__(
        self,
        database: Database,
        ledger: AuditLedger,
        guard: ActionGuard,
        workflow: DraftWorkflow,
        transport: Transport,
        lease: SendLease,
        transport_timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
        transport_workers: int = 4,
    ) -> None:
        if transport_timeout >= lease.lease_seconds:
            raise ValueError(
                f"transport_timeout ({transport_timeout}s) must be shorter than "
                f"the send lease ({lease.lease_seconds}s)"
            )
        self.SessionLocal = database.SessionLocal
        self.ledger = ledger
        self.guard = guard
        self.workflow = workflow
        self.transport = transport
        self.lease = lease
        self.transport_timeout = transport_timeout
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=transport_workers, thread_name_prefix="casegate-transport",
        )

    def close(self) -> None:
        # Abandoned transport calls are not waited for.
        self._executor.shutdown(wait=False)

    def execute_send(
        self,
        actor: Actor,
        draft_id: str,
        recipient: Recipient,
        method: SendMethod,
        acknowledgments: Mapping[str, Any],
        origin: str | None = None,
    ) -> SendRecord:
        """
        Transmit an approved draft at most once per (recipient, method).

        Returns:
            The new SendRecord, or the existing one for a repeated request.

        Raises:
            PermissionDenied: Actor fails ``execute-send`` (recorded as denied).
            ResourceNotFound: Unknown draft.
            ValidationError: Draft not approved, or acknowledgments incomplete.
            UnacknowledgedFlags: A flag is still unread.
            SendInProgress: Another send holds the draft's lease.
            TransportFailure: Delivery not confirmed. Retryable unless the outcome is unknown.
            ReconciliationRequired: Delivered but not recorded.
            AuditWriteFailure: A failure record could not be written.
        """
        draft = self.workflow.load(draft_id)
        if draft is None:
            self.ledger.append(AuditEntry.for_actor(
                actor,
                action=AuditAction.EXECUTE_SEND,
                resource_type="draft",
                resource_id=draft_id,
                outcome=AuditOutcome.FAILURE,
                detail={"error": "not_found"},
                origin=origin or "unknown",
            ))
            raise ResourceNotFound(f"Draft {draft_id} not found")

        resource = self.workflow.resource_for(draft)
        decision = self.guard.require(actor, Action.EXECUTE_SEND, resource, origin=origin)
        target = {"recipient": recipient.model_dump(mode="json"), "method": method.value}

        try:
            self._check_preconditions(draft, acknowledgments)
            with self.lease.hold(draft.id) as token:
                # Re-read under the lease; the caller's view may be stale.
                draft = self.workflow.load(draft.id)
                self._check_preconditions(draft, acknowledgments)

                existing = self._find_send(draft.id, recipient, method)
                if existing is not None:
                    return self._replay(actor, draft, existing, decision, origin)

                self.lease.begin_transmit(draft.id, token)
                try:
                    receipt = self._transmit(draft, recipient, method)
                except TransportFailure as exc:
                    if exc.retryable:
                        self.lease.end_transmit(draft.id, token)
                    raise
                # ReconciliationRequired leaves the lease marked in doubt.
                send = self._record_send(actor, draft, recipient, method, receipt, decision, origin)
                self.lease.end_transmit(draft.id, token)
                return send
        except (ValidationError, UnacknowledgedFlags, SendInProgress, TransportFailure) as exc:
            self._record_failure(actor, draft, exc, target, origin)
            raise

    def list_sends(self, actor: Actor, matter_id: str | None = None) -> list[SendRecord]:
        """Send history of the actor's tenant, optionally for one matter, oldest first."""
        resource = None
        if matter_id is not None:
            matter = self.workflow.matters.get(matter_id)
            if matter is None:
                raise ResourceNotFound(f"Matter {matter_id} not found")
            resource = ResourceRef(
                tenant_id=matter.tenant_id,
                resource_type="matter",
                resource_id=matter.id,
                matter_id=matter.id,
                assignees=matter.assignees,
            )
        self.guard.require(actor, Action.VIEW_AUDIT_LOG, resource)

        stmt = select(SendRecordDB).where(SendRecordDB.tenant_id == actor.tenant_id)
        if matter_id is not None:
            stmt = stmt.where(SendRecordDB.matter_id == matter_id)
        with self.SessionLocal() as session:
            rows = session.execute(stmt.order_by(SendRecordDB.sent_at.asc())).scalars().all()
        return [_to_send_record(r) for r in rows]

    # ── Steps ───────────────────────────────────────────────────

    @staticmethod
    def _check_preconditions(draft: Draft, acknowledgments: Mapping[str, Any]) -> None:
        if not draft.status.is_approved:
            raise ValidationError(
                f"Draft {draft.id} is {draft.status.value}; only approved drafts may be sent"
            )
        missing = [k for k in REQUIRED_ACKNOWLEDGMENTS if acknowledgments.get(k) is not True]
        if missing:
            raise ValidationError(f"Missing acknowledgment(s): {', '.join(missing)}")
        pending = draft.unacknowledged_flags
        if pending:
            raise UnacknowledgedFlags([f.code for f in pending])

    def _find_send(self, draft_id: str, recipient: Recipient, method: SendMethod) -> SendRecord | None:
        with self.SessionLocal() as session:
            row = session.execute(
                select(SendRecordDB).where(
                    SendRecordDB.draft_id == draft_id,
                    SendRecordDB.recipient_key == recipient.key,
                    SendRecordDB.method == method.value,
                )
            ).scalar_one_or_none()
        return _to_send_record(row) if row is not None else None

    def _transmit(self, draft: Draft, recipient: Recipient, method: SendMethod) -> TransportReceipt:
        request = TransmissionRequest(
            tenant_id=draft.tenant_id,
            draft_id=draft.id,
            matter_id=draft.matter_id,
            draft_type=draft.draft_type,
            draft_version=draft.version,
            content=draft.content,
            recipient=recipient,
            method=method,
            idempotency_key=f"{draft.id}:{recipient.key}:{method.value}",
        )
        future = self._executor.submit(self.transport.transmit, request, self.transport_timeout)
        done, _ = wait([future], timeout=self.transport_timeout)
        if not done:
            logger.critical(
                "Transport gave no answer within %.1fs, delivery outcome unknown: draft=%s method=%s",
                self.transport_timeout, draft.id, method.value,
            )
            raise TransportFailure(
                f"Transport did not answer within {self.transport_timeout}s; "
                f"draft {draft.id} must be reconciled before it can be sent again",
                retryable=False,
            )
        try:
            receipt = future.result()
        except Exception as exc:
            logger.error("Transport raised: draft=%s method=%s error=%r", draft.id, method.value, exc)
            raise TransportFailure(f"Transport error: {exc}") from exc

        if receipt.status is not TransportStatus.DELIVERED:
            logger.error(
                "Transport did not confirm delivery: draft=%s status=%s message=%s",
                draft.id, receipt.status.value, receipt.message,
            )
            raise TransportFailure(
                f"Transport reported {receipt.status.value}: {receipt.message or 'no detail'}"
            )
        return receipt

    def _record_send(
        self,
        actor: Actor,
        draft: Draft,
        recipient: Recipient,
        method: SendMethod,
        receipt: TransportReceipt,
        decision: AuthorizationDecision,
        origin: str | None,
    ) -> SendRecord:
        now = self._clock()
        approved_at = draft.last_transitioned_at or draft.created_at
        send = SendRecord(
            id=new_id(),
            tenant_id=draft.tenant_id,
            draft_id=draft.id,
            matter_id=draft.matter_id,
            recipient=recipient,
            method=method,
            authorized_by=actor.id,
            authorized_role=actor.role,
            sent_at=now,
            draft_version=draft.version,
            content_snapshot=draft.content,
            transport_reference=receipt.reference,
        )
        try:
            with self.ledger.unit_of_work(draft.tenant_id) as session:
                record = self.ledger.append(AuditEntry.for_actor(
                    actor,
                    tenant_id=draft.tenant_id,
                    action=AuditAction.EXECUTE_SEND,
                    resource_type="draft",
                    resource_id=draft.id,
                    matter_id=draft.matter_id,
                    outcome=AuditOutcome.SUCCESS,
                    detail={
                        **decision.as_detail(),
                        "send_record_id": send.id,
                        "recipient": recipient.model_dump(mode="json"),
                        "method": method.value,
                        "draft_version": draft.version,
                        "transport_reference": receipt.reference,
                        "review_seconds": round((now - approved_at).total_seconds(), 3),
                        "acknowledgments": list(REQUIRED_ACKNOWLEDGMENTS),
                    },
                    origin=origin or "unknown",
                ), session=session)
                send.audit_record_id = record.id
                session.add(SendRecordDB(
                    id=send.id,
                    tenant_id=send.tenant_id,
                    draft_id=send.draft_id,
                    matter_id=send.matter_id,
                    recipient_type=recipient.recipient_type.value,
                    recipient_name=recipient.name,
                    recipient_address=recipient.address,
                    recipient_key=recipient.key,
                    method=method.value,
                    authorized_by=send.authorized_by,
                    authorized_role=send.authorized_role.value,
                    sent_at=send.sent_at,
                    draft_version=send.draft_version,
                    content_snapshot=send.content_snapshot,
                    transport_reference=send.transport_reference,
                    audit_record_id=record.id,
                ))
        except AuditWriteFailure as exc:
            logger.critical(
                "RECONCILIATION REQUIRED: delivered but not recorded: draft=%s method=%s reference=%s",
                draft.id, method.value, receipt.reference,
            )
            raise ReconciliationRequired(
                f"Draft {draft.id} was delivered (reference {receipt.reference}) "
                f"but the send could not be recorded",
                receipt=receipt,
            ) from exc

        logger.info(
            "Send executed: draft=%s send=%s method=%s recipient=%s by %s",
            draft.id, send.id, method.value, recipient.recipient_type.value, actor.id,
        )
        return send

    def _replay(
        self,
        actor: Actor,
        draft: Draft,
        existing: SendRecord,
        decision: AuthorizationDecision,
        origin: str | None,
    ) -> SendRecord:
        self.ledger.append(AuditEntry.for_actor(
            actor,
            tenant_id=draft.tenant_id,
            action=AuditAction.SEND_REPLAYED,
            resource_type="draft",
            resource_id=draft.id,
            matter_id=draft.matter_id,
            outcome=AuditOutcome.SUCCESS,
            detail={
                **decision.as_detail(),
                "send_record_id": existing.id,
                "original_audit_record_id": existing.audit_record_id,
            },
            origin=origin or "unknown",
        ))
        logger.info("Duplicate send short-circuited: draft=%s send=%s", draft.id, existing.id)
        return existing

    def _record_failure(
        self,
        actor: Actor,
        draft: Draft,
        exc: CaseGateError,
        target: dict,
        origin: str | None,
    ) -> None:
        detail = {
            "error": _ERROR_CODES.get(type(exc), type(exc).__name__),
            "message": str(exc),
            **target,
        }
        if isinstance(exc, UnacknowledgedFlags):
            detail["flag_codes"] = exc.flag_codes
        if isinstance(exc, TransportFailure):
            detail["retryable"] = exc.retryable
        self.ledger.append(AuditEntry.for_actor(
            actor,
            tenant_id=draft.tenant_id,
            action=AuditAction.EXECUTE_SEND,
            resource_type="draft",
            resource_id=draft.id,
            matter_id=draft.matter_id,
            outcome=AuditOutcome.FAILURE,
            detail=detail,
            origin=origin or "unknown",
        ))


_ERROR_CODES = {
    ValidationError: "validation_error",
    UnacknowledgedFlags: "unacknowledged_flags",
    SendInProgress: "send_in_progress",
    TransportFailure: "transport_failure",
}


def _to_send_record(row: SendRecordDB) -> SendRecord:
    return SendRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        draft_id=row.draft_id,
        matter_id=row.matter_id,
        recipient=Recipient(
            recipient_type=row.recipient_type,
            name=row.recipient_name,
            address=row.recipient_address,
        ),
        method=row.method,
        authorized_by=row.authorized_by,
        authorized_role=row.authorized_role,
        sent_at=as_utc(row.sent_at),
        draft_version=row.draft_version,
        content_snapshot=row.content_snapshot,
        transport_reference=row.transport_reference,
        audit_record_id=row.audit_record_id,
    )
