"""
Draft Workflow — the approval state machine for generated documents.

    PENDING ──approve──────────────▶ APPROVED
       │    ──modify_and_approve───▶ MODIFIED_APPROVED   (version + 1)
       └────reject─────────────────▶ REJECTED

All three outcomes are terminal. A rejected draft is followed by a fresh
Draft linked through ``predecessor_id`` (see ``supersede``); the version
continues from the predecessor and is never reset.

Transitions are optimistic: the caller supplies the version it read, and
the write is a compare-and-swap on (version, status = pending). The loser
of a race gets ``StaleVersion``.

Every attempt leaves exactly one audit record:
- success  — committed in the same unit of work as the transition
- failure  — validation, unacknowledged flags, stale version, not found
- denied   — written by the ActionGuard before PermissionDenied
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from casegate.domain.schema import (
    Action,
    Actor,
    AuditAction,
    AuditEntry,
    AuditOutcome,
    Draft,
    DraftRevision,
    DraftStatus,
    DraftType,
    Flag,
    as_utc,
    new_id,
    utcnow,
)
from casegate.errors import (
    CaseGateError,
    ResourceNotFound,
    StaleVersion,
    UnacknowledgedFlags,
    ValidationError,
)
from casegate.governance.guard import ActionGuard
from casegate.governance.policy import AuthorizationDecision, ResourceRef
from casegate.ledger.database import Database
from casegate.ledger.models import DraftDB, DraftRevisionDB
from casegate.ledger.service import AuditLedger
from casegate.matters.index import MatterIndex

logger = logging.getLogger(__name__)

CONTENT_GENERATOR_ORIGIN = "content-generator"

# Errors that leave the draft untouched and are recorded as ``failure``.
_RECORDED_FAILURES = (ValidationError, UnacknowledgedFlags, StaleVersion)


class DraftWorkflow:
    """
    Gated lifecycle operations on drafts.

    Usage:
        workflow = DraftWorkflow(database, ledger, guard, matter_index)
        draft = workflow.register_draft(tenant, matter_id, DraftType.NOTICE, text, flags)
        draft = workflow.acknowledge_flags(draft.id, reviewer, [f.code for f in draft.flags])
        draft = workflow.approve(draft.id, reviewer, expected_version=draft.version)
    """

    def __init__(
        self,
        database: Database,
        ledger: AuditLedger,
        guard: ActionGuard,
        matters: MatterIndex,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.SessionLocal = database.SessionLocal
        self.ledger = ledger
        self.guard = guard
        self.matters = matters
        self._clock = clock

    # ════════════════════════════════════════════════════════════
    # Content-generation entry points (system-initiated)
    # ════════════════════════════════════════════════════════════

    def register_draft(
        self,
        tenant_id: str,
        matter_id: str,
        draft_type: DraftType,
        content: str,
        flags: Iterable[Flag] | None = None,
        origin: str = CONTENT_GENERATOR_ORIGIN,
    ) -> Draft:
        """
        Accept a freshly generated draft in PENDING status.

        The core does not inspect content; it only requires that the matter
        exists in the tenant and that the content is not empty.

        Raises:
            ResourceNotFound: The matter is unknown to the tenant.
            ValidationError: Empty content.
        """
        return self._create(tenant_id, matter_id, draft_type, content, flags, origin)

    def supersede(
        self,
        draft_id: str,
        content: str,
        flags: Iterable[Flag] | None = None,
        origin: str = CONTENT_GENERATOR_ORIGIN,
    ) -> Draft:
        """
        Register the replacement for a rejected draft.

        The new draft links back through ``predecessor_id`` and continues the
        version sequence. A draft can be superseded once.

        Raises:
            ResourceNotFound: Unknown predecessor.
            ValidationError: Predecessor not rejected, or already superseded.
        """
        predecessor = self.load(draft_id)
        if predecessor is None:
            raise ResourceNotFound(f"Draft {draft_id} not found")
        if predecessor.status is not DraftStatus.REJECTED:
            raise ValidationError(
                f"Only rejected drafts can be superseded; {draft_id} is {predecessor.status.value}"
            )
        return self._create(
            predecessor.tenant_id,
            predecessor.matter_id,
            predecessor.draft_type,
            content,
            flags,
            origin,
            predecessor=predecessor,
        )

    def _create(
        self,
        tenant_id: str,
        matter_id: str,
        draft_type: DraftType,
        content: str,
        flags: Iterable[Flag] | None,
        origin: str,
        predecessor: Draft | None = None,
    ) -> Draft:
        if not content or not content.strip():
            raise ValidationError("Draft content must not be empty")
        matter = self.matters.get(matter_id)
        if matter is None or matter.tenant_id != tenant_id:
            raise ResourceNotFound(f"Matter {matter_id} not found in tenant {tenant_id}")

        now = self._clock()
        draft = Draft(
            id=new_id(),
            tenant_id=tenant_id,
            matter_id=matter_id,
            draft_type=draft_type,
            version=predecessor.version + 1 if predecessor else 1,
            content=content,
            flags=[f.model_copy(update={"acknowledged": False}) for f in flags or ()],
            created_at=now,
            predecessor_id=predecessor.id if predecessor else None,
        )

        with self.ledger.unit_of_work(tenant_id) as session:
            if predecessor is not None:
                taken = session.execute(
                    select(DraftDB.id).where(DraftDB.predecessor_id == predecessor.id)
                ).first()
                if taken is not None:
                    raise ValidationError(f"Draft {predecessor.id} was already superseded by {taken[0]}")

            session.add(DraftDB(
                id=draft.id,
                tenant_id=draft.tenant_id,
                matter_id=draft.matter_id,
                draft_type=draft.draft_type.value,
                version=draft.version,
                status=draft.status.value,
                content=draft.content,
                flags=_dump_flags(draft.flags),
                created_at=draft.created_at,
                predecessor_id=draft.predecessor_id,
            ))
            session.add(DraftRevisionDB(
                draft_id=draft.id,
                version=draft.version,
                content=draft.content,
                created_at=now,
                created_by=None,
            ))
            self.ledger.append(AuditEntry(
                tenant_id=tenant_id,
                action=(
                    AuditAction.DRAFT_SUPERSEDED if predecessor else AuditAction.DRAFT_REGISTERED
                ),
                resource_type="draft",
                resource_id=draft.id,
                matter_id=matter_id,
                outcome=AuditOutcome.SUCCESS,
                detail={
                    "draft_type": draft.draft_type.value,
                    "version": draft.version,
                    "predecessor_id": draft.predecessor_id,
                    "flag_codes": [f.code for f in draft.flags],
                    "content_length": len(draft.content),
                },
                origin=origin,
            ), session=session)

        logger.info(
            "Draft registered: id=%s matter=%s type=%s version=%d flags=%d",
            draft.id, matter_id, draft.draft_type.value, draft.version, len(draft.flags),
        )
        return draft

    # ════════════════════════════════════════════════════════════
    # Reads
    # ════════════════════════════════════════════════════════════

    def load(self, draft_id: str) -> Draft | None:
        """Unrecorded internal read for collaborating services."""
        with self.SessionLocal() as session:
            row = session.get(DraftDB, draft_id)
            return _to_draft(row) if row is not None else None

    def resource_for(self, draft: Draft) -> ResourceRef:
        matter = self.matters.get(draft.matter_id)
        return ResourceRef(
            tenant_id=draft.tenant_id,
            resource_type="draft",
            resource_id=draft.id,
            matter_id=draft.matter_id,
            assignees=matter.assignees if matter else frozenset(),
        )

    def get_draft(self, draft_id: str, actor: Actor, origin: str | None = None) -> Draft:
        """Show a draft on the reviewer's screen. The view itself is recorded."""
        draft = self._load_or_fail(draft_id, actor, AuditAction.VIEW_DRAFT, origin)
        decision = self.guard.require(actor, Action.VIEW_DRAFT, self.resource_for(draft), origin=origin)
        self._record(actor, draft, AuditAction.VIEW_DRAFT, AuditOutcome.SUCCESS, {
            **decision.as_detail(),
            "version": draft.version,
            "status": draft.status.value,
        }, origin)
        return draft

    def revisions(self, draft_id: str) -> list[DraftRevision]:
        """Content history in version order, including the original text."""
        with self.SessionLocal() as session:
            rows = session.execute(
                select(DraftRevisionDB)
                .where(DraftRevisionDB.draft_id == draft_id)
                .order_by(DraftRevisionDB.version.asc())
            ).scalars().all()
        return [
            DraftRevision(
                draft_id=r.draft_id,
                version=r.version,
                content=r.content,
                created_at=as_utc(r.created_at),
                created_by=r.created_by,
            )
            for r in rows
        ]

    # ════════════════════════════════════════════════════════════
    # Reviewer actions
    # ════════════════════════════════════════════════════════════

    def acknowledge_flags(
        self,
        draft_id: str,
        actor: Actor,
        flag_codes: Iterable[str],
        origin: str | None = None,
    ) -> Draft:
        """
        Mark flags as read by the reviewer. Already-acknowledged codes are ignored.

        Raises:
            PermissionDenied: Actor may not acknowledge flags on this matter.
            ValidationError: No codes, unknown codes, or draft not pending.
        """
        draft = self._load_or_fail(draft_id, actor, AuditAction.ACKNOWLEDGE_FLAG, origin)
        decision = self.guard.require(
            actor, Action.ACKNOWLEDGE_FLAG, self.resource_for(draft), origin=origin,
        )
        codes = list(dict.fromkeys(flag_codes))

        try:
            if not codes:
                raise ValidationError("No flag codes given")

            with self.ledger.unit_of_work(draft.tenant_id) as session:
                # Merge into the stored flags, not the ones read above: another
                # acknowledgment may have committed since.
                current = _to_draft(session.execute(
                    select(DraftDB).where(DraftDB.id == draft.id).with_for_update()
                ).scalar_one())
                if current.status is not DraftStatus.PENDING:
                    raise ValidationError(f"Draft {draft.id} is {current.status.value}; flags are frozen")
                known = {f.code for f in current.flags}
                unknown = [c for c in codes if c not in known]
                if unknown:
                    raise ValidationError(f"Unknown flag code(s): {', '.join(unknown)}")

                now = self._clock()
                flags = [
                    f if f.acknowledged or f.code not in codes
                    else f.model_copy(update={
                        "acknowledged": True,
                        "acknowledged_by": actor.id,
                        "acknowledged_at": now,
                    })
                    for f in current.flags
                ]
                self._compare_and_swap(session, current, current.version, flags=_dump_flags(flags))
                self._record(actor, current, AuditAction.ACKNOWLEDGE_FLAG, AuditOutcome.SUCCESS, {
                    **decision.as_detail(),
                    "flag_codes": codes,
                    "remaining_unacknowledged": [f.code for f in flags if not f.acknowledged],
                }, origin, session=session)
        except _RECORDED_FAILURES as exc:
            self._record_failure(actor, draft, AuditAction.ACKNOWLEDGE_FLAG, exc, origin)
            raise

        return current.model_copy(update={"flags": flags})

    def approve(
        self,
        draft_id: str,
        actor: Actor,
        expected_version: int,
        origin: str | None = None,
    ) -> Draft:
        """
        PENDING → APPROVED.

        Raises:
            PermissionDenied: Actor fails ``approve-draft``.
            UnacknowledgedFlags: Some flag is still unread.
            StaleVersion: Another transition won.
        """
        return self._transition(
            draft_id, actor, expected_version,
            audit_action=AuditAction.APPROVE_DRAFT,
            required=(Action.APPROVE_DRAFT,),
            target=DraftStatus.APPROVED,
            origin=origin,
        )

    def modify_and_approve(
        self,
        draft_id: str,
        actor: Actor,
        expected_version: int,
        new_content: str,
        origin: str | None = None,
    ) -> Draft:
        """PENDING → MODIFIED_APPROVED with edited content. The version is incremented."""
        return self._transition(
            draft_id, actor, expected_version,
            audit_action=AuditAction.MODIFY_DRAFT,
            required=(Action.MODIFY_DRAFT, Action.APPROVE_DRAFT),
            target=DraftStatus.MODIFIED_APPROVED,
            new_content=new_content,
            origin=origin,
        )

    def reject(
        self,
        draft_id: str,
        actor: Actor,
        expected_version: int,
        reason: str,
        origin: str | None = None,
    ) -> Draft:
        """PENDING → REJECTED. An empty reason is a ValidationError and changes nothing."""
        return self._transition(
            draft_id, actor, expected_version,
            audit_action=AuditAction.REJECT_DRAFT,
            required=(Action.REJECT_DRAFT,),
            target=DraftStatus.REJECTED,
            reason=reason,
            origin=origin,
        )

    # ── Transition core ─────────────────────────────────────────

    def _transition(
        self,
        draft_id: str,
        actor: Actor,
        expected_version: int,
        audit_action: AuditAction,
        required: tuple[Action, ...],
        target: DraftStatus,
        new_content: str | None = None,
        reason: str | None = None,
        origin: str | None = None,
    ) -> Draft:
        draft = self._load_or_fail(draft_id, actor, audit_action, origin)
        resource = self.resource_for(draft)
        decision: AuthorizationDecision | None = None
        for action in required:
            decision = self.guard.require(actor, action, resource, origin=origin, audit_action=audit_action)

        try:
            self._check_transition(draft, expected_version, target, new_content, reason)

            now = self._clock()
            version = expected_version + 1 if target is DraftStatus.MODIFIED_APPROVED else expected_version
            values = {
                "status": target.value,
                "version": version,
                "last_transitioned_at": now,
                "last_transitioned_by": actor.id,
            }
            if new_content is not None:
                values["content"] = new_content
            if reason is not None:
                values["review_comment"] = reason.strip()

            with self.ledger.unit_of_work(draft.tenant_id) as session:
                self._compare_and_swap(session, draft, expected_version, **values)
                if new_content is not None:
                    session.add(DraftRevisionDB(
                        draft_id=draft.id,
                        version=version,
                        content=new_content,
                        created_at=now,
                        created_by=actor.id,
                    ))
                detail = {
                    **decision.as_detail(),
                    "from_status": DraftStatus.PENDING.value,
                    "to_status": target.value,
                    "version_before": expected_version,
                    "version_after": version,
                    "review_seconds": round((now - draft.created_at).total_seconds(), 3),
                    "draft_type": draft.draft_type.value,
                    "flags_acknowledged": len(draft.flags),
                }
                if reason is not None:
                    detail["reason"] = reason.strip()
                if new_content is not None:
                    detail["content_length_before"] = len(draft.content)
                    detail["content_length_after"] = len(new_content)
                self._record(actor, draft, audit_action, AuditOutcome.SUCCESS, detail, origin, session=session)
        except _RECORDED_FAILURES as exc:
            self._record_failure(actor, draft, audit_action, exc, origin)
            raise

        logger.info(
            "Draft transitioned: id=%s %s -> %s by %s (version %d -> %d)",
            draft.id, DraftStatus.PENDING.value, target.value, actor.id, expected_version, version,
        )
        return draft.model_copy(update={
            "status": target,
            "version": version,
            "content": new_content if new_content is not None else draft.content,
            "last_transitioned_at": now,
            "last_transitioned_by": actor.id,
            "review_comment": reason.strip() if reason is not None else draft.review_comment,
        })

    @staticmethod
    def _check_transition(
        draft: Draft,
        expected_version: int,
        target: DraftStatus,
        new_content: str | None,
        reason: str | None,
    ) -> None:
        if draft.status is not DraftStatus.PENDING or draft.version != expected_version:
            raise StaleVersion(draft.id, expected_version, draft.version, draft.status.value)
        if target is DraftStatus.REJECTED:
            if not reason or not reason.strip():
                raise ValidationError("A rejection requires a reason")
            return
        if target is DraftStatus.MODIFIED_APPROVED and (not new_content or not new_content.strip()):
            raise ValidationError("Modified content must not be empty")
        pending = draft.unacknowledged_flags
        if pending:
            raise UnacknowledgedFlags([f.code for f in pending])

    @staticmethod
    def _compare_and_swap(session: Session, draft: Draft, expected_version: int, **values) -> None:
        result = session.execute(
            update(DraftDB)
            .where(
                DraftDB.id == draft.id,
                DraftDB.version == expected_version,
                DraftDB.status == DraftStatus.PENDING.value,
            )
            .values(**values)
        )
        if result.rowcount != 1:
            current = session.execute(
                select(DraftDB.version, DraftDB.status).where(DraftDB.id == draft.id)
            ).one()
            raise StaleVersion(draft.id, expected_version, current.version, current.status)

    # ── Recording helpers ───────────────────────────────────────

    def _load_or_fail(
        self, draft_id: str, actor: Actor, audit_action: AuditAction, origin: str | None
    ) -> Draft:
        draft = self.load(draft_id)
        if draft is None:
            self.ledger.append(AuditEntry.for_actor(
                actor,
                action=audit_action,
                resource_type="draft",
                resource_id=draft_id,
                outcome=AuditOutcome.FAILURE,
                detail={"error": "not_found"},
                origin=origin or "unknown",
            ))
            raise ResourceNotFound(f"Draft {draft_id} not found")
        return draft

    def _record(
        self,
        actor: Actor,
        draft: Draft,
        audit_action: AuditAction,
        outcome: AuditOutcome,
        detail: dict,
        origin: str | None,
        session: Session | None = None,
    ) -> None:
        self.ledger.append(AuditEntry.for_actor(
            actor,
            tenant_id=draft.tenant_id,
            action=audit_action,
            resource_type="draft",
            resource_id=draft.id,
            matter_id=draft.matter_id,
            outcome=outcome,
            detail=detail,
            origin=origin or "unknown",
        ), session=session)

    def _record_failure(
        self,
        actor: Actor,
        draft: Draft,
        audit_action: AuditAction,
        exc: CaseGateError,
        origin: str | None,
    ) -> None:
        detail: dict = {"error": _error_code(exc), "message": str(exc)}
        if isinstance(exc, UnacknowledgedFlags):
            detail["flag_codes"] = exc.flag_codes
        if isinstance(exc, StaleVersion):
            detail.update(expected_version=exc.expected, actual_version=exc.actual, status=exc.status)
        self._record(actor, draft, audit_action, AuditOutcome.FAILURE, detail, origin)
        logger.info("Draft action failed: id=%s action=%s error=%s", draft.id, audit_action.value, detail["error"])


def _error_code(exc: CaseGateError) -> str:
    return {
        ValidationError: "validation_error",
        UnacknowledgedFlags: "unacknowledged_flags",
        StaleVersion: "stale_version",
    }.get(type(exc), type(exc).__name__)


def _dump_flags(flags: Iterable[Flag]) -> list[dict]:
    return [f.model_dump(mode="json") for f in flags]


def _to_draft(row: DraftDB) -> Draft:
    return Draft(
        id=row.id,
        tenant_id=row.tenant_id,
        matter_id=row.matter_id,
        draft_type=row.draft_type,
        version=row.version,
        status=row.status,
        content=row.content,
        flags=[Flag.model_validate(f) for f in row.flags or []],
        created_at=as_utc(row.created_at),
        last_transitioned_at=as_utc(row.last_transitioned_at) if row.last_transitioned_at else None,
        last_transitioned_by=row.last_transitioned_by,
        predecessor_id=row.predecessor_id,
        review_comment=row.review_comment,
    )
