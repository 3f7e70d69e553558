"""
Ledger Replay — rebuild draft and send state from audit records alone.

The ledger is the ground truth. Replaying a tenant's successful records in
order yields every draft's status and version and every send that happened;
``find_discrepancies`` compares that picture with the operational tables.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field
from sqlalchemy import select

from casegate.domain.schema import AuditAction, AuditOutcome, AuditRecord, DraftStatus
from casegate.ledger.database import Database
from casegate.ledger.models import DraftDB, SendRecordDB
from casegate.ledger.service import AuditFilter, AuditLedger

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    AuditAction.APPROVE_DRAFT: DraftStatus.APPROVED,
    AuditAction.MODIFY_DRAFT: DraftStatus.MODIFIED_APPROVED,
    AuditAction.REJECT_DRAFT: DraftStatus.REJECTED,
}


class ReplayedDraft(BaseModel):
    draft_id: str
    matter_id: str | None = None
    status: DraftStatus = DraftStatus.PENDING
    version: int = 1
    predecessor_id: str | None = None
    transitioned_by: str | None = None


class ReplayedSend(BaseModel):
    send_record_id: str
    draft_id: str
    matter_id: str | None = None
    method: str
    recipient: dict = Field(default_factory=dict)
    authorized_by: str | None = None
    audit_record_id: str


class ReplayState(BaseModel):
    tenant_id: str
    drafts: dict[str, ReplayedDraft] = Field(default_factory=dict)
    sends: dict[str, ReplayedSend] = Field(default_factory=dict)
    records_applied: int = 0

    def apply(self, record: AuditRecord) -> None:
        if record.outcome is not AuditOutcome.SUCCESS or record.resource_id is None:
            return
        detail = record.detail

        if record.action in (AuditAction.DRAFT_REGISTERED, AuditAction.DRAFT_SUPERSEDED):
            self.drafts[record.resource_id] = ReplayedDraft(
                draft_id=record.resource_id,
                matter_id=record.matter_id,
                version=int(detail.get("version", 1)),
                predecessor_id=detail.get("predecessor_id"),
            )
        elif record.action in _TRANSITIONS:
            draft = self.drafts.setdefault(
                record.resource_id,
                ReplayedDraft(draft_id=record.resource_id, matter_id=record.matter_id),
            )
            draft.status = _TRANSITIONS[record.action]
            draft.version = int(detail.get("version_after", draft.version))
            draft.transitioned_by = record.actor_id
        elif record.action is AuditAction.EXECUTE_SEND:
            send_id = detail.get("send_record_id")
            if not send_id:
                return
            self.sends[send_id] = ReplayedSend(
                send_record_id=send_id,
                draft_id=record.resource_id,
                matter_id=record.matter_id,
                method=detail.get("method", ""),
                recipient=detail.get("recipient") or {},
                authorized_by=record.actor_id,
                audit_record_id=record.id,
            )
        else:
            return
        self.records_applied += 1


def replay(ledger: AuditLedger, tenant_id: str) -> ReplayState:
    """Fold every successful state-changing record of a tenant, in replay order."""
    state = ReplayState(tenant_id=tenant_id)
    for record in ledger.iter_records(AuditFilter(tenant_id=tenant_id, outcome=AuditOutcome.SUCCESS)):
        state.apply(record)
    return state


def find_discrepancies(ledger: AuditLedger, database: Database, tenant_id: str) -> list[str]:
    """
    Compare the replayed state with the operational tables.

    Returns:
        Human-readable descriptions; an empty list means they agree.
    """
    state = replay(ledger, tenant_id)
    problems: list[str] = []

    with database.SessionLocal() as session:
        drafts = {
            row.id: row
            for row in session.execute(
                select(DraftDB).where(DraftDB.tenant_id == tenant_id)
            ).scalars()
        }
        sends = {
            row.id: row
            for row in session.execute(
                select(SendRecordDB).where(SendRecordDB.tenant_id == tenant_id)
            ).scalars()
        }

    for draft_id, row in drafts.items():
        replayed = state.drafts.get(draft_id)
        if replayed is None:
            problems.append(f"Draft {draft_id} has no registration record")
        elif replayed.status.value != row.status or replayed.version != row.version:
            problems.append(
                f"Draft {draft_id}: store says {row.status} v{row.version}, "
                f"ledger says {replayed.status.value} v{replayed.version}"
            )
    for draft_id in state.drafts.keys() - drafts.keys():
        problems.append(f"Draft {draft_id} is in the ledger but missing from the store")

    for send_id in sends.keys() - state.sends.keys():
        problems.append(f"Send {send_id} has no execute-send record")
    for send_id in state.sends.keys() - sends.keys():
        problems.append(f"Send {send_id} is in the ledger but missing from the store")

    if problems:
        logger.error("Replay found %d discrepancies for tenant %s", len(problems), tenant_id)
    return problems
