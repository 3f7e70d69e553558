"""
Domain Schema — Pydantic models for every entity the core reasons about.

These models are the canonical data structures shared by the policy engine,
the audit ledger, the draft workflow, the send gate and the conflict matcher.
Persisted forms live in ``casegate.ledger.models``; services convert rows to
these models before handing them to callers.
"""

from __future__ import annotations

import enum
import hashlib
import json
import unicodedata
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field


GENESIS_HASH = "0" * 64  # The "previous hash" of a tenant's first audit record


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from stores that drop tzinfo."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def normalize_name(name: str) -> str:
    """Case- and width-normalized form of a person or company name."""
    folded = unicodedata.normalize("NFKC", name or "").casefold()
    return " ".join(folded.split())


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class Role(str, enum.Enum):
    """Closed set of roles an authenticated actor may hold."""

    SUPERVISING_PROFESSIONAL = "supervising_professional"
    ASSISTANT_STAFF = "assistant_staff"
    CLIENT = "client"
    ADMINISTRATOR = "administrator"
    SUPPORT = "support"


class Action(str, enum.Enum):
    """Gated actions. The role mapping lives in ``governance.policy``."""

    APPROVE_DRAFT = "approve-draft"
    MODIFY_DRAFT = "modify-draft"
    REJECT_DRAFT = "reject-draft"
    ACKNOWLEDGE_FLAG = "acknowledge-flag"
    VIEW_DRAFT = "view-draft"
    EXECUTE_SEND = "execute-send"
    RUN_CONFLICT_CHECK = "run-conflict-check"
    DECIDE_CONFLICT_CHECK = "decide-conflict-check"
    MODIFY_CASE_STATUS = "modify-case-status"
    VIEW_CASE = "view-case"
    VIEW_AUDIT_LOG = "view-audit-log"
    SCAN_ANOMALIES = "scan-anomalies"


class AuditAction(str, enum.Enum):
    """What an audit record describes. Superset of the gated actions."""

    APPROVE_DRAFT = "approve-draft"
    MODIFY_DRAFT = "modify-draft"
    REJECT_DRAFT = "reject-draft"
    ACKNOWLEDGE_FLAG = "acknowledge-flag"
    VIEW_DRAFT = "view-draft"
    EXECUTE_SEND = "execute-send"
    RUN_CONFLICT_CHECK = "run-conflict-check"
    DECIDE_CONFLICT_CHECK = "decide-conflict-check"
    MODIFY_CASE_STATUS = "modify-case-status"
    VIEW_CASE = "view-case"
    VIEW_AUDIT_LOG = "view-audit-log"
    SCAN_ANOMALIES = "scan-anomalies"

    # System-initiated or derived entries
    DRAFT_REGISTERED = "draft-registered"
    DRAFT_SUPERSEDED = "draft-superseded"
    SEND_REPLAYED = "send-replayed"
    CORRECTION = "correction"


class AuditOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"


class DraftType(str, enum.Enum):
    NOTICE = "notice"
    FILING = "filing"
    STATEMENT = "statement"
    SCHEDULE = "schedule"
    RESPONSE = "response"
    SUPPLEMENTARY = "supplementary"


class DraftStatus(str, enum.Enum):
    """Draft lifecycle. Everything but PENDING is terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    MODIFIED_APPROVED = "modified_approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not DraftStatus.PENDING

    @property
    def is_approved(self) -> bool:
        return self in (DraftStatus.APPROVED, DraftStatus.MODIFIED_APPROVED)


class FlagSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class RecipientType(str, enum.Enum):
    CLIENT = "client"
    CREDITOR = "creditor"
    COURT = "court"


class SendMethod(str, enum.Enum):
    EMAIL = "email"
    POSTAL = "postal"
    CERTIFIED_MAIL = "certified_mail"
    FAX = "fax"
    PORTAL = "portal"


class ConflictType(str, enum.Enum):
    PARTY_DUPLICATE = "party_duplicate"
    COUNTERPARTY_MATCH = "counterparty_match"
    SIMILAR_NAME = "similar_name"


CONFLICT_SEVERITY: dict[ConflictType, int] = {
    ConflictType.PARTY_DUPLICATE: 3,
    ConflictType.COUNTERPARTY_MATCH: 2,
    ConflictType.SIMILAR_NAME: 1,
}


class ConflictDecision(str, enum.Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


# ════════════════════════════════════════════════════════════════
# Actors and Matters
# ════════════════════════════════════════════════════════════════


class Actor(BaseModel):
    """An authenticated identity scoped to one tenant. Never mutated by the core."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: Role
    tenant_id: str
    display_name: str = ""


class Matter(BaseModel):
    """A case under supervision, as exposed by the read-only matter index."""

    id: str
    tenant_id: str
    number: str
    status: str = "open"
    assigned_professional_id: str | None = None
    assigned_staff_id: str | None = None
    client_id: str | None = None
    opened_at: datetime = Field(default_factory=utcnow)
    parties: list[str] = Field(default_factory=list, description="Represented person names")
    counterparties: list[str] = Field(
        default_factory=list, description="Creditor and third-party names"
    )

    @property
    def assignees(self) -> frozenset[str]:
        return frozenset(
            i for i in (self.assigned_professional_id, self.assigned_staff_id, self.client_id) if i
        )


# ════════════════════════════════════════════════════════════════
# Drafts
# ════════════════════════════════════════════════════════════════


class Flag(BaseModel):
    """A reviewer-facing warning attached to a generated draft."""

    code: str = Field(default_factory=lambda: uuid4().hex[:12])
    flag_type: str
    message: str
    severity: FlagSeverity = FlagSeverity.WARNING
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None


class Draft(BaseModel):
    """A generated document awaiting human approval before any external use."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    matter_id: str
    draft_type: DraftType
    version: int = Field(default=1, ge=1)
    status: DraftStatus = DraftStatus.PENDING
    content: str
    flags: list[Flag] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_transitioned_at: datetime | None = None
    last_transitioned_by: str | None = None
    predecessor_id: str | None = None
    review_comment: str | None = None

    @property
    def unacknowledged_flags(self) -> list[Flag]:
        return [f for f in self.flags if not f.acknowledged]


class DraftRevision(BaseModel):
    """One retained version of a draft's content."""

    draft_id: str
    version: int
    content: str
    created_at: datetime
    created_by: str | None = None


# ════════════════════════════════════════════════════════════════
# Audit Ledger Models
# ════════════════════════════════════════════════════════════════


class AuditEntry(BaseModel):
    """What a caller hands to the ledger. Id, sequence and hashes are assigned on append."""

    tenant_id: str
    actor_id: str | None = None
    actor_role: Role | None = None
    action: AuditAction
    resource_type: str
    resource_id: str | None = None
    matter_id: str | None = None
    outcome: AuditOutcome
    detail: dict[str, Any] = Field(default_factory=dict)
    origin: str = "unknown"
    supersedes: str | None = None

    @classmethod
    def for_actor(cls, actor: Actor | None, **kwargs: Any) -> "AuditEntry":
        if actor is None:
            return cls(**kwargs)
        return cls(
            tenant_id=kwargs.pop("tenant_id", actor.tenant_id),
            actor_id=actor.id,
            actor_role=actor.role,
            **kwargs,
        )


class AuditRecord(BaseModel):
    """
    An immutable ledger entry describing one attempted or completed action.

    Each record carries the hash of its tenant's previous record, forming a
    verifiable chain: any edit, deletion or reordering changes a recomputed
    hash.
    """

    id: str = Field(default_factory=new_id)
    tenant_id: str
    sequence: int = Field(description="Per-tenant, monotonically increasing")
    timestamp: datetime = Field(default_factory=utcnow)
    actor_id: str | None = None
    actor_role: Role | None = None
    action: AuditAction
    resource_type: str
    resource_id: str | None = None
    matter_id: str | None = None
    outcome: AuditOutcome
    detail: dict[str, Any] = Field(default_factory=dict)
    origin: str = "unknown"
    supersedes: str | None = None
    previous_hash: str = GENESIS_HASH
    record_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256(previous_hash || canonical_json(fields))."""
        hashable = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "sequence": self.sequence,
            "previous_hash": self.previous_hash,
            "timestamp": as_utc(self.timestamp).isoformat(),
            "actor_id": self.actor_id,
            "actor_role": self.actor_role.value if self.actor_role else None,
            "action": self.action.value,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "matter_id": self.matter_id,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "origin": self.origin,
            "supersedes": self.supersedes,
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256(
            (self.previous_hash + canonical).encode("utf-8")
        ).hexdigest()


# ════════════════════════════════════════════════════════════════
# Conflict Check Models
# ════════════════════════════════════════════════════════════════


class ConflictCandidate(BaseModel):
    """An automatically detected possible conflict requiring a human decision."""

    conflict_type: ConflictType
    matter_id: str
    matter_number: str
    matched_name: str
    detail: str
    similarity: float | None = None
    matter_opened_at: datetime | None = None

    @computed_field
    @property
    def severity(self) -> int:
        return CONFLICT_SEVERITY[self.conflict_type]


# ════════════════════════════════════════════════════════════════
# Send Gate Models
# ════════════════════════════════════════════════════════════════


class Recipient(BaseModel):
    """Who an outward-facing transmission is addressed to."""

    recipient_type: RecipientType
    name: str = Field(min_length=1)
    address: str = ""

    @property
    def key(self) -> str:
        return f"{self.recipient_type.value}:{normalize_name(self.name)}:{normalize_name(self.address)}"


REQUIRED_ACKNOWLEDGMENTS = ("content_reviewed", "recipient_verified", "responsibility_accepted")


class SendRecord(BaseModel):
    """Proof that a transmission happened. Exactly one per successful send."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    draft_id: str
    matter_id: str
    recipient: Recipient
    method: SendMethod
    authorized_by: str
    authorized_role: Role
    sent_at: datetime = Field(default_factory=utcnow)
    draft_version: int
    content_snapshot: str
    transport_reference: str | None = None
    audit_record_id: str | None = None
