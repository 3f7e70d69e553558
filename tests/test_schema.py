"""
Tests for the domain schema.

Validates:
- Enum values used on the wire and in the ledger
- Name normalization and recipient identity
- Audit record hash computation
- Derived properties (flag state, conflict severity)
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from casegate.domain.schema import (
    GENESIS_HASH,
    Action,
    AuditAction,
    AuditEntry,
    AuditOutcome,
    AuditRecord,
    ConflictCandidate,
    ConflictType,
    Draft,
    DraftStatus,
    DraftType,
    Flag,
    Recipient,
    RecipientType,
    Role,
    Actor,
    as_utc,
    normalize_name,
)


class TestEnums:
    """Closed sets the rest of the system relies on."""

    def test_roles(self):
        assert {r.value for r in Role} == {
            "supervising_professional", "assistant_staff", "client", "administrator", "support",
        }

    def test_every_gated_action_is_auditable(self):
        audit_values = {a.value for a in AuditAction}
        for action in Action:
            assert action.value in audit_values

    def test_draft_status_terminality(self):
        assert not DraftStatus.PENDING.is_terminal
        for status in (DraftStatus.APPROVED, DraftStatus.MODIFIED_APPROVED, DraftStatus.REJECTED):
            assert status.is_terminal
        assert DraftStatus.MODIFIED_APPROVED.is_approved
        assert not DraftStatus.REJECTED.is_approved


class TestNames:

    def test_normalize_name_folds_case_width_and_spacing(self):
        assert normalize_name("  ACME   Finance  Co. ") == "acme finance co."
        assert normalize_name("ＡＣＭＥ") == "acme"
        assert normalize_name("") == ""

    def test_recipient_key_ignores_case_and_spacing(self):
        a = Recipient(recipient_type=RecipientType.CREDITOR, name="Acme Finance Co.", address="1 Main St")
        b = Recipient(recipient_type=RecipientType.CREDITOR, name="acme  finance co.", address="1 MAIN ST")
        c = Recipient(recipient_type=RecipientType.COURT, name="Acme Finance Co.", address="1 Main St")
        assert a.key == b.key
        assert a.key != c.key

    def test_recipient_requires_name(self):
        with pytest.raises(PydanticValidationError):
            Recipient(recipient_type=RecipientType.CLIENT, name="")


class TestAuditRecordHash:
    """Test the Pydantic AuditRecord hash computation."""

    def _record(self, **overrides) -> AuditRecord:
        fields = {
            "id": "rec-1",
            "tenant_id": "firm-a",
            "sequence": 1,
            "timestamp": datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc),
            "actor_id": "pro-1",
            "actor_role": Role.SUPERVISING_PROFESSIONAL,
            "action": AuditAction.APPROVE_DRAFT,
            "resource_type": "draft",
            "resource_id": "draft-1",
            "outcome": AuditOutcome.SUCCESS,
            "detail": {"review_seconds": 42.0},
        }
        fields.update(overrides)
        return AuditRecord(**fields)

    def test_compute_hash_deterministic(self):
        record = self._record()
        assert record.compute_hash() == record.compute_hash()

    def test_compute_hash_format(self):
        h = self._record().compute_hash()
        assert len(h) == 64
        int(h, 16)

    def test_hash_changes_with_detail(self):
        assert self._record().compute_hash() != self._record(detail={"review_seconds": 1.0}).compute_hash()

    def test_hash_depends_on_previous_hash(self):
        assert self._record().compute_hash() != self._record(previous_hash="f" * 64).compute_hash()

    def test_naive_timestamp_hashes_as_utc(self):
        naive = self._record(timestamp=datetime(2026, 10, 1, 9, 0))
        assert naive.compute_hash() == self._record().compute_hash()

    def test_genesis(self):
        assert self._record().previous_hash == GENESIS_HASH == "0" * 64


class TestModels:

    def test_audit_entry_for_actor(self):
        actor = Actor(id="pro-1", role=Role.SUPERVISING_PROFESSIONAL, tenant_id="firm-a")
        entry = AuditEntry.for_actor(
            actor, action=AuditAction.VIEW_CASE, resource_type="matter", outcome=AuditOutcome.SUCCESS,
        )
        assert entry.tenant_id == "firm-a"
        assert entry.actor_role is Role.SUPERVISING_PROFESSIONAL
        assert entry.origin == "unknown"

    def test_actor_is_frozen(self):
        actor = Actor(id="pro-1", role=Role.CLIENT, tenant_id="firm-a")
        with pytest.raises(PydanticValidationError):
            actor.role = Role.ADMINISTRATOR

    def test_unacknowledged_flags(self):
        draft = Draft(
            tenant_id="firm-a",
            matter_id="m-1",
            draft_type=DraftType.FILING,
            content="x",
            flags=[Flag(flag_type="a", message="a"), Flag(flag_type="b", message="b", acknowledged=True)],
        )
        assert [f.flag_type for f in draft.unacknowledged_flags] == ["a"]

    def test_conflict_severity_derived_from_type(self):
        severities = [
            ConflictCandidate(
                conflict_type=t, matter_id="m", matter_number="1", matched_name="n", detail="d",
            ).severity
            for t in (ConflictType.PARTY_DUPLICATE, ConflictType.COUNTERPARTY_MATCH, ConflictType.SIMILAR_NAME)
        ]
        assert severities == [3, 2, 1]

    def test_as_utc_converts_offsets(self):
        from datetime import timedelta

        tokyo = timezone(timedelta(hours=9))
        assert as_utc(datetime(2026, 10, 1, 18, 0, tzinfo=tokyo)) == datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)
