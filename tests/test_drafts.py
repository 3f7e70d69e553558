"""
Tests for the Draft Workflow state machine.

Validates:
- PENDING → APPROVED / MODIFIED_APPROVED / REJECTED, all terminal
- Flag acknowledgment gating approval
- Optimistic concurrency (StaleVersion)
- One audit record per attempt, with review duration on approvals
- Supersession of rejected drafts without version reset
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy.exc import OperationalError

from casegate.domain.schema import AuditAction, AuditOutcome, DraftStatus, DraftType
from casegate.errors import (
    AuditWriteFailure,
    PermissionDenied,
    ResourceNotFound,
    StaleVersion,
    UnacknowledgedFlags,
    ValidationError,
)

from conftest import TENANT_A, TENANT_B


class TestRegistration:

    def test_register_creates_pending_draft_and_system_record(self, env):
        matter_id = env.seed_matter("2026-001")
        draft = env.new_draft(matter_id, flags=2)

        assert draft.status is DraftStatus.PENDING
        assert draft.version == 1
        assert all(not f.acknowledged for f in draft.flags)

        [record] = env.records()
        assert record.action is AuditAction.DRAFT_REGISTERED
        assert record.actor_id is None
        assert record.origin == "content-generator"
        assert record.detail["flag_codes"] == [f.code for f in draft.flags]

    def test_register_requires_matter_in_tenant(self, env):
        matter_id = env.seed_matter("2026-001", tenant_id=TENANT_B)
        with pytest.raises(ResourceNotFound):
            env.drafts.register_draft(TENANT_A, matter_id, DraftType.NOTICE, "text")

    def test_register_requires_content(self, env):
        matter_id = env.seed_matter("2026-001")
        with pytest.raises(ValidationError):
            env.drafts.register_draft(TENANT_A, matter_id, DraftType.NOTICE, "   ")


class TestApprove:

    def setup_matter(self, env):
        self.matter_id = env.seed_matter("2026-001")

    def test_approve_records_review_duration(self, env):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id)
        env.clock.advance(42)

        approved = env.drafts.approve(draft.id, env.pro, expected_version=1, origin="10.1.1.1")

        assert approved.status is DraftStatus.APPROVED
        assert approved.version == 1
        assert approved.last_transitioned_by == env.pro.id
        record = env.records(actions=[AuditAction.APPROVE_DRAFT])[-1]
        assert record.outcome is AuditOutcome.SUCCESS
        assert record.detail["review_seconds"] == 42.0
        assert record.detail["to_status"] == "approved"
        assert record.origin == "10.1.1.1"
        assert env.drafts.load(draft.id).status is DraftStatus.APPROVED

    def test_unacknowledged_flags_block_approval(self, env):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id, flags=2)

        with pytest.raises(UnacknowledgedFlags) as excinfo:
            env.drafts.approve(draft.id, env.pro, expected_version=1)
        assert excinfo.value.flag_codes == [f.code for f in draft.flags]

        failure = env.records(actions=[AuditAction.APPROVE_DRAFT])[-1]
        assert failure.outcome is AuditOutcome.FAILURE
        assert failure.detail["error"] == "unacknowledged_flags"
        assert env.drafts.load(draft.id).status is DraftStatus.PENDING

    def test_acknowledge_then_approve(self, env):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id, flags=2)
        codes = [f.code for f in draft.flags]

        partial = env.drafts.acknowledge_flags(draft.id, env.pro, codes[:1])
        assert [f.code for f in partial.unacknowledged_flags] == codes[1:]
        acknowledged = env.drafts.acknowledge_flags(draft.id, env.pro, codes)
        assert acknowledged.unacknowledged_flags == []
        assert acknowledged.flags[0].acknowledged_by == env.pro.id

        approved = env.drafts.approve(draft.id, env.pro, expected_version=1)
        assert approved.status is DraftStatus.APPROVED

    def test_interleaved_acknowledgments_both_kept(self, env, monkeypatch):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id, flags=2)
        first, second = (f.code for f in draft.flags)
        snapshot = env.drafts.load(draft.id)

        env.drafts.acknowledge_flags(draft.id, env.pro, [first])
        # The second reviewer read the draft before the first acknowledgment committed.
        monkeypatch.setattr(env.drafts, "load", lambda draft_id: snapshot)
        returned = env.drafts.acknowledge_flags(draft.id, env.pro, [second])
        monkeypatch.undo()

        assert returned.unacknowledged_flags == []
        stored = env.drafts.load(draft.id)
        assert stored.unacknowledged_flags == []
        assert {f.code for f in stored.flags if f.acknowledged} == {first, second}
        successes = env.records(actions=[AuditAction.ACKNOWLEDGE_FLAG], outcome=AuditOutcome.SUCCESS)
        assert [r.detail["remaining_unacknowledged"] for r in successes] == [[second], []]

        approved = env.drafts.approve(draft.id, env.pro, expected_version=1)
        assert approved.status is DraftStatus.APPROVED

    def test_acknowledge_unknown_code(self, env):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id, flags=1)
        with pytest.raises(ValidationError):
            env.drafts.acknowledge_flags(draft.id, env.pro, ["nope"])
        assert env.records(actions=[AuditAction.ACKNOWLEDGE_FLAG])[-1].outcome is AuditOutcome.FAILURE

    def test_staff_cannot_approve(self, env):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id)
        before = len(env.records())

        with pytest.raises(PermissionDenied):
            env.drafts.approve(draft.id, env.staff, expected_version=1)

        records = env.records()
        assert len(records) == before + 1
        assert records[-1].outcome is AuditOutcome.DENIED
        assert records[-1].action is AuditAction.APPROVE_DRAFT
        assert env.drafts.load(draft.id).status is DraftStatus.PENDING

    def test_unassigned_professional_cannot_approve(self, env):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id)
        with pytest.raises(PermissionDenied):
            env.drafts.approve(draft.id, env.other_pro, expected_version=1)

    def test_cross_tenant_professional_denied(self, env):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id)
        with pytest.raises(PermissionDenied):
            env.drafts.approve(draft.id, env.foreign_pro, expected_version=1)
        assert len(env.denied(TENANT_B)) == 1

    def test_unknown_draft(self, env):
        with pytest.raises(ResourceNotFound):
            env.drafts.approve("missing", env.pro, expected_version=1)
        [record] = env.records()
        assert record.outcome is AuditOutcome.FAILURE
        assert record.detail["error"] == "not_found"

    def test_terminal_state_is_final(self, env):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id)
        env.drafts.approve(draft.id, env.pro, expected_version=1)

        with pytest.raises(StaleVersion):
            env.drafts.approve(draft.id, env.pro, expected_version=1)
        with pytest.raises(StaleVersion):
            env.drafts.reject(draft.id, env.pro, expected_version=1, reason="second thoughts")
        assert env.drafts.load(draft.id).status is DraftStatus.APPROVED

    def test_wrong_expected_version(self, env):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id)
        with pytest.raises(StaleVersion) as excinfo:
            env.drafts.approve(draft.id, env.pro, expected_version=3)
        assert (excinfo.value.expected, excinfo.value.actual) == (3, 1)

    def test_concurrent_approvals_one_wins(self, env):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id)
        barrier = threading.Barrier(2)
        results: list[object] = []

        def attempt():
            barrier.wait()
            try:
                results.append(env.drafts.approve(draft.id, env.pro, expected_version=1))
            except StaleVersion as exc:
                results.append(exc)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        wins = [r for r in results if not isinstance(r, StaleVersion)]
        losses = [r for r in results if isinstance(r, StaleVersion)]
        assert len(wins) == 1
        assert len(losses) == 1
        approvals = env.records(actions=[AuditAction.APPROVE_DRAFT])
        assert [r.outcome for r in approvals].count(AuditOutcome.SUCCESS) == 1
        assert [r.outcome for r in approvals].count(AuditOutcome.FAILURE) == 1
        assert env.ledger.verify_chain(TENANT_A)[0]

    def test_audit_failure_aborts_transition(self, env, monkeypatch):
        self.setup_matter(env)
        draft = env.new_draft(self.matter_id)

        def broken(session, entry):
            raise OperationalError("INSERT INTO audit_records", {}, Exception("disk full"))

        monkeypatch.setattr(env.ledger, "_append", broken)
        with pytest.raises(AuditWriteFailure):
            env.drafts.approve(draft.id, env.pro, expected_version=1)
        monkeypatch.undo()

        assert env.drafts.load(draft.id).status is DraftStatus.PENDING


class TestModifyAndReject:

    def test_modify_and_approve_keeps_history(self, env):
        matter_id = env.seed_matter("2026-001")
        draft = env.new_draft(matter_id)

        modified = env.drafts.modify_and_approve(
            draft.id, env.pro, expected_version=1, new_content="Corrected notice text.",
        )

        assert modified.status is DraftStatus.MODIFIED_APPROVED
        assert modified.version == 2
        assert modified.content == "Corrected notice text."
        history = env.drafts.revisions(draft.id)
        assert [(r.version, r.content) for r in history] == [
            (1, draft.content),
            (2, "Corrected notice text."),
        ]
        record = env.records(actions=[AuditAction.MODIFY_DRAFT])[-1]
        assert record.detail["version_after"] == 2

    def test_modify_requires_content(self, env):
        matter_id = env.seed_matter("2026-001")
        draft = env.new_draft(matter_id)
        with pytest.raises(ValidationError):
            env.drafts.modify_and_approve(draft.id, env.pro, expected_version=1, new_content="")
        assert env.drafts.load(draft.id).version == 1

    def test_reject_with_empty_reason_changes_nothing(self, env):
        matter_id = env.seed_matter("2026-001")
        draft = env.new_draft(matter_id)

        with pytest.raises(ValidationError):
            env.drafts.reject(draft.id, env.pro, expected_version=1, reason="  ")

        stored = env.drafts.load(draft.id)
        assert stored.status is DraftStatus.PENDING
        assert stored.last_transitioned_at is None
        failure = env.records(actions=[AuditAction.REJECT_DRAFT])[-1]
        assert failure.outcome is AuditOutcome.FAILURE
        assert failure.detail["error"] == "validation_error"

    def test_reject_ignores_flags(self, env):
        matter_id = env.seed_matter("2026-001")
        draft = env.new_draft(matter_id, flags=1)
        rejected = env.drafts.reject(draft.id, env.pro, expected_version=1, reason="Wrong creditor address")
        assert rejected.status is DraftStatus.REJECTED
        assert rejected.review_comment == "Wrong creditor address"
        assert env.records(actions=[AuditAction.REJECT_DRAFT])[-1].detail["reason"] == "Wrong creditor address"

    def test_supersede_rejected_draft(self, env):
        matter_id = env.seed_matter("2026-001")
        draft = env.new_draft(matter_id)
        env.drafts.reject(draft.id, env.pro, expected_version=1, reason="Outdated figures")

        successor = env.drafts.supersede(draft.id, "Updated notice.")

        assert successor.id != draft.id
        assert successor.predecessor_id == draft.id
        assert successor.version == 2
        assert successor.status is DraftStatus.PENDING
        assert env.drafts.load(draft.id).status is DraftStatus.REJECTED
        assert env.records(actions=[AuditAction.DRAFT_SUPERSEDED])[-1].resource_id == successor.id

        with pytest.raises(ValidationError):
            env.drafts.supersede(draft.id, "Another attempt.")

    def test_only_rejected_drafts_are_superseded(self, env):
        matter_id = env.seed_matter("2026-001")
        draft = env.new_draft(matter_id)
        with pytest.raises(ValidationError):
            env.drafts.supersede(draft.id, "New text")


class TestViewing:

    def test_get_draft_is_recorded(self, env):
        matter_id = env.seed_matter("2026-001")
        draft = env.new_draft(matter_id)
        assert env.drafts.get_draft(draft.id, env.pro).id == draft.id
        assert env.records(actions=[AuditAction.VIEW_DRAFT])[-1].outcome is AuditOutcome.SUCCESS

    def test_client_cannot_view_generated_draft(self, env):
        matter_id = env.seed_matter("2026-001")
        draft = env.new_draft(matter_id)
        with pytest.raises(PermissionDenied):
            env.drafts.get_draft(draft.id, env.client)
