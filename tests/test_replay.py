"""
Tests for ledger replay: the ledger alone reconstructs draft and send state,
and every logical action leaves exactly one record.
"""

from __future__ import annotations

from sqlalchemy import text

from casegate.domain.schema import DraftStatus, Recipient, RecipientType, SendMethod
from casegate.ledger.replay import find_discrepancies, replay

from conftest import ALL_ACKS, TENANT_A

COURT = Recipient(recipient_type=RecipientType.COURT, name="District Court", address="Filing window 3")


class TestReplay:

    def run_workflow(self, env):
        matter_id = env.seed_matter("2026-001")
        self.approved = env.new_draft(matter_id, flags=1)
        self.modified = env.new_draft(matter_id)
        self.rejected = env.new_draft(matter_id)
        env.clock.advance(120)

        env.drafts.acknowledge_flags(self.approved.id, env.pro, [self.approved.flags[0].code])
        env.drafts.approve(self.approved.id, env.pro, expected_version=1)
        env.drafts.modify_and_approve(self.modified.id, env.pro, expected_version=1, new_content="Edited.")
        env.drafts.reject(self.rejected.id, env.pro, expected_version=1, reason="Superseded by new figures")
        self.successor = env.drafts.supersede(self.rejected.id, "New figures.")
        self.send = env.send_gate.execute_send(env.pro, self.approved.id, COURT, SendMethod.PORTAL, ALL_ACKS)
        env.send_gate.execute_send(env.pro, self.approved.id, COURT, SendMethod.PORTAL, ALL_ACKS)

    def test_one_record_per_logical_action(self, env):
        self.run_workflow(env)
        # 3 registrations, 1 acknowledgment, 3 transitions, 1 supersession, 1 send, 1 replayed send
        assert len(env.records()) == 10

    def test_state_reconstructed_from_ledger(self, env):
        self.run_workflow(env)
        state = replay(env.ledger, TENANT_A)

        assert state.drafts[self.approved.id].status is DraftStatus.APPROVED
        assert state.drafts[self.modified.id].status is DraftStatus.MODIFIED_APPROVED
        assert state.drafts[self.modified.id].version == 2
        assert state.drafts[self.rejected.id].status is DraftStatus.REJECTED
        assert state.drafts[self.successor.id].status is DraftStatus.PENDING
        assert state.drafts[self.successor.id].predecessor_id == self.rejected.id
        assert list(state.sends) == [self.send.id]
        assert state.sends[self.send.id].method == "portal"

        for draft_id, replayed in state.drafts.items():
            stored = env.drafts.load(draft_id)
            assert (stored.status, stored.version) == (replayed.status, replayed.version)

    def test_no_discrepancies_after_normal_operation(self, env):
        self.run_workflow(env)
        assert find_discrepancies(env.ledger, env.database, TENANT_A) == []

    def test_out_of_band_edit_detected(self, env):
        self.run_workflow(env)
        with env.database.engine.begin() as conn:
            conn.execute(
                text("UPDATE drafts SET status = 'approved' WHERE id = :id"),
                {"id": self.successor.id},
            )
        [problem] = find_discrepancies(env.ledger, env.database, TENANT_A)
        assert self.successor.id in problem
