"""
Tests for the Anomaly Detector.

Validates:
- Quick approvals counted per actor against a duration threshold
- Bulk approvals counted per actor per time bucket
- Scan window and tenant scoping
"""

from __future__ import annotations

from datetime import timedelta

from casegate.domain.schema import AuditAction, AuditEntry, AuditOutcome, Role

from conftest import TENANT_A, TENANT_B


def _approval(env, actor_id: str, review_seconds: float, tenant: str = TENANT_A,
              action: AuditAction = AuditAction.APPROVE_DRAFT,
              outcome: AuditOutcome = AuditOutcome.SUCCESS):
    return env.ledger.append(AuditEntry(
        tenant_id=tenant,
        actor_id=actor_id,
        actor_role=Role.SUPERVISING_PROFESSIONAL,
        action=action,
        resource_type="draft",
        resource_id=f"draft-{actor_id}",
        outcome=outcome,
        detail={"review_seconds": review_seconds},
    ))


class TestQuickApprovals:

    def test_fast_reviewer_flagged_slow_reviewer_not(self, env):
        for _ in range(6):
            _approval(env, "pro-fast", 2)
            _approval(env, "pro-slow", 30)

        signals = env.anomalies.scan_quick_approvals(TENANT_A, timedelta(hours=24), threshold_seconds=5)

        assert [(s.actor_id, s.count) for s in signals] == [("pro-fast", 6)]

    def test_count_must_exceed_minimum(self, env):
        for _ in range(3):
            _approval(env, "pro-1", 1)
        assert env.anomalies.scan_quick_approvals(TENANT_A, timedelta(hours=1), 5) == []
        assert env.anomalies.scan_quick_approvals(TENANT_A, timedelta(hours=1), 5, min_count=2)[0].count == 3

    def test_sends_and_modifications_count(self, env):
        for action in (AuditAction.EXECUTE_SEND, AuditAction.MODIFY_DRAFT, AuditAction.APPROVE_DRAFT, AuditAction.APPROVE_DRAFT):
            _approval(env, "pro-1", 1, action=action)
        [signal] = env.anomalies.scan_quick_approvals(TENANT_A, timedelta(hours=1), 5)
        assert signal.count == 4

    def test_failures_and_other_tenants_ignored(self, env):
        for _ in range(6):
            _approval(env, "pro-1", 1, outcome=AuditOutcome.FAILURE)
            _approval(env, "pro-9", 1, tenant=TENANT_B)
        assert env.anomalies.scan_quick_approvals(TENANT_A, timedelta(hours=1), 5) == []

    def test_window_excludes_old_records(self, env):
        for _ in range(6):
            _approval(env, "pro-1", 1)
        env.clock.advance(3 * 3600)
        assert env.anomalies.scan_quick_approvals(TENANT_A, timedelta(hours=2), 5) == []

    def test_sorted_by_count(self, env):
        for _ in range(5):
            _approval(env, "pro-b", 1)
        for _ in range(7):
            _approval(env, "pro-a", 1)
        for _ in range(5):
            _approval(env, "pro-c", 1)
        signals = env.anomalies.scan_quick_approvals(TENANT_A, timedelta(hours=1), 5)
        assert [s.actor_id for s in signals] == ["pro-a", "pro-b", "pro-c"]

    def test_end_to_end_through_workflow(self, env):
        matter_id = env.seed_matter("2026-001")
        for _ in range(4):
            draft = env.new_draft(matter_id)
            env.clock.advance(2)
            env.drafts.approve(draft.id, env.pro, expected_version=1)
        [signal] = env.anomalies.scan_quick_approvals(TENANT_A, timedelta(hours=1), 5)
        assert (signal.actor_id, signal.count) == (env.pro.id, 4)


class TestBulkApprovals:

    def test_burst_within_one_minute(self, env):
        for _ in range(10):
            _approval(env, "pro-1", 60)
            env.clock.advance(1)
        for _ in range(9):
            _approval(env, "pro-2", 60)

        [signal] = env.anomalies.scan_bulk_approvals(TENANT_A, timedelta(hours=1), threshold_count=10)

        assert signal.actor_id == "pro-1"
        assert signal.count == 10
        assert signal.bucket_start == env.clock.now.replace(second=0, microsecond=0)

    def test_spread_out_approvals_not_flagged(self, env):
        for _ in range(10):
            _approval(env, "pro-1", 60)
            env.clock.advance(61)
        assert env.anomalies.scan_bulk_approvals(TENANT_A, timedelta(hours=1), threshold_count=10) == []

    def test_sends_are_not_approvals(self, env):
        for _ in range(10):
            _approval(env, "pro-1", 60, action=AuditAction.EXECUTE_SEND)
        assert env.anomalies.scan_bulk_approvals(TENANT_A, timedelta(hours=1), threshold_count=10) == []
