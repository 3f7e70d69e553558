"""
Tests for the operator audit CLI.
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from casegate.domain.schema import AuditAction, AuditEntry, AuditOutcome
from casegate.ledger.audit import main, run_audit

from conftest import TENANT_A, TENANT_B


def _fill(env):
    for tenant in (TENANT_A, TENANT_B):
        for i in range(3):
            env.ledger.append(AuditEntry(
                tenant_id=tenant,
                action=AuditAction.DRAFT_REGISTERED,
                resource_type="draft",
                resource_id=f"d-{i}",
                outcome=AuditOutcome.SUCCESS,
            ))


class TestAuditCli:

    def test_empty_ledger_is_valid(self, env):
        assert run_audit(env.config.database_url) is True

    def test_valid_chains(self, env):
        _fill(env)
        assert run_audit(env.config.database_url, verbose=True) is True

    def test_tampered_tenant_fails(self, env):
        _fill(env)
        with env.database.engine.begin() as conn:
            conn.execute(
                text("UPDATE audit_records SET resource_id = 'forged' WHERE tenant_id = :t AND sequence = 3"),
                {"t": TENANT_B},
            )
        assert run_audit(env.config.database_url, tenant=TENANT_A) is True
        assert run_audit(env.config.database_url) is False

    def test_reconcile_flags_unrecorded_draft(self, env):
        matter_id = env.seed_matter("2026-001")
        draft = env.new_draft(matter_id)
        assert run_audit(env.config.database_url, reconcile=True) is True
        with env.database.engine.begin() as conn:
            conn.execute(text("UPDATE drafts SET version = 7 WHERE id = :id"), {"id": draft.id})
        assert run_audit(env.config.database_url, reconcile=True) is False

    def test_main_exit_code(self, env):
        _fill(env)
        with pytest.raises(SystemExit) as excinfo:
            main(["--database-url", env.config.database_url, "--tenant", TENANT_A])
        assert excinfo.value.code == 0
