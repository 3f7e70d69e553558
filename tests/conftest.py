"""
Shared fixtures: a file-backed SQLite store per test, a controllable clock,
a recording transport, and helpers to seed the read-only matter tables.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from casegate.analytics.anomalies import AnomalyDetector
from casegate.bootstrap import CaseGateCore
from casegate.config import CaseGateSettings
from casegate.domain.schema import (
    Actor,
    AuditOutcome,
    DraftType,
    Flag,
    FlagSeverity,
    Role,
    new_id,
    normalize_name,
)
from casegate.governance.guard import ActionGuard
from casegate.governance.policy import PolicyEngine
from casegate.ledger.database import Database
from casegate.ledger.models import CounterpartyDB, MatterDB, PartyDB
from casegate.ledger.service import AuditFilter, AuditLedger
from casegate.matters.conflicts import ConflictCheckService, ConflictMatcher
from casegate.matters.index import SqlMatterIndex
from casegate.workflow.drafts import DraftWorkflow
from casegate.workflow.send_gate import (
    SendGateCoordinator,
    SendLease,
    TransportReceipt,
    TransportStatus,
)

TENANT_A = "firm-a"
TENANT_B = "firm-b"

ALL_ACKS = {"content_reviewed": True, "recipient_verified": True, "responsibility_accepted": True}


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTransport:
    """Records every request; answers with a configurable status or error."""

    def __init__(self) -> None:
        self.requests = []
        self.status = TransportStatus.DELIVERED
        self.error: Exception | None = None

    def transmit(self, request, timeout):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return TransportReceipt(status=self.status, reference=f"ref-{len(self.requests)}")


class Env:
    """The wired core plus test controls."""

    def __init__(self, tmp_path) -> None:
        self.config = CaseGateSettings(
            database_url_override=f"sqlite:///{tmp_path / 'casegate.db'}",
            conflict_match_cap=2,
        )
        self.clock = FakeClock()
        self.transport = FakeTransport()

        self.database = Database(self.config.database_url)
        self.database.initialize()
        self.ledger = AuditLedger(self.database, clock=self.clock)
        self.policy = PolicyEngine()
        self.guard = ActionGuard(self.policy, self.ledger)
        self.matters = SqlMatterIndex(self.database)
        self.drafts = DraftWorkflow(self.database, self.ledger, self.guard, self.matters, clock=self.clock)
        self.lease = SendLease(self.database, lease_seconds=60, clock=self.clock)
        self.send_gate = SendGateCoordinator(
            self.database, self.ledger, self.guard, self.drafts,
            self.transport, self.lease, clock=self.clock,
        )
        self.conflicts = ConflictCheckService(
            ConflictMatcher(self.matters, match_cap=self.config.conflict_match_cap),
            self.matters, self.guard, self.ledger,
        )
        self.anomalies = AnomalyDetector(self.ledger, clock=self.clock)

        self.pro = Actor(id="pro-1", role=Role.SUPERVISING_PROFESSIONAL, tenant_id=TENANT_A)
        self.other_pro = Actor(id="pro-2", role=Role.SUPERVISING_PROFESSIONAL, tenant_id=TENANT_A)
        self.staff = Actor(id="staff-1", role=Role.ASSISTANT_STAFF, tenant_id=TENANT_A)
        self.client = Actor(id="client-1", role=Role.CLIENT, tenant_id=TENANT_A)
        self.admin = Actor(id="admin-1", role=Role.ADMINISTRATOR, tenant_id=TENANT_A)
        self.support = Actor(id="support-1", role=Role.SUPPORT, tenant_id=TENANT_A)
        self.foreign_pro = Actor(id="pro-b", role=Role.SUPERVISING_PROFESSIONAL, tenant_id=TENANT_B)

    @property
    def core(self) -> CaseGateCore:
        return CaseGateCore(
            config=self.config,
            database=self.database,
            ledger=self.ledger,
            policy=self.policy,
            guard=self.guard,
            matters=self.matters,
            conflicts=self.conflicts,
            drafts=self.drafts,
            send_gate=self.send_gate,
            anomalies=self.anomalies,
        )

    def seed_matter(
        self,
        number: str,
        tenant_id: str = TENANT_A,
        parties: tuple[str, ...] = (),
        counterparties: tuple[str, ...] = (),
        professional: str | None = "pro-1",
        staff: str | None = "staff-1",
        client: str | None = "client-1",
        opened_at: datetime | None = None,
    ) -> str:
        matter_id = new_id()
        with self.database.SessionLocal() as session:
            session.add(MatterDB(
                id=matter_id,
                tenant_id=tenant_id,
                number=number,
                status="open",
                assigned_professional_id=professional,
                assigned_staff_id=staff,
                client_id=client,
                opened_at=opened_at or self.clock(),
            ))
            for name in parties:
                session.add(PartyDB(matter_id=matter_id, name=name, normalized_name=normalize_name(name)))
            for name in counterparties:
                session.add(CounterpartyDB(matter_id=matter_id, name=name, normalized_name=normalize_name(name)))
            session.commit()
        return matter_id

    def new_draft(self, matter_id: str, flags: int = 0, tenant_id: str = TENANT_A):
        return self.drafts.register_draft(
            tenant_id,
            matter_id,
            DraftType.NOTICE,
            "Notice of appointment. Please direct all further contact to our office.",
            flags=[
                Flag(flag_type="missing_field", message=f"Check field {i}", severity=FlagSeverity.WARNING)
                for i in range(flags)
            ],
        )

    def approved_draft(self, matter_id: str, review_seconds: float = 60):
        draft = self.new_draft(matter_id)
        self.clock.advance(review_seconds)
        return self.drafts.approve(draft.id, self.pro, expected_version=draft.version)

    def records(self, tenant_id: str = TENANT_A, **kwargs):
        return list(self.ledger.iter_records(AuditFilter(tenant_id=tenant_id, **kwargs)))

    def denied(self, tenant_id: str = TENANT_A):
        return self.records(tenant_id, outcome=AuditOutcome.DENIED)

    def close(self) -> None:
        self.send_gate.close()
        self.database.dispose()


@pytest.fixture
def env(tmp_path):
    environment = Env(tmp_path)
    yield environment
    environment.close()
