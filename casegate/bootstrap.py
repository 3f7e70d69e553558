"""
CaseGate — service wiring.

Builds every core service over one shared database so that domain writes
and their audit records can commit together, and configures structured
logging for the process entrypoints (API server, audit CLI).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

import structlog

from casegate.analytics.anomalies import AnomalyDetector
from casegate.config import CaseGateSettings, settings as default_settings
from casegate.governance.guard import ActionGuard
from casegate.governance.policy import PolicyEngine
from casegate.ledger.database import Database
from casegate.ledger.service import AuditLedger
from casegate.matters.conflicts import ConflictCheckService, ConflictMatcher
from casegate.matters.index import SqlMatterIndex
from casegate.workflow.drafts import DraftWorkflow
from casegate.workflow.send_gate import (
    SendGateCoordinator,
    SendLease,
    TransmissionRequest,
    Transport,
    TransportReceipt,
)

logger = logging.getLogger(__name__)


def configure_logging(config: CaseGateSettings | None = None) -> None:
    """Configure structured logging."""
    config = config or default_settings
    level = logging.getLevelName(config.log_level.upper())
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class UnconfiguredTransport:
    """Stand-in when no transport adapter is wired: every send fails, recorded."""

    def transmit(self, request: TransmissionRequest, timeout: float) -> TransportReceipt:
        raise RuntimeError("No transport adapter is configured")


@dataclass
class CaseGateCore:
    """All core services, sharing one database and one ledger."""

    config: CaseGateSettings
    database: Database
    ledger: AuditLedger
    policy: PolicyEngine
    guard: ActionGuard
    matters: SqlMatterIndex
    conflicts: ConflictCheckService
    drafts: DraftWorkflow
    send_gate: SendGateCoordinator
    anomalies: AnomalyDetector

    @property
    def quick_approval_window(self) -> timedelta:
        return timedelta(hours=self.config.quick_approval_lookback_hours)

    def close(self) -> None:
        self.send_gate.close()
        self.database.dispose()


def build_core(
    config: CaseGateSettings | None = None,
    transport: Transport | None = None,
    initialize: bool = True,
) -> CaseGateCore:
    """
    Wire the core services.

    Args:
        config: Settings to use; the module-level settings by default.
        transport: Delivery adapter for the send gate.
        initialize: Create missing tables before returning.
    """
    config = config or default_settings
    log = structlog.get_logger()

    database = Database(config.database_url)
    if initialize:
        database.initialize()

    ledger = AuditLedger(database)
    policy = PolicyEngine.from_file(config.policy_file) if config.policy_file else PolicyEngine()
    guard = ActionGuard(policy, ledger)
    matters = SqlMatterIndex(database)
    matcher = ConflictMatcher(
        matters,
        match_cap=config.conflict_match_cap,
        similarity_threshold=config.conflict_similarity_threshold,
    )
    drafts = DraftWorkflow(database, ledger, guard, matters)
    send_gate = SendGateCoordinator(
        database,
        ledger,
        guard,
        drafts,
        transport or UnconfiguredTransport(),
        SendLease(
            database,
            lease_seconds=config.send_lease_seconds,
            wait_seconds=config.send_lease_wait_seconds,
        ),
        transport_timeout=config.transport_timeout_seconds,
    )

    log.info(
        "casegate.core.ready",
        policy_version=policy.version,
        transport=type(send_gate.transport).__name__,
    )
    return CaseGateCore(
        config=config,
        database=database,
        ledger=ledger,
        policy=policy,
        guard=guard,
        matters=matters,
        conflicts=ConflictCheckService(matcher, matters, guard, ledger),
        drafts=drafts,
        send_gate=send_gate,
        anomalies=AnomalyDetector(ledger, min_count=config.quick_approval_min_count),
    )
