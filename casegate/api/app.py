"""
CaseGate — audit query surface for compliance viewers.

FastAPI application providing read-only access to:
- the audit ledger (filtered, paginated, restartable)
- hash chain verification
- review-behavior signals (quick and bulk approvals)
- the policy table and send history

The actor identity is established upstream and arrives in the
``X-Actor-Id``, ``X-Actor-Role`` and ``X-Tenant-Id`` headers. Every read is
authorized through the policy engine; denials are recorded in the ledger.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from casegate.bootstrap import CaseGateCore, build_core, configure_logging
from casegate.config import settings
from casegate.domain.schema import Action, Actor, AuditAction, AuditOutcome, Role
from casegate.errors import (
    AuditWriteFailure,
    PermissionDenied,
    ResourceNotFound,
    ValidationError,
)
from casegate.governance.policy import ResourceRef
from casegate.ledger.service import MAX_PAGE_SIZE, AuditFilter

logger = logging.getLogger(__name__)


class ApiState:
    """Application state injected at startup."""

    def __init__(self) -> None:
        self.core: CaseGateCore | None = None
        self.owns_core: bool = False
        self.startup_time: datetime = datetime.now(timezone.utc)


state = ApiState()


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup & shutdown lifecycle — connect to the durable store."""
    state.startup_time = datetime.now(timezone.utc)
    if state.core is None:
        state.core = build_core(settings)
        state.owns_core = True
        logger.info("Audit API connected to %s", state.core.database.engine.url.render_as_string(hide_password=True))

    yield

    if state.owns_core and state.core is not None:
        state.core.close()
        state.core = None
        state.owns_core = False
    logger.info("Audit API shut down")


app = FastAPI(
    title="CaseGate — Audit API",
    description="Read-only compliance surface over the CaseGate audit ledger",
    version="0.1.0",
    lifespan=lifespan,
)


# ── Error mapping ──────────────────────────────────────────────


@app.exception_handler(PermissionDenied)
async def _permission_denied(request: Request, exc: PermissionDenied) -> JSONResponse:
    return JSONResponse({"error": "permission_denied", "detail": str(exc)}, status_code=403)


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse({"error": "validation_error", "detail": str(exc)}, status_code=400)


@app.exception_handler(ResourceNotFound)
async def _not_found(request: Request, exc: ResourceNotFound) -> JSONResponse:
    return JSONResponse({"error": "not_found", "detail": str(exc)}, status_code=404)


@app.exception_handler(AuditWriteFailure)
async def _audit_write_failure(request: Request, exc: AuditWriteFailure) -> JSONResponse:
    logger.error("Request aborted, audit write failed: %s", exc)
    return JSONResponse({"error": "audit_unavailable", "detail": str(exc)}, status_code=503)


# ── Dependencies ───────────────────────────────────────────────


def get_core() -> CaseGateCore:
    if state.core is None:
        raise HTTPException(status_code=503, detail="Core services not initialized")
    return state.core


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
    x_tenant_id: str | None = Header(default=None),
) -> Actor:
    if not x_actor_id or not x_actor_role or not x_tenant_id:
        raise HTTPException(status_code=401, detail="Actor identity headers are required")
    try:
        role = Role(x_actor_role)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role: {x_actor_role}")
    return Actor(id=x_actor_id, role=role, tenant_id=x_tenant_id)


def _origin(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _authorize(
    core: CaseGateCore,
    actor: Actor,
    action: Action,
    request: Request,
    tenant_id: str | None = None,
) -> str:
    """Gate a read on the target tenant (the actor's own unless asked otherwise)."""
    target = tenant_id or actor.tenant_id
    core.guard.require(
        actor,
        action,
        ResourceRef(tenant_id=target, resource_type="audit-log"),
        origin=_origin(request),
    )
    return target


# ── Routes: Audit Ledger ───────────────────────────────────────


@app.get("/api/audit")
def api_audit(
    request: Request,
    tenant_id: str | None = None,
    actor_id: str | None = None,
    action: list[AuditAction] | None = Query(default=None),
    resource_type: str | None = None,
    resource_id: str | None = None,
    matter_id: str | None = None,
    outcome: AuditOutcome | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    page_token: str | None = None,
    limit: int = Query(default=100, ge=1, le=MAX_PAGE_SIZE),
    actor: Actor = Depends(get_actor),
    core: CaseGateCore = Depends(get_core),
):
    """One page of audit records in replay order."""
    target = _authorize(core, actor, Action.VIEW_AUDIT_LOG, request, tenant_id)
    page = core.ledger.query(
        AuditFilter(
            tenant_id=target,
            actor_id=actor_id,
            actions=action,
            resource_type=resource_type,
            resource_id=resource_id,
            matter_id=matter_id,
            outcome=outcome,
            since=since,
            until=until,
        ),
        page_token=page_token,
        limit=limit,
    )
    return JSONResponse({
        "records": [r.model_dump(mode="json") for r in page.records],
        "next_page_token": page.next_page_token,
    })


@app.get("/api/audit/verify")
def api_audit_verify(
    request: Request,
    actor: Actor = Depends(get_actor),
    core: CaseGateCore = Depends(get_core),
):
    target = _authorize(core, actor, Action.VIEW_AUDIT_LOG, request)
    is_valid, verified, message = core.ledger.verify_chain(target)
    if not is_valid:
        logger.critical("Hash chain verification failed: tenant=%s %s", target, message)
    return JSONResponse({
        "tenant_id": target,
        "valid": is_valid,
        "records_verified": verified,
        "message": message,
    })


# ── Routes: Review analytics ───────────────────────────────────


@app.get("/api/anomalies/quick-approvals")
def api_quick_approvals(
    request: Request,
    hours: int | None = Query(default=None, ge=1),
    threshold_seconds: float | None = Query(default=None, gt=0),
    min_count: int | None = Query(default=None, ge=0),
    actor: Actor = Depends(get_actor),
    core: CaseGateCore = Depends(get_core),
):
    target = _authorize(core, actor, Action.SCAN_ANOMALIES, request)
    config = core.config
    window = timedelta(hours=hours) if hours else core.quick_approval_window
    threshold = threshold_seconds or config.quick_approval_threshold_seconds
    signals = core.anomalies.scan_quick_approvals(
        target, window=window, threshold_seconds=threshold, min_count=min_count,
    )
    return JSONResponse({
        "tenant_id": target,
        "threshold_seconds": threshold,
        "window_hours": window.total_seconds() / 3600,
        "signals": [s.model_dump(mode="json") for s in signals],
    })


@app.get("/api/anomalies/bulk-approvals")
def api_bulk_approvals(
    request: Request,
    hours: int | None = Query(default=None, ge=1),
    threshold_count: int | None = Query(default=None, ge=1),
    bucket_minutes: int | None = Query(default=None, ge=1),
    actor: Actor = Depends(get_actor),
    core: CaseGateCore = Depends(get_core),
):
    target = _authorize(core, actor, Action.SCAN_ANOMALIES, request)
    config = core.config
    signals = core.anomalies.scan_bulk_approvals(
        target,
        window=timedelta(hours=hours) if hours else core.quick_approval_window,
        threshold_count=threshold_count or config.bulk_approval_threshold_count,
        bucket_minutes=bucket_minutes or config.bulk_approval_window_minutes,
    )
    return JSONResponse({
        "tenant_id": target,
        "signals": [s.model_dump(mode="json") for s in signals],
    })


# ── Routes: Policy and sends ───────────────────────────────────


@app.get("/api/policy")
def api_policy(
    request: Request,
    actor: Actor = Depends(get_actor),
    core: CaseGateCore = Depends(get_core),
):
    """The active action → role mapping, exported for audit."""
    _authorize(core, actor, Action.VIEW_AUDIT_LOG, request)
    return JSONResponse(core.policy.describe())


@app.get("/api/sends")
def api_sends(
    matter_id: str | None = None,
    actor: Actor = Depends(get_actor),
    core: CaseGateCore = Depends(get_core),
):
    sends = core.send_gate.list_sends(actor, matter_id=matter_id)
    return JSONResponse({"sends": [s.model_dump(mode="json") for s in sends]})


# ── Health Check ───────────────────────────────────────────────


@app.get("/health")
async def health():
    """Health check endpoint."""
    payload: dict[str, Any] = {
        "status": "healthy",
        "uptime_seconds": (datetime.now(timezone.utc) - state.startup_time).total_seconds(),
        "ledger_available": state.core is not None,
    }
    if state.core is not None:
        payload["policy_version"] = state.core.policy.version
    return JSONResponse(payload)


def main() -> None:
    import uvicorn

    configure_logging()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
