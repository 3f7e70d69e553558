"""
Action Guard — authorization that is never silent.

Wraps the policy engine so that every denial produces exactly one ``denied``
audit record before ``PermissionDenied`` reaches the caller. Allowed
decisions are returned so the caller's own success or failure record can
carry the policy version that let the action through.
"""

from __future__ import annotations

import logging

from casegate.domain.schema import Action, Actor, AuditAction, AuditEntry, AuditOutcome
from casegate.errors import PermissionDenied
from casegate.governance.policy import AuthorizationDecision, PolicyEngine, ResourceRef
from casegate.ledger.service import AuditLedger

logger = logging.getLogger(__name__)


class ActionGuard:
    def __init__(self, policy: PolicyEngine, ledger: AuditLedger) -> None:
        self.policy = policy
        self.ledger = ledger

    def require(
        self,
        actor: Actor,
        action: Action,
        resource: ResourceRef | None = None,
        origin: str | None = None,
        audit_action: AuditAction | None = None,
    ) -> AuthorizationDecision:
        """
        Authorize or record-and-raise.

        Raises:
            PermissionDenied: After the denial has been durably recorded.
            AuditWriteFailure: If the denial itself could not be recorded.
        """
        decision = self.policy.authorize(actor, action, resource)
        if decision.allowed:
            return decision

        self.record_denial(actor, decision, resource, origin, audit_action)
        raise PermissionDenied(decision.reason, decision=decision)

    def record_denial(
        self,
        actor: Actor,
        decision: AuthorizationDecision,
        resource: ResourceRef | None,
        origin: str | None = None,
        audit_action: AuditAction | None = None,
    ) -> None:
        # Denials land in the actor's own tenant, even for cross-tenant attempts.
        self.ledger.append(AuditEntry.for_actor(
            actor,
            action=audit_action or AuditAction(decision.action.value),
            resource_type=resource.resource_type if resource else decision.action.value,
            resource_id=resource.resource_id if resource else None,
            matter_id=resource.matter_id if resource and resource.tenant_id == actor.tenant_id else None,
            outcome=AuditOutcome.DENIED,
            detail={
                **decision.as_detail(),
                "target_tenant": resource.tenant_id if resource else actor.tenant_id,
            },
            origin=origin or "unknown",
        ))
        logger.warning(
            "Permission denied and recorded: actor=%s role=%s action=%s",
            actor.id, actor.role.value, decision.action.value,
        )
