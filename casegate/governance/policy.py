"""
Policy Engine — Centralized, data-driven role authorization.

Every gated action is looked up in a single mapping (action → allowed roles,
plus whether the actor must be assigned to the matter). The mapping is data,
not code: it can be exported with ``describe()``, loaded from a JSON file,
and audited like any other record.

Decisions are returned, never raised. Callers record both outcomes; the
``ActionGuard`` in ``casegate.governance.guard`` does this for them.

Resource-scoped checks always verify the tenant. Where a rule requires
ownership, the actor must be assigned to the matter; administrators bypass
ownership but never tenant isolation.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, Field

from casegate.domain.schema import Action, Actor, Role

logger = logging.getLogger(__name__)

POLICY_VERSION = "2026-10.1"


class ActionRule(BaseModel):
    """Who may perform one action."""

    roles: frozenset[Role]
    requires_ownership: bool = False
    owner_roles: frozenset[Role] = Field(
        default_factory=frozenset,
        description="Roles subject to the ownership check; empty means all permitted roles",
    )
    description: str = ""


_PRO = Role.SUPERVISING_PROFESSIONAL
_STAFF = Role.ASSISTANT_STAFF
_CLIENT = Role.CLIENT
_ADMIN = Role.ADMINISTRATOR


_ASSIGNED_PRO = frozenset({_PRO})


DEFAULT_POLICY: dict[Action, ActionRule] = {
    Action.APPROVE_DRAFT: ActionRule(
        roles=frozenset({_PRO}),
        requires_ownership=True,
        owner_roles=_ASSIGNED_PRO,
        description="Approve a generated draft for external use",
    ),
    Action.MODIFY_DRAFT: ActionRule(
        roles=frozenset({_PRO}),
        requires_ownership=True,
        owner_roles=_ASSIGNED_PRO,
        description="Edit a draft's content while approving it",
    ),
    Action.REJECT_DRAFT: ActionRule(
        roles=frozenset({_PRO}),
        requires_ownership=True,
        owner_roles=_ASSIGNED_PRO,
        description="Reject a generated draft",
    ),
    Action.ACKNOWLEDGE_FLAG: ActionRule(
        roles=frozenset({_PRO}),
        requires_ownership=True,
        owner_roles=_ASSIGNED_PRO,
        description="Confirm a reviewer has read a draft's warning flags",
    ),
    Action.VIEW_DRAFT: ActionRule(
        roles=frozenset({_PRO}),
        description="Generated drafts are shown only on the professional's review screen",
    ),
    Action.EXECUTE_SEND: ActionRule(
        roles=frozenset({_PRO}),
        requires_ownership=True,
        owner_roles=_ASSIGNED_PRO,
        description="Transmit a notice, filing or legal response to a third party",
    ),
    Action.RUN_CONFLICT_CHECK: ActionRule(
        roles=frozenset({_PRO}),
        description="Run the automated conflict scan for a matter",
    ),
    Action.DECIDE_CONFLICT_CHECK: ActionRule(
        roles=frozenset({_PRO}),
        requires_ownership=True,
        owner_roles=_ASSIGNED_PRO,
        description="Accept or decline a matter after the conflict scan",
    ),
    Action.MODIFY_CASE_STATUS: ActionRule(
        roles=frozenset({_PRO, _ADMIN}),
        description="Change a matter's status",
    ),
    Action.VIEW_CASE: ActionRule(
        roles=frozenset({_PRO, _ADMIN, _STAFF, _CLIENT}),
        requires_ownership=True,
        owner_roles=frozenset({_STAFF, _CLIENT}),
        description="Staff see assigned matters, clients their own; support never sees content",
    ),
    Action.VIEW_AUDIT_LOG: ActionRule(
        roles=frozenset({_PRO, _ADMIN}),
        description="Read the audit ledger",
    ),
    Action.SCAN_ANOMALIES: ActionRule(
        roles=frozenset({_PRO, _ADMIN}),
        description="Run review-behavior analytics over the ledger",
    ),
}


class ResourceRef(BaseModel):
    """What an action is aimed at. ``assignees`` are the matter's assigned actor ids."""

    tenant_id: str
    resource_type: str
    resource_id: str | None = None
    matter_id: str | None = None
    assignees: frozenset[str] = Field(default_factory=frozenset)


@dataclass(frozen=True)
class AuthorizationDecision:
    """Result of checking one action for one actor."""

    allowed: bool
    action: Action
    role: Role
    reason: str
    policy_version: str = POLICY_VERSION

    def as_detail(self) -> dict[str, Any]:
        return {
            "authorized": self.allowed,
            "policy_version": self.policy_version,
            "policy_reason": self.reason,
        }


class PolicyEngine:
    """
    Central authorization engine.

    Usage:
        engine = PolicyEngine()
        decision = engine.authorize(actor, Action.APPROVE_DRAFT, resource)
        if not decision.allowed:
            ...  # record Denied, surface PermissionDenied
    """

    def __init__(
        self,
        rules: Mapping[Action, ActionRule] | None = None,
        version: str = POLICY_VERSION,
    ) -> None:
        self.rules = dict(DEFAULT_POLICY if rules is None else rules)
        self.version = version

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PolicyEngine":
        """
        Build an engine from plain data, e.g. a reviewed JSON policy file.

        Expected shape::

            {"version": "...", "actions": {"approve-draft": {"roles": [...], ...}}}

        Actions missing from the file keep no rule and are therefore denied.
        """
        rules = {
            Action(name): ActionRule.model_validate(rule)
            for name, rule in data.get("actions", {}).items()
        }
        return cls(rules=rules, version=str(data.get("version", POLICY_VERSION)))

    @classmethod
    def from_file(cls, path: str | Path) -> "PolicyEngine":
        with open(path, encoding="utf-8") as fh:
            engine = cls.from_mapping(json.load(fh))
        logger.info("Policy loaded from %s: version=%s actions=%d", path, engine.version, len(engine.rules))
        return engine

    def describe(self) -> dict[str, Any]:
        """Export the mapping in the same shape ``from_mapping`` accepts."""
        return {
            "version": self.version,
            "actions": {
                action.value: {
                    "roles": sorted(r.value for r in rule.roles),
                    "requires_ownership": rule.requires_ownership,
                    "owner_roles": sorted(r.value for r in rule.owner_roles),
                    "description": rule.description,
                }
                for action, rule in sorted(self.rules.items(), key=lambda kv: kv[0].value)
            },
        }

    def authorize(
        self,
        actor: Actor,
        action: Action,
        resource: ResourceRef | None = None,
    ) -> AuthorizationDecision:
        """
        Decide whether ``actor`` may perform ``action`` on ``resource``.

        Checks, in order: rule exists, role permitted, tenant matches,
        ownership (when required, unless administrator).
        """
        rule = self.rules.get(action)
        if rule is None:
            return self._deny(actor, action, f"No policy rule for action {action.value}")

        if actor.role not in rule.roles:
            return self._deny(
                actor, action,
                f"Role {actor.role.value} may not perform {action.value}",
            )

        if resource is not None:
            if resource.tenant_id != actor.tenant_id:
                return self._deny(
                    actor, action,
                    f"Cross-tenant access to {resource.resource_type} is not permitted",
                )

            ownership_applies = rule.requires_ownership and (
                not rule.owner_roles or actor.role in rule.owner_roles
            )
            if ownership_applies and actor.role is not Role.ADMINISTRATOR:
                if actor.id not in resource.assignees:
                    return self._deny(
                        actor, action,
                        f"Actor is not assigned to matter {resource.matter_id}",
                    )

        return AuthorizationDecision(
            allowed=True,
            action=action,
            role=actor.role,
            reason=f"Role {actor.role.value} is permitted to perform {action.value}",
            policy_version=self.version,
        )

    def allowed_roles(self, action: Action) -> frozenset[Role]:
        rule = self.rules.get(action)
        return rule.roles if rule else frozenset()

    def _deny(self, actor: Actor, action: Action, reason: str) -> AuthorizationDecision:
        logger.info(
            "Authorization denied: actor=%s role=%s action=%s reason=%s",
            actor.id, actor.role.value, action.value, reason,
        )
        return AuthorizationDecision(
            allowed=False,
            action=action,
            role=actor.role,
            reason=reason,
            policy_version=self.version,
        )
