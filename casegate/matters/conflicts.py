"""
Conflict Matcher — cross-references a new matter's names against the tenant's corpus.

Three signals, strongest first:
1. PARTY_DUPLICATE     — the represented person already appears in another matter
2. COUNTERPARTY_MATCH  — a creditor/third party already appears in another matter
3. SIMILAR_NAME        — near-identical spelling (difflib ratio on normalized names)

Matching is read-only and deterministic for a given dataset. What to do
about the result is a separate, gated and recorded decision
(``ConflictCheckService.decide``); the automated result is stored alongside
the human decision, never replaced by it.

Known completeness limit: exact counterparty matches are capped per name
(``match_cap``). Truncation is reported in ``ConflictScan.truncated``.
"""

from __future__ import annotations

import logging
from difflib import SequenceMatcher
from typing import Iterable

from pydantic import BaseModel, Field

from casegate.domain.schema import (
    Action,
    Actor,
    AuditAction,
    AuditEntry,
    AuditOutcome,
    AuditRecord,
    ConflictCandidate,
    ConflictDecision,
    ConflictType,
    Matter,
    normalize_name,
)
from casegate.errors import ResourceNotFound, ValidationError
from casegate.governance.guard import ActionGuard
from casegate.governance.policy import ResourceRef
from casegate.ledger.service import AuditFilter, AuditLedger
from casegate.matters.index import MatterIndex

logger = logging.getLogger(__name__)

DEFAULT_MATCH_CAP = 5
DEFAULT_SIMILARITY_THRESHOLD = 0.85


def name_similarity(a: str, b: str) -> float:
    """Similarity of two names after normalization, 0.0 – 1.0."""
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return 0.0
    if na == nb:
        return 1.0
    return SequenceMatcher(None, na, nb).ratio()


class ConflictScan(BaseModel):
    """The full automated result for one matter."""

    tenant_id: str
    matter_id: str
    matter_number: str
    party_names: list[str] = Field(default_factory=list)
    counterparty_names: list[str] = Field(default_factory=list)
    candidates: list[ConflictCandidate] = Field(default_factory=list)
    truncated: dict[str, int] = Field(
        default_factory=dict,
        description="Counterparty name → cap reached; further matches were not listed",
    )

    @property
    def has_conflicts(self) -> bool:
        return bool(self.candidates)


def _unique_names(names: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for name in names:
        key = normalize_name(name)
        if key and key not in seen:
            seen.add(key)
            result.append(name)
    return result


class ConflictMatcher:
    """Produces ordered ConflictCandidates for a matter. Never writes."""

    def __init__(
        self,
        index: MatterIndex,
        match_cap: int = DEFAULT_MATCH_CAP,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> None:
        self.index = index
        self.match_cap = match_cap
        self.similarity_threshold = similarity_threshold

    def find_conflicts(self, tenant_id: str, candidate_matter_id: str) -> list[ConflictCandidate]:
        """Ordered by severity desc, then the referenced matter's opening time asc."""
        return self.scan(tenant_id, candidate_matter_id).candidates

    def scan(self, tenant_id: str, candidate_matter_id: str) -> ConflictScan:
        matter = self.index.get(candidate_matter_id)
        if matter is None or matter.tenant_id != tenant_id:
            raise ResourceNotFound(f"Matter {candidate_matter_id} not found in tenant {tenant_id}")

        parties = _unique_names(matter.parties)
        counterparties = _unique_names(matter.counterparties)
        found: dict[tuple[str, str, str], ConflictCandidate] = {}
        truncated: dict[str, int] = {}

        def add(candidate: ConflictCandidate) -> None:
            key = (candidate.conflict_type.value, candidate.matter_id, normalize_name(candidate.matched_name))
            found.setdefault(key, candidate)

        for name in parties:
            for other in self.index.matters_with_party(tenant_id, name, exclude=matter.id):
                add(self._candidate(
                    ConflictType.PARTY_DUPLICATE, other, name,
                    f"Party '{name}' is also the represented person in matter {other.number}",
                ))

        for name in counterparties:
            matches = self.index.matters_with_counterparty(
                tenant_id, name, exclude=matter.id, limit=self.match_cap + 1,
            )
            if len(matches) > self.match_cap:
                truncated[name] = self.match_cap
                matches = matches[: self.match_cap]
                logger.warning(
                    "Counterparty match list truncated: matter=%s name=%s cap=%d",
                    matter.id, name, self.match_cap,
                )
            for other in matches:
                add(self._candidate(
                    ConflictType.COUNTERPARTY_MATCH, other, name,
                    f"Counterparty '{name}' also appears in matter {other.number}",
                ))

        for other in self.index.other_matters(tenant_id, exclude=matter.id):
            for mine, theirs in (
                (parties, other.parties),
                (counterparties, other.counterparties),
            ):
                for name in mine:
                    for other_name in theirs:
                        score = name_similarity(name, other_name)
                        if self.similarity_threshold <= score < 1.0:
                            add(self._candidate(
                                ConflictType.SIMILAR_NAME, other, other_name,
                                f"'{name}' resembles '{other_name}' in matter {other.number}",
                                similarity=round(score, 4),
                            ))

        candidates = sorted(
            found.values(),
            key=lambda c: (-c.severity, c.matter_opened_at, c.matter_number, c.matched_name),
        )
        logger.info(
            "Conflict scan complete: matter=%s candidates=%d truncated=%d",
            matter.id, len(candidates), len(truncated),
        )
        return ConflictScan(
            tenant_id=tenant_id,
            matter_id=matter.id,
            matter_number=matter.number,
            party_names=parties,
            counterparty_names=counterparties,
            candidates=candidates,
            truncated=truncated,
        )

    @staticmethod
    def _candidate(
        conflict_type: ConflictType,
        other: Matter,
        name: str,
        detail: str,
        similarity: float | None = None,
    ) -> ConflictCandidate:
        return ConflictCandidate(
            conflict_type=conflict_type,
            matter_id=other.id,
            matter_number=other.number,
            matched_name=name,
            detail=detail,
            similarity=similarity,
            matter_opened_at=other.opened_at,
        )


class ConflictCheckService:
    """Gated, recorded entry points around the matcher."""

    def __init__(
        self,
        matcher: ConflictMatcher,
        index: MatterIndex,
        guard: ActionGuard,
        ledger: AuditLedger,
    ) -> None:
        self.matcher = matcher
        self.index = index
        self.guard = guard
        self.ledger = ledger

    def run_check(self, actor: Actor, matter_id: str, origin: str | None = None) -> ConflictScan:
        """Run the automated scan for the actor's matter and record that it was run."""
        matter = self._load(actor, matter_id, AuditAction.RUN_CONFLICT_CHECK, origin)
        decision = self.guard.require(
            actor, Action.RUN_CONFLICT_CHECK, _matter_ref(matter), origin=origin,
        )
        scan = self.matcher.scan(matter.tenant_id, matter.id)
        self.ledger.append(AuditEntry.for_actor(
            actor,
            action=AuditAction.RUN_CONFLICT_CHECK,
            resource_type="matter",
            resource_id=matter.id,
            matter_id=matter.id,
            outcome=AuditOutcome.SUCCESS,
            detail={
                **decision.as_detail(),
                "candidate_count": len(scan.candidates),
                "truncated": scan.truncated,
            },
            origin=origin or "unknown",
        ))
        return scan

    def decide(
        self,
        actor: Actor,
        matter_id: str,
        decision: ConflictDecision,
        reason: str,
        origin: str | None = None,
    ) -> AuditRecord:
        """
        Record the professional's accept/decline decision.

        The automated candidate list is re-derived and stored in the same
        record so the raw result survives next to the human judgment.

        Raises:
            PermissionDenied: Actor may not decide for this matter.
            ValidationError: ``reason`` is empty.
        """
        matter = self._load(actor, matter_id, AuditAction.DECIDE_CONFLICT_CHECK, origin)
        authorization = self.guard.require(
            actor, Action.DECIDE_CONFLICT_CHECK, _matter_ref(matter), origin=origin,
        )

        if not reason or not reason.strip():
            self.ledger.append(AuditEntry.for_actor(
                actor,
                action=AuditAction.DECIDE_CONFLICT_CHECK,
                resource_type="matter",
                resource_id=matter.id,
                matter_id=matter.id,
                outcome=AuditOutcome.FAILURE,
                detail={"error": "validation_error", "message": "A reason is required"},
                origin=origin or "unknown",
            ))
            raise ValidationError("A conflict-check decision requires a reason")

        scan = self.matcher.scan(matter.tenant_id, matter.id)
        record = self.ledger.append(AuditEntry.for_actor(
            actor,
            action=AuditAction.DECIDE_CONFLICT_CHECK,
            resource_type="matter",
            resource_id=matter.id,
            matter_id=matter.id,
            outcome=AuditOutcome.SUCCESS,
            detail={
                **authorization.as_detail(),
                "decision": decision.value,
                "reason": reason.strip(),
                "party_names": scan.party_names,
                "counterparty_names": scan.counterparty_names,
                "candidates": [c.model_dump(mode="json") for c in scan.candidates],
                "truncated": scan.truncated,
            },
            origin=origin or "unknown",
        ))
        logger.info(
            "Conflict decision recorded: matter=%s decision=%s candidates=%d",
            matter.id, decision.value, len(scan.candidates),
        )
        return record

    def latest_decision(self, tenant_id: str, matter_id: str) -> AuditRecord | None:
        """The most recent successful decision, read back from the ledger."""
        latest = None
        for record in self.ledger.iter_records(AuditFilter(
            tenant_id=tenant_id,
            matter_id=matter_id,
            actions=[AuditAction.DECIDE_CONFLICT_CHECK],
            outcome=AuditOutcome.SUCCESS,
        )):
            latest = record
        return latest

    def _load(self, actor: Actor, matter_id: str, action: AuditAction, origin: str | None) -> Matter:
        matter = self.index.get(matter_id)
        if matter is None:
            self.ledger.append(AuditEntry.for_actor(
                actor,
                action=action,
                resource_type="matter",
                resource_id=matter_id,
                outcome=AuditOutcome.FAILURE,
                detail={"error": "not_found"},
                origin=origin or "unknown",
            ))
            raise ResourceNotFound(f"Matter {matter_id} not found")
        return matter


def _matter_ref(matter: Matter) -> ResourceRef:
    return ResourceRef(
        tenant_id=matter.tenant_id,
        resource_type="matter",
        resource_id=matter.id,
        matter_id=matter.id,
        assignees=matter.assignees,
    )
