"""
Error taxonomy for gated actions.

Authorization and validation failures are recorded in the audit ledger and
then raised to the caller as one of these types. ``AuditWriteFailure`` is the
one condition that is never recovered: the action it guards did not happen.
"""

from __future__ import annotations

from typing import Any


class CaseGateError(Exception):
    """Base class for every error raised by the core."""


class PermissionDenied(CaseGateError):
    """The actor, action, or resource failed the policy check."""

    def __init__(self, message: str, decision: Any = None) -> None:
        super().__init__(message)
        self.decision = decision


class ValidationError(CaseGateError):
    """Malformed or incomplete input, e.g. an empty rejection reason."""


class ResourceNotFound(CaseGateError):
    """The referenced draft or matter does not exist."""


class UnacknowledgedFlags(CaseGateError):
    """A draft still carries flags that nobody has acknowledged."""

    def __init__(self, flag_codes: list[str]) -> None:
        super().__init__(
            f"{len(flag_codes)} flag(s) must be acknowledged first: {', '.join(flag_codes)}"
        )
        self.flag_codes = flag_codes


class StaleVersion(CaseGateError):
    """A concurrent transition won; the caller's view of the draft is out of date."""

    def __init__(self, draft_id: str, expected: int, actual: int, status: str) -> None:
        super().__init__(
            f"Draft {draft_id} changed concurrently: expected version {expected} "
            f"in pending, found version {actual} in {status}"
        )
        self.draft_id = draft_id
        self.expected = expected
        self.actual = actual
        self.status = status


class SendInProgress(CaseGateError):
    """Another send for the same draft currently holds the lease."""


class AuditWriteFailure(CaseGateError):
    """The audit record could not be durably written; the action was aborted."""


class ReconciliationRequired(AuditWriteFailure):
    """Transport delivered but the send could not be recorded."""

    def __init__(self, message: str, receipt: Any = None) -> None:
        super().__init__(message)
        self.receipt = receipt


class TransportFailure(CaseGateError):
    """
    The transport did not confirm delivery.

    ``retryable`` is False when the outcome is unknown (no answer before the
    deadline): the document may have gone out, so it must be reconciled first.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class LedgerIntegrityError(CaseGateError):
    """Raised on attempts to alter the ledger or when chain checks fail."""
