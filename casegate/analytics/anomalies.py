"""
Anomaly Detector — review-behavior analytics over the audit ledger.

Read-side only. Nothing here blocks or alters an action; the signals are
compliance prompts for human follow-up.

Detections:
- Quick approvals: approvals and sends recorded with a review duration under
  a threshold (default 5 seconds), counted per actor
- Bulk approvals: an actor approving many drafts inside one short time
  bucket (default 10 or more within a minute)
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable

from pydantic import BaseModel

from casegate.domain.schema import AuditAction, AuditOutcome, utcnow
from casegate.ledger.service import AuditFilter, AuditLedger

logger = logging.getLogger(__name__)

DEFAULT_QUICK_APPROVAL_SECONDS = 5.0
DEFAULT_QUICK_APPROVAL_MIN_COUNT = 3
DEFAULT_BULK_APPROVAL_COUNT = 10
DEFAULT_BULK_WINDOW_MINUTES = 1
DEFAULT_LOOKBACK = timedelta(hours=24)

# Actions whose records carry ``review_seconds``.
REVIEWED_ACTIONS = [AuditAction.APPROVE_DRAFT, AuditAction.MODIFY_DRAFT, AuditAction.EXECUTE_SEND]
APPROVAL_ACTIONS = [AuditAction.APPROVE_DRAFT, AuditAction.MODIFY_DRAFT]


class QuickApprovalSignal(BaseModel):
    actor_id: str
    count: int


class BulkApprovalSignal(BaseModel):
    actor_id: str
    bucket_start: datetime
    count: int


class AnomalyDetector:
    """
    Scans one tenant's ledger for rubber-stamp patterns.

    Usage:
        detector = AnomalyDetector(ledger)
        for signal in detector.scan_quick_approvals(tenant_id, timedelta(hours=24), 5.0):
            ...
    """

    def __init__(
        self,
        ledger: AuditLedger,
        min_count: int = DEFAULT_QUICK_APPROVAL_MIN_COUNT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.min_count = min_count
        self._clock = clock

    def scan_quick_approvals(
        self,
        tenant_id: str,
        window: timedelta = DEFAULT_LOOKBACK,
        threshold_seconds: float = DEFAULT_QUICK_APPROVAL_SECONDS,
        min_count: int | None = None,
    ) -> list[QuickApprovalSignal]:
        """
        Actors with more than ``min_count`` sub-threshold reviews in the window.

        Args:
            tenant_id: Tenant to scan.
            window: How far back from now to look.
            threshold_seconds: Review durations strictly below this count.
            min_count: Counts must exceed this; defaults to the detector's setting.

        Returns:
            Signals sorted by count descending, then actor id.
        """
        floor = self.min_count if min_count is None else min_count
        counts: Counter[str] = Counter()
        for record in self._successes(tenant_id, window, REVIEWED_ACTIONS):
            seconds = record.detail.get("review_seconds")
            if record.actor_id is None or not isinstance(seconds, (int, float)):
                continue
            if seconds < threshold_seconds:
                counts[record.actor_id] += 1

        signals = sorted(
            (QuickApprovalSignal(actor_id=a, count=c) for a, c in counts.items() if c > floor),
            key=lambda s: (-s.count, s.actor_id),
        )
        if signals:
            logger.warning(
                "Quick approvals detected: tenant=%s actors=%d threshold=%.1fs",
                tenant_id, len(signals), threshold_seconds,
            )
        return signals

    def scan_bulk_approvals(
        self,
        tenant_id: str,
        window: timedelta = DEFAULT_LOOKBACK,
        threshold_count: int = DEFAULT_BULK_APPROVAL_COUNT,
        bucket_minutes: int = DEFAULT_BULK_WINDOW_MINUTES,
    ) -> list[BulkApprovalSignal]:
        """Actors with at least ``threshold_count`` approvals inside one time bucket."""
        bucket = timedelta(minutes=bucket_minutes)
        epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
        counts: Counter[tuple[str, datetime]] = Counter()
        for record in self._successes(tenant_id, window, APPROVAL_ACTIONS):
            if record.actor_id is None:
                continue
            start = epoch + ((record.timestamp - epoch) // bucket) * bucket
            counts[(record.actor_id, start)] += 1

        signals = [
            BulkApprovalSignal(actor_id=actor_id, bucket_start=start, count=count)
            for (actor_id, start), count in counts.items()
            if count >= threshold_count
        ]
        signals.sort(key=lambda s: (s.bucket_start, -s.count, s.actor_id))
        if signals:
            logger.warning(
                "Bulk approvals detected: tenant=%s buckets=%d threshold=%d/%dmin",
                tenant_id, len(signals), threshold_count, bucket_minutes,
            )
        return signals

    def _successes(self, tenant_id: str, window: timedelta, actions: list[AuditAction]):
        return self.ledger.iter_records(AuditFilter(
            tenant_id=tenant_id,
            actions=actions,
            outcome=AuditOutcome.SUCCESS,
            since=self._clock() - window,
        ))
