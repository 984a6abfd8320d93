"""Pure status derivation for one request from its attempt set.

The request status is always re-derived from the full multiset of attempt
statuses, never from incremental counters, so duplicate or out-of-order routed
events cannot move a request backwards or apply a transition twice.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from gen_batch.orchestrator.models import (
    FAILED_ATTEMPT_STATUSES,
    TERMINAL_ATTEMPT_STATUSES,
    RequestStatus,
)


def evaluate_request_status(
    attempt_statuses: Iterable[str | None],
    *,
    submit_at: datetime | None,
    now: datetime,
    timeout: timedelta,
) -> RequestStatus:
    """Derive the status of an in-progress request.

    Completion and failure are checked before the deadline so that a request
    finishing exactly at the boundary is recorded as finished.
    """

    statuses = list(attempt_statuses)
    if statuses and all(status in FAILED_ATTEMPT_STATUSES for status in statuses):
        return RequestStatus.FAILED
    if statuses and all(status in TERMINAL_ATTEMPT_STATUSES for status in statuses):
        return RequestStatus.DONE
    if submit_at is not None and now - submit_at > timeout:
        return RequestStatus.TIMEOUT
    return RequestStatus.IN_PROGRESS
