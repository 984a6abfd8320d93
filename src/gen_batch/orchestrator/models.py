"""Domain models for the generation request queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RequestStatus(str, Enum):
    """Durable request lifecycle states."""

    QUEUED = "queued"
    SUBMITTING = "submitting"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"
    TIMEOUT = "timeout"


ACTIVE_REQUEST_STATUSES = frozenset(
    {RequestStatus.QUEUED, RequestStatus.SUBMITTING, RequestStatus.IN_PROGRESS},
)


class AttemptStatus(str, Enum):
    """Operation states reported by the generation service."""

    PENDING = "MEDIA_GENERATION_STATUS_PENDING"
    ACTIVE = "MEDIA_GENERATION_STATUS_ACTIVE"
    SUCCESSFUL = "MEDIA_GENERATION_STATUS_SUCCESSFUL"
    FAILED = "MEDIA_GENERATION_STATUS_FAILED"
    CANCELLED = "MEDIA_GENERATION_STATUS_CANCELLED"


FAILED_ATTEMPT_STATUSES = frozenset({AttemptStatus.FAILED.value, AttemptStatus.CANCELLED.value})
TERMINAL_ATTEMPT_STATUSES = FAILED_ATTEMPT_STATUSES | {AttemptStatus.SUCCESSFUL.value}


class DownloadState(str, Enum):
    """Download task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class PromptInput:
    """One prompt to insert into the queue."""

    index: int
    text: str


@dataclass(slots=True)
class InsertSummary:
    """Outcome of a batch insert."""

    inserted: int = 0
    skipped: int = 0


@dataclass(slots=True, frozen=True)
class AckAttempt:
    """One operation announced by a submission acknowledgement."""

    operation_id: str
    scene_id: str | None = None
    status: str | None = None


@dataclass(slots=True, frozen=True)
class StatusAttempt:
    """Latest observed state of one operation."""

    operation_id: str
    status: str | None
    locator: str | None = None
    model: str | None = None


@dataclass(slots=True)
class RequestView:
    """Readable request view for CLI and orchestration logic."""

    id: int
    request_index: int
    prompt_text: str
    tail_slug: str
    fingerprint: str
    status: RequestStatus
    submit_at: datetime | None
    done_at: datetime | None
    error: str | None
    retry_count: int
    max_retries: int
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class AttemptView:
    """Readable attempt (take) view."""

    id: int
    request_id: int
    take_index: int
    operation_id: str
    scene_id: str | None
    status: str | None
    locator: str | None
    model: str | None
    duration_sec: int | None
    last_poll_at: datetime | None
    downloaded: bool
    file_path: str | None
    submission_round: int


@dataclass(slots=True)
class RequestEventView:
    """Request event entry for audit trail."""

    event_id: int
    request_id: int
    event_type: str
    status_from: RequestStatus | None
    status_to: RequestStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RequestDetails:
    """Request with its attempts and event stream."""

    request: RequestView
    attempts: list[AttemptView]
    events: list[RequestEventView]


@dataclass(slots=True)
class DownloadJob:
    """Claimed download task joined with naming metadata."""

    task_id: int
    attempt_id: int
    request_id: int
    request_index: int
    tail_slug: str
    take_index: int
    locator: str
    model: str | None
    duration_sec: int | None
    retries: int


@dataclass(slots=True)
class EvaluationResult:
    """Outcome of one persisted status evaluation."""

    request_id: int
    status: RequestStatus
    changed: bool
    downloads_enqueued: int = 0


@dataclass(slots=True)
class StatusCounts:
    """Aggregate queue counters."""

    requests: dict[RequestStatus, int] = field(default_factory=dict)
    downloads: dict[DownloadState, int] = field(default_factory=dict)
    attempts_total: int = 0
    attempts_downloaded: int = 0
    retried_requests: int = 0

    def request_count(self, status: RequestStatus) -> int:
        return self.requests.get(status, 0)

    def download_count(self, state: DownloadState) -> int:
        return self.downloads.get(state, 0)

    @property
    def total_requests(self) -> int:
        return sum(self.requests.values())

    @property
    def is_drained(self) -> bool:
        """No request left to submit/track and no download left to run."""

        active_requests = sum(self.request_count(status) for status in ACTIVE_REQUEST_STATUSES)
        active_downloads = self.download_count(DownloadState.QUEUED) + self.download_count(
            DownloadState.RUNNING,
        )
        return active_requests == 0 and active_downloads == 0


@dataclass(slots=True)
class RecoveryReport:
    """Startup reconciliation counters."""

    submitting_requeued: int = 0
    submitting_promoted: int = 0
    stale_timed_out: int = 0
    downloads_requeued: int = 0
    promoted_request_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class RetryResult:
    """Outcome of an explicit request retry."""

    request_index: int
    retried: bool
    deleted_attempts: int
    kept_attempts: int
    reason: str


@dataclass(slots=True)
class ManifestRow:
    """One exported (request, attempt) row."""

    request_index: int
    prompt_text: str
    tail_slug: str
    request_status: str
    submit_at: datetime | None
    done_at: datetime | None
    take_index: int | None
    model: str | None
    file_path: str | None
    attempt_status: str | None
    downloaded: bool
    locator: str | None
