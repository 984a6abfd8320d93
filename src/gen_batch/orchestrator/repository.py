"""Persistent queue repository for generation requests, attempts and downloads."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import exists, func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from gen_batch.orchestrator.errors import PersistenceFailure
from gen_batch.orchestrator.evaluator import evaluate_request_status
from gen_batch.orchestrator.models import (
    FAILED_ATTEMPT_STATUSES,
    TERMINAL_ATTEMPT_STATUSES,
    AckAttempt,
    AttemptStatus,
    AttemptView,
    DownloadJob,
    DownloadState,
    EvaluationResult,
    InsertSummary,
    ManifestRow,
    PromptInput,
    RecoveryReport,
    RequestDetails,
    RequestEventView,
    RequestStatus,
    RequestView,
    RetryResult,
    StatusAttempt,
    StatusCounts,
)
from gen_batch.orchestrator.naming import tail_slug
from gen_batch.storage.alembic_runner import upgrade_head
from gen_batch.storage.common import (
    build_queue_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from gen_batch.storage.sqlmodel_models import (
    DownloadTask,
    GenerationAttempt,
    GenerationRequest,
    RequestEvent,
)

_OPEN_REQUEST_STATUSES = (
    RequestStatus.QUEUED.value,
    RequestStatus.SUBMITTING.value,
    RequestStatus.IN_PROGRESS.value,
)
_RETRYABLE_REQUEST_STATUSES = frozenset(
    {RequestStatus.FAILED, RequestStatus.TIMEOUT, RequestStatus.DONE},
)


def prompt_fingerprint(prompt_text: str) -> str:
    return hashlib.sha256(prompt_text.encode("utf-8")).hexdigest()


class GenerationRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every public method runs in its own session and commits before returning.
    SQLAlchemy errors surface as ``PersistenceFailure``.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_queue_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise PersistenceFailure(f"Store operation failed: {error}") from error

    # -- batch load ---------------------------------------------------------------

    def insert_requests(
        self,
        prompts: Iterable[PromptInput],
        *,
        max_retries: int = 3,
    ) -> InsertSummary:
        """Insert queued requests, skipping prompts whose fingerprint already exists."""

        summary = InsertSummary()
        now = to_db_datetime(utc_now())
        with self._session() as session:
            for prompt in prompts:
                statement = (
                    sqlite_insert(GenerationRequest)
                    .values(
                        request_index=prompt.index,
                        prompt_text=prompt.text,
                        tail_slug=tail_slug(prompt.text),
                        fingerprint=prompt_fingerprint(prompt.text),
                        status=RequestStatus.QUEUED.value,
                        retry_count=0,
                        max_retries=max_retries,
                        created_at=now,
                        updated_at=now,
                    )
                    .on_conflict_do_nothing(index_elements=["fingerprint"])
                )
                result = session.exec(statement)  # type: ignore[call-overload]
                if result.rowcount == 1:
                    summary.inserted += 1
                else:
                    summary.skipped += 1
            session.commit()
        return summary

    def next_free_index(self) -> int:
        """Next unused ordinal index for appending a batch."""

        with self._session() as session:
            current = session.exec(select(func.max(GenerationRequest.request_index))).one()
        return (current or 0) + 1

    # -- submission lifecycle ------------------------------------------------------

    def peek_next_queued(self, *, ceiling: int) -> RequestView | None:
        """Oldest queued request, or None while in-flight requests fill the ceiling."""

        with self._session() as session:
            inflight = session.exec(
                select(func.count()).where(
                    GenerationRequest.status == RequestStatus.IN_PROGRESS.value,
                ),
            ).one()
            if inflight >= ceiling:
                return None
            row = session.exec(
                select(GenerationRequest)
                .where(GenerationRequest.status == RequestStatus.QUEUED.value)
                .order_by(col(GenerationRequest.request_index).asc())
                .limit(1),
            ).one_or_none()
        return _to_request_view(row) if row is not None else None

    def mark_submitting(self, *, request_id: int) -> bool:
        return self._transition(
            request_id=request_id,
            allowed_from=(RequestStatus.QUEUED,),
            status_to=RequestStatus.SUBMITTING,
            event_type="submitting",
        )

    def mark_in_progress_with_attempts(
        self,
        *,
        request_id: int,
        attempts: Sequence[AckAttempt],
    ) -> list[AttemptView]:
        """Atomically move a submitting request to in_progress and insert its attempts.

        Returns the inserted attempts, or an empty list when the request was no
        longer submitting.
        """

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = self._get_request_row(session=session, request_id=request_id)
            result = session.exec(
                sa_update(GenerationRequest)
                .where(
                    col(GenerationRequest.id) == request_id,
                    col(GenerationRequest.status) == RequestStatus.SUBMITTING.value,
                )
                .values(
                    status=RequestStatus.IN_PROGRESS.value,
                    submit_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return []

            next_take = session.exec(
                select(func.max(GenerationAttempt.take_index)).where(
                    GenerationAttempt.request_id == request_id,
                ),
            ).one()
            first_take = 0 if next_take is None else next_take + 1
            rows = [
                GenerationAttempt(
                    request_id=request_id,
                    take_index=first_take + offset,
                    operation_id=attempt.operation_id,
                    scene_id=attempt.scene_id,
                    status=attempt.status,
                    submission_round=row.retry_count,
                    created_at=now,
                )
                for offset, attempt in enumerate(attempts)
            ]
            session.add_all(rows)
            self._add_event(
                session=session,
                request_id=request_id,
                event_type="acknowledged",
                status_from=RequestStatus.SUBMITTING,
                status_to=RequestStatus.IN_PROGRESS,
                details={
                    "attempts": len(rows),
                    "operation_ids": [attempt.operation_id for attempt in attempts],
                },
            )
            session.commit()
            for attempt_row in rows:
                session.refresh(attempt_row)
            return [_to_attempt_view(attempt_row) for attempt_row in rows]

    def promote_to_in_progress(self, *, request_id: int) -> bool:
        """Move a request whose attempts already exist to in_progress without resubmitting."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = self._get_request_row(session=session, request_id=request_id)
            previous = RequestStatus(row.status)
            if previous not in {RequestStatus.QUEUED, RequestStatus.SUBMITTING}:
                return False
            result = session.exec(
                sa_update(GenerationRequest)
                .where(
                    col(GenerationRequest.id) == request_id,
                    col(GenerationRequest.status) == previous.value,
                )
                .values(
                    status=RequestStatus.IN_PROGRESS.value,
                    submit_at=row.submit_at or now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                request_id=request_id,
                event_type="promoted",
                status_from=previous,
                status_to=RequestStatus.IN_PROGRESS,
                details={},
            )
            session.commit()
            return True

    def mark_failed(self, *, request_id: int, reason: str) -> bool:
        return self._transition(
            request_id=request_id,
            allowed_from=(
                RequestStatus.QUEUED,
                RequestStatus.SUBMITTING,
                RequestStatus.IN_PROGRESS,
            ),
            status_to=RequestStatus.FAILED,
            event_type="failed",
            error=reason,
        )

    def reset_to_queued(self, *, request_id: int) -> bool:
        return self._transition(
            request_id=request_id,
            allowed_from=(RequestStatus.SUBMITTING,),
            status_to=RequestStatus.QUEUED,
            event_type="requeued",
        )

    def find_orphan_submitting(self) -> RequestView | None:
        """Request stuck in submitting with no attempts for its current round."""

        with self._session() as session:
            row = session.exec(
                select(GenerationRequest)
                .where(
                    GenerationRequest.status == RequestStatus.SUBMITTING.value,
                    ~_current_round_attempts_exist(),
                )
                .order_by(col(GenerationRequest.request_index).asc())
                .limit(1),
            ).one_or_none()
        return _to_request_view(row) if row is not None else None

    def has_current_attempts(self, *, request_id: int) -> bool:
        """Whether attempts were already materialized for the request's current round."""

        with self._session() as session:
            row = self._get_request_row(session=session, request_id=request_id)
            count = session.exec(
                select(func.count()).where(
                    GenerationAttempt.request_id == request_id,
                    GenerationAttempt.submission_round == row.retry_count,
                ),
            ).one()
        return count > 0

    def find_operation_ids(self, operation_ids: Iterable[str]) -> set[str]:
        wanted = list(operation_ids)
        if not wanted:
            return set()
        with self._session() as session:
            rows = session.exec(
                select(GenerationAttempt.operation_id).where(
                    col(GenerationAttempt.operation_id).in_(wanted),
                ),
            ).all()
        return set(rows)

    # -- routed status updates -----------------------------------------------------

    def apply_status_updates(
        self,
        updates: Sequence[StatusAttempt],
        *,
        duration_sec: int,
    ) -> dict[str, int]:
        """Apply observed attempt states by operation id.

        Returns ``operation_id -> request_id`` for matched attempts; unknown
        operation ids are ignored. A terminal attempt status is never replaced
        by a non-terminal one, so late events cannot move an attempt backwards.
        """

        matched: dict[str, int] = {}
        now = to_db_datetime(utc_now())
        with self._session() as session:
            for update in updates:
                row = session.exec(
                    select(GenerationAttempt).where(
                        GenerationAttempt.operation_id == update.operation_id,
                    ),
                ).one_or_none()
                if row is None:
                    continue
                if update.status is not None and not (
                    row.status in TERMINAL_ATTEMPT_STATUSES
                    and update.status not in TERMINAL_ATTEMPT_STATUSES
                ):
                    row.status = update.status
                if update.locator is not None:
                    row.locator = update.locator
                if update.model is not None:
                    row.model = update.model
                row.duration_sec = duration_sec
                row.last_poll_at = now
                session.add(row)
                matched[update.operation_id] = row.request_id
            session.commit()
        return matched

    def evaluate_request(
        self,
        *,
        request_id: int,
        timeout: timedelta,
        now: datetime | None = None,
    ) -> EvaluationResult:
        """Re-derive an in_progress request's status from its attempts and persist it.

        The transition is conditional on the row still being in_progress, so
        concurrent evaluations apply it (and enqueue downloads) exactly once.
        """

        now = now or utc_now()
        with self._session() as session:
            row = self._get_request_row(session=session, request_id=request_id)
            current = RequestStatus(row.status)
            if current != RequestStatus.IN_PROGRESS:
                return EvaluationResult(request_id=request_id, status=current, changed=False)

            attempts = session.exec(
                select(GenerationAttempt)
                .where(GenerationAttempt.request_id == request_id)
                .order_by(col(GenerationAttempt.take_index).asc()),
            ).all()
            derived = evaluate_request_status(
                [attempt.status for attempt in attempts],
                submit_at=optional_utc(row.submit_at),
                now=to_utc_aware_datetime(now),
                timeout=timeout,
            )
            if derived == RequestStatus.IN_PROGRESS:
                return EvaluationResult(request_id=request_id, status=derived, changed=False)

            error = None
            if derived == RequestStatus.FAILED:
                error = "All attempts failed or were cancelled."
            elif derived == RequestStatus.TIMEOUT:
                error = f"No terminal status within {int(timeout.total_seconds())}s."
            result = session.exec(
                sa_update(GenerationRequest)
                .where(
                    col(GenerationRequest.id) == request_id,
                    col(GenerationRequest.status) == RequestStatus.IN_PROGRESS.value,
                )
                .values(
                    status=derived.value,
                    done_at=to_db_datetime(now),
                    error=error,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                latest = self._get_request_row(session=session, request_id=request_id)
                return EvaluationResult(
                    request_id=request_id,
                    status=RequestStatus(latest.status),
                    changed=False,
                )

            enqueued = 0
            if derived == RequestStatus.DONE:
                enqueued = self._enqueue_downloads(session=session, attempts=attempts, now=now)
            self._add_event(
                session=session,
                request_id=request_id,
                event_type="evaluated",
                status_from=RequestStatus.IN_PROGRESS,
                status_to=derived,
                details={
                    "attempt_statuses": sorted(str(attempt.status) for attempt in attempts),
                    "downloads_enqueued": enqueued,
                },
            )
            session.commit()
            return EvaluationResult(
                request_id=request_id,
                status=derived,
                changed=True,
                downloads_enqueued=enqueued,
            )

    def enqueue_downloads(self, *, request_id: int) -> int:
        """Enqueue download tasks for the request's successful attempts with locators."""

        with self._session() as session:
            attempts = session.exec(
                select(GenerationAttempt).where(GenerationAttempt.request_id == request_id),
            ).all()
            enqueued = self._enqueue_downloads(session=session, attempts=attempts, now=utc_now())
            session.commit()
        return enqueued

    def _enqueue_downloads(
        self,
        *,
        session: Session,
        attempts: Sequence[GenerationAttempt],
        now: datetime,
    ) -> int:
        eligible = [
            attempt
            for attempt in attempts
            if attempt.status == AttemptStatus.SUCCESSFUL.value and attempt.locator
        ]
        if not eligible:
            return 0
        existing = set(
            session.exec(
                select(DownloadTask.attempt_id).where(
                    col(DownloadTask.attempt_id).in_([attempt.id for attempt in eligible]),
                ),
            ).all(),
        )
        enqueued = 0
        for attempt in eligible:
            if attempt.id in existing or attempt.id is None:
                continue
            session.add(
                DownloadTask(
                    request_id=attempt.request_id,
                    attempt_id=attempt.id,
                    state=DownloadState.QUEUED.value,
                    retries=0,
                    enqueued_at=to_db_datetime(now),
                ),
            )
            enqueued += 1
        return enqueued

    # -- downloads -----------------------------------------------------------------

    def claim_next_download(self) -> DownloadJob | None:
        """Atomically claim the oldest queued download task."""

        while True:
            now = to_db_datetime(utc_now())
            with self._session() as session:
                candidate = session.exec(
                    select(DownloadTask, GenerationAttempt, GenerationRequest)
                    .join(
                        GenerationAttempt,
                        col(GenerationAttempt.id) == col(DownloadTask.attempt_id),
                    )
                    .join(
                        GenerationRequest,
                        col(GenerationRequest.id) == col(DownloadTask.request_id),
                    )
                    .where(DownloadTask.state == DownloadState.QUEUED.value)
                    .order_by(col(DownloadTask.id).asc())
                    .limit(1),
                ).first()
                if candidate is None:
                    return None
                task, attempt, request = candidate

                result = session.exec(
                    sa_update(DownloadTask)
                    .where(
                        col(DownloadTask.id) == task.id,
                        col(DownloadTask.state) == DownloadState.QUEUED.value,
                    )
                    .values(state=DownloadState.RUNNING.value, started_at=now, finished_at=None),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                job = DownloadJob(
                    task_id=task.id or 0,
                    attempt_id=attempt.id or 0,
                    request_id=request.id or 0,
                    request_index=request.request_index,
                    tail_slug=request.tail_slug,
                    take_index=attempt.take_index,
                    locator=attempt.locator or "",
                    model=attempt.model,
                    duration_sec=attempt.duration_sec,
                    retries=task.retries,
                )
                session.commit()
                return job

    def complete_download(self, *, task_id: int, attempt_id: int, file_path: str) -> bool:
        """Mark a running download done and its attempt downloaded."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            result = session.exec(
                sa_update(DownloadTask)
                .where(
                    col(DownloadTask.id) == task_id,
                    col(DownloadTask.state) == DownloadState.RUNNING.value,
                )
                .values(state=DownloadState.DONE.value, finished_at=now, last_error=None),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.exec(
                sa_update(GenerationAttempt)
                .where(col(GenerationAttempt.id) == attempt_id)
                .values(downloaded=True, file_path=file_path),
            )
            session.commit()
            return True

    def fail_download(self, *, task_id: int, error: str, attempts: int) -> bool:
        """Leave a running download failed after its fetch attempts ran out."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            result = session.exec(
                sa_update(DownloadTask)
                .where(
                    col(DownloadTask.id) == task_id,
                    col(DownloadTask.state) == DownloadState.RUNNING.value,
                )
                .values(
                    state=DownloadState.FAILED.value,
                    finished_at=now,
                    last_error=error,
                    retries=DownloadTask.retries + attempts,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def requeue_download(self, *, task_id: int) -> bool:
        with self._session() as session:
            result = session.exec(
                sa_update(DownloadTask)
                .where(
                    col(DownloadTask.id) == task_id,
                    col(DownloadTask.state) == DownloadState.RUNNING.value,
                )
                .values(state=DownloadState.QUEUED.value, started_at=None),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def requeue_failed_downloads(self) -> int:
        """Operator action: put every failed download back in the queue."""

        with self._session() as session:
            result = session.exec(
                sa_update(DownloadTask)
                .where(col(DownloadTask.state) == DownloadState.FAILED.value)
                .values(
                    state=DownloadState.QUEUED.value,
                    started_at=None,
                    finished_at=None,
                ),
            )
            session.commit()
            return result.rowcount

    # -- recovery & retry ----------------------------------------------------------

    def recover(self, *, stale_after: timedelta, now: datetime | None = None) -> RecoveryReport:
        """Reconcile transient rows left behind by an interrupted run.

        Only safe while no run is active on this database: submitting requests
        and running downloads are reset without checking for a live owner.
        """

        report = RecoveryReport()
        now = now or utc_now()
        db_now = to_db_datetime(now)
        with self._session() as session:
            stale_rows = session.exec(
                select(GenerationRequest).where(
                    GenerationRequest.status == RequestStatus.IN_PROGRESS.value,
                    col(GenerationRequest.submit_at) < to_db_datetime(now - stale_after),
                ),
            ).all()
            for row in stale_rows:
                row.status = RequestStatus.TIMEOUT.value
                row.done_at = db_now
                row.error = "Stale in_progress request recovered as timeout."
                row.updated_at = db_now
                session.add(row)
                self._add_event(
                    session=session,
                    request_id=row.id or 0,
                    event_type="recovered",
                    status_from=RequestStatus.IN_PROGRESS,
                    status_to=RequestStatus.TIMEOUT,
                    details={"stale_after_seconds": int(stale_after.total_seconds())},
                )
            report.stale_timed_out = len(stale_rows)

            submitting = session.exec(
                select(GenerationRequest).where(
                    GenerationRequest.status == RequestStatus.SUBMITTING.value,
                ),
            ).all()
            for row in submitting:
                has_attempts = (
                    session.exec(
                        select(func.count()).where(
                            GenerationAttempt.request_id == row.id,
                            GenerationAttempt.submission_round == row.retry_count,
                        ),
                    ).one()
                    > 0
                )
                status_to = RequestStatus.IN_PROGRESS if has_attempts else RequestStatus.QUEUED
                row.status = status_to.value
                row.updated_at = db_now
                if has_attempts:
                    row.submit_at = row.submit_at or db_now
                    report.submitting_promoted += 1
                    report.promoted_request_ids.append(row.id or 0)
                else:
                    report.submitting_requeued += 1
                session.add(row)
                self._add_event(
                    session=session,
                    request_id=row.id or 0,
                    event_type="recovered",
                    status_from=RequestStatus.SUBMITTING,
                    status_to=status_to,
                    details={"had_attempts": has_attempts},
                )

            result = session.exec(
                sa_update(DownloadTask)
                .where(col(DownloadTask.state) == DownloadState.RUNNING.value)
                .values(state=DownloadState.QUEUED.value, started_at=None),
            )
            report.downloads_requeued = result.rowcount
            session.commit()
        return report

    def retry_request(self, *, request_index: int) -> RetryResult:
        """Operator retry: drop failed/cancelled attempts and requeue the request."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = session.exec(
                select(GenerationRequest).where(
                    GenerationRequest.request_index == request_index,
                ),
            ).one_or_none()
            if row is None:
                raise RuntimeError(f"Request not found: #{request_index}")
            previous = RequestStatus(row.status)
            if previous not in _RETRYABLE_REQUEST_STATUSES:
                raise RuntimeError(
                    "Only failed/timeout/done requests can be retried manually, "
                    f"got {row.status}.",
                )

            attempts = session.exec(
                select(GenerationAttempt).where(GenerationAttempt.request_id == row.id),
            ).all()
            if previous == RequestStatus.TIMEOUT:
                # Takes still unfinished at the deadline are abandoned by the timeout.
                for attempt in attempts:
                    if attempt.status not in TERMINAL_ATTEMPT_STATUSES:
                        attempt.status = AttemptStatus.CANCELLED.value
                        session.add(attempt)
            dropped = [attempt for attempt in attempts if attempt.status in FAILED_ATTEMPT_STATUSES]
            kept = len(attempts) - len(dropped)

            if previous == RequestStatus.DONE and not dropped:
                session.rollback()
                return RetryResult(
                    request_index=request_index,
                    retried=False,
                    deleted_attempts=0,
                    kept_attempts=kept,
                    reason="No failed attempts to retry.",
                )

            if row.retry_count >= row.max_retries:
                reason = f"Max retries reached ({row.retry_count}/{row.max_retries})."
                if previous == RequestStatus.DONE:
                    # Successful takes keep a done request done.
                    session.rollback()
                    return RetryResult(
                        request_index=request_index,
                        retried=False,
                        deleted_attempts=0,
                        kept_attempts=len(attempts),
                        reason=reason,
                    )
                row.status = RequestStatus.FAILED.value
                row.error = reason
                row.done_at = row.done_at or now
                row.updated_at = now
                session.add(row)
                self._add_event(
                    session=session,
                    request_id=row.id or 0,
                    event_type="retry_exhausted",
                    status_from=previous,
                    status_to=RequestStatus.FAILED,
                    details={"retry_count": row.retry_count, "max_retries": row.max_retries},
                )
                session.commit()
                return RetryResult(
                    request_index=request_index,
                    retried=False,
                    deleted_attempts=0,
                    kept_attempts=len(attempts),
                    reason=reason,
                )

            if dropped:
                session.exec(
                    sa_delete(GenerationAttempt).where(
                        col(GenerationAttempt.id).in_([attempt.id for attempt in dropped]),
                    ),
                )
            result = session.exec(
                sa_update(GenerationRequest)
                .where(
                    col(GenerationRequest.id) == row.id,
                    col(GenerationRequest.status) == previous.value,
                )
                .values(
                    status=RequestStatus.QUEUED.value,
                    retry_count=GenerationRequest.retry_count + 1,
                    submit_at=None,
                    done_at=None,
                    error=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Request state changed concurrently while retrying; "
                    f"please retry command (request #{request_index}).",
                )
            self._add_event(
                session=session,
                request_id=row.id or 0,
                event_type="manual_retry",
                status_from=previous,
                status_to=RequestStatus.QUEUED,
                details={"deleted_attempts": len(dropped), "kept_attempts": kept},
            )
            session.commit()
            return RetryResult(
                request_index=request_index,
                retried=True,
                deleted_attempts=len(dropped),
                kept_attempts=kept,
                reason=f"Retrying {len(dropped)} failed attempts ({kept} kept).",
            )

    def retry_failed_requests(self) -> list[RetryResult]:
        """Retry every failed/timeout request that still has retry budget."""

        with self._session() as session:
            indexes = session.exec(
                select(GenerationRequest.request_index)
                .where(
                    col(GenerationRequest.status).in_(
                        (RequestStatus.FAILED.value, RequestStatus.TIMEOUT.value),
                    ),
                    col(GenerationRequest.retry_count) < col(GenerationRequest.max_retries),
                )
                .order_by(col(GenerationRequest.request_index).asc()),
            ).all()
        return [self.retry_request(request_index=index) for index in indexes]

    # -- queries ---------------------------------------------------------------------

    def status_counts(self) -> StatusCounts:
        """Aggregate counters for progress reporting and drain detection."""

        counts = StatusCounts()
        with self._session() as session:
            for status, count in session.exec(
                select(GenerationRequest.status, func.count()).group_by(GenerationRequest.status),
            ).all():
                counts.requests[RequestStatus(status)] = count
            for state, count in session.exec(
                select(DownloadTask.state, func.count()).group_by(DownloadTask.state),
            ).all():
                counts.downloads[DownloadState(state)] = count
            counts.attempts_total = session.exec(
                select(func.count()).select_from(GenerationAttempt),
            ).one()
            counts.attempts_downloaded = session.exec(
                select(func.count()).where(col(GenerationAttempt.downloaded).is_(True)),
            ).one()
            counts.retried_requests = session.exec(
                select(func.count()).where(GenerationRequest.retry_count > 0),
            ).one()
        return counts

    def get_request(self, *, request_id: int) -> RequestView:
        with self._session() as session:
            row = self._get_request_row(session=session, request_id=request_id)
        return _to_request_view(row)

    def list_requests(
        self,
        *,
        status: RequestStatus | None = None,
        limit: int = 50,
    ) -> list[RequestView]:
        """List requests in submission order, optionally filtered by status."""

        with self._session() as session:
            statement = (
                select(GenerationRequest)
                .order_by(col(GenerationRequest.request_index).asc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(GenerationRequest.status == status.value)
            rows = session.exec(statement).all()
        return [_to_request_view(row) for row in rows]

    def list_in_progress_ids(self) -> list[int]:
        with self._session() as session:
            rows = session.exec(
                select(GenerationRequest.id)
                .where(GenerationRequest.status == RequestStatus.IN_PROGRESS.value)
                .order_by(col(GenerationRequest.request_index).asc()),
            ).all()
        return [row for row in rows if row is not None]

    def list_attempts(self, *, request_id: int) -> list[AttemptView]:
        with self._session() as session:
            rows = session.exec(
                select(GenerationAttempt)
                .where(GenerationAttempt.request_id == request_id)
                .order_by(col(GenerationAttempt.take_index).asc()),
            ).all()
        return [_to_attempt_view(row) for row in rows]

    def get_request_details(self, *, request_index: int) -> RequestDetails | None:
        """Return request details with attempts and event stream."""

        with self._session() as session:
            row = session.exec(
                select(GenerationRequest).where(
                    GenerationRequest.request_index == request_index,
                ),
            ).one_or_none()
            if row is None:
                return None
            attempt_rows = session.exec(
                select(GenerationAttempt)
                .where(GenerationAttempt.request_id == row.id)
                .order_by(col(GenerationAttempt.take_index).asc()),
            ).all()
            event_rows = session.exec(
                select(RequestEvent)
                .where(RequestEvent.request_id == row.id)
                .order_by(col(RequestEvent.created_at).asc(), col(RequestEvent.id).asc()),
            ).all()

        events: list[RequestEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                RequestEventView(
                    event_id=event_row.id or 0,
                    request_id=event_row.request_id,
                    event_type=event_row.event_type,
                    status_from=(
                        RequestStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        RequestStatus(event_row.status_to)
                        if event_row.status_to is not None
                        else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return RequestDetails(
            request=_to_request_view(row),
            attempts=[_to_attempt_view(attempt) for attempt in attempt_rows],
            events=events,
        )

    def manifest_rows(self) -> list[ManifestRow]:
        """Every request x attempt row, request-then-take order."""

        with self._session() as session:
            rows = session.exec(
                select(GenerationRequest, GenerationAttempt)
                .join(
                    GenerationAttempt,
                    col(GenerationAttempt.request_id) == col(GenerationRequest.id),
                    isouter=True,
                )
                .order_by(
                    col(GenerationRequest.request_index).asc(),
                    col(GenerationAttempt.take_index).asc(),
                ),
            ).all()
        return [
            ManifestRow(
                request_index=request.request_index,
                prompt_text=request.prompt_text,
                tail_slug=request.tail_slug,
                request_status=request.status,
                submit_at=optional_utc(request.submit_at),
                done_at=optional_utc(request.done_at),
                take_index=attempt.take_index if attempt is not None else None,
                model=attempt.model if attempt is not None else None,
                file_path=attempt.file_path if attempt is not None else None,
                attempt_status=attempt.status if attempt is not None else None,
                downloaded=bool(attempt.downloaded) if attempt is not None else False,
                locator=attempt.locator if attempt is not None else None,
            )
            for request, attempt in rows
        ]

    # -- internals -------------------------------------------------------------------

    def _transition(  # noqa: PLR0913
        self,
        *,
        request_id: int,
        allowed_from: tuple[RequestStatus, ...],
        status_to: RequestStatus,
        event_type: str,
        error: str | None = None,
    ) -> bool:
        now = to_db_datetime(utc_now())
        terminal = status_to in {RequestStatus.FAILED, RequestStatus.TIMEOUT, RequestStatus.DONE}
        with self._session() as session:
            row = self._get_request_row(session=session, request_id=request_id)
            previous = RequestStatus(row.status)
            if previous not in allowed_from:
                return False
            values: dict[str, object] = {"status": status_to.value, "updated_at": now}
            if terminal:
                values["done_at"] = now
                values["error"] = error
            result = session.exec(
                sa_update(GenerationRequest)
                .where(
                    col(GenerationRequest.id) == request_id,
                    col(GenerationRequest.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                request_id=request_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details={"error": error} if error else {},
            )
            session.commit()
            return True

    def _get_request_row(self, *, session: Session, request_id: int) -> GenerationRequest:
        row = session.exec(
            select(GenerationRequest).where(GenerationRequest.id == request_id),
        ).one_or_none()
        if row is None:
            raise RuntimeError(f"Request not found: id={request_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        request_id: int,
        event_type: str,
        status_from: RequestStatus | None,
        status_to: RequestStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            RequestEvent(
                request_id=request_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _current_round_attempts_exist():  # noqa: ANN202
    return (
        exists()
        .where(
            col(GenerationAttempt.request_id) == col(GenerationRequest.id),
            col(GenerationAttempt.submission_round) == col(GenerationRequest.retry_count),
        )
        .correlate(GenerationRequest)
    )


def _to_request_view(row: GenerationRequest) -> RequestView:
    return RequestView(
        id=row.id or 0,
        request_index=row.request_index,
        prompt_text=row.prompt_text,
        tail_slug=row.tail_slug,
        fingerprint=row.fingerprint,
        status=RequestStatus(row.status),
        submit_at=optional_utc(row.submit_at),
        done_at=optional_utc(row.done_at),
        error=row.error,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_attempt_view(row: GenerationAttempt) -> AttemptView:
    return AttemptView(
        id=row.id or 0,
        request_id=row.request_id,
        take_index=row.take_index,
        operation_id=row.operation_id,
        scene_id=row.scene_id,
        status=row.status,
        locator=row.locator,
        model=row.model,
        duration_sec=row.duration_sec,
        last_poll_at=optional_utc(row.last_poll_at),
        downloaded=bool(row.downloaded),
        file_path=row.file_path,
        submission_round=row.submission_round,
    )
