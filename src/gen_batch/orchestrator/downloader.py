"""Download worker pool draining queued artifact downloads."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from gen_batch.config import DownloadSettings
from gen_batch.http.fetcher import ArtifactFetcher
from gen_batch.orchestrator.errors import (
    ArtifactRedirect,
    DownloadError,
    LocatorExpired,
    PersistenceFailure,
)
from gen_batch.orchestrator.models import DownloadJob
from gen_batch.orchestrator.naming import artifact_filename
from gen_batch.orchestrator.repository import GenerationRepository
from gen_batch.storage.common import utc_now

logger = logging.getLogger(__name__)

TMP_SUFFIX = ".tmp"


class DownloadOutcome(str, Enum):
    DONE = "done"
    FAILED = "failed"
    REQUEUED = "requeued"


@dataclass(slots=True)
class DownloadResult:
    """Final outcome of one claimed download task."""

    outcome: DownloadOutcome
    attempts: int
    path: Path | None = None
    error: str | None = None


def artifact_path(job: DownloadJob, *, output_dir: Path, extension: str, duration_sec: int) -> Path:
    """Deterministic destination for a claimed job, dated by the current UTC day."""

    return output_dir / artifact_filename(
        day=utc_now().date(),
        request_index=job.request_index,
        slug=job.tail_slug,
        model=job.model,
        take_index=job.take_index,
        duration_sec=job.duration_sec or duration_sec,
        extension=extension,
    )


def remove_partial_files(output_dir: Path) -> int:
    """Delete leftover partial downloads from an interrupted run."""

    if not output_dir.is_dir():
        return 0
    removed = 0
    for path in output_dir.glob(f"*{TMP_SUFFIX}"):
        path.unlink(missing_ok=True)
        removed += 1
    return removed


class DownloadWorker:
    """Claims download tasks one at a time and fetches them with bounded retry."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: GenerationRepository,
        fetcher: ArtifactFetcher,
        settings: DownloadSettings,
        duration_sec: int,
        worker_id: str = "download-1",
        stop_event: threading.Event | None = None,
        on_fault: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher
        self.settings = settings
        self.duration_sec = duration_sec
        self.worker_id = worker_id
        self.stop_event = stop_event or threading.Event()
        self.on_fault = on_fault

    def run(self) -> None:
        while not self.stop_event.is_set():
            try:
                processed = self.run_once()
            except PersistenceFailure as error:
                logger.error("Download worker %s halted: %s", self.worker_id, error)  # noqa: TRY400
                if self.on_fault is not None:
                    self.on_fault(error)
                return
            if processed is None:
                self.stop_event.wait(self.settings.idle_wait_seconds)

    def run_once(self) -> DownloadResult | None:
        """Process at most one queued download task."""

        job = self.repository.claim_next_download()
        if job is None:
            return None

        target = artifact_path(
            job,
            output_dir=self.settings.output_dir,
            extension=self.settings.extension,
            duration_sec=self.duration_sec,
        )
        result = self._download(job.locator, target)
        if result.outcome == DownloadOutcome.DONE:
            self.repository.complete_download(
                task_id=job.task_id,
                attempt_id=job.attempt_id,
                file_path=str(target),
            )
            logger.info("Downloaded request #%s take %s to %s", job.request_index, job.take_index, target)
        elif result.outcome == DownloadOutcome.REQUEUED:
            self.repository.requeue_download(task_id=job.task_id)
            logger.info("Download task %s requeued on shutdown", job.task_id)
        else:
            self.repository.fail_download(
                task_id=job.task_id,
                error=result.error or "download failed",
                attempts=result.attempts,
            )
            logger.warning(
                "Download for request #%s take %s failed after %d attempt(s): %s",
                job.request_index,
                job.take_index,
                result.attempts,
                result.error,
            )
        return result

    def _download(self, url: str, target: Path) -> DownloadResult:
        tmp_path = target.with_name(target.name + TMP_SUFFIX)
        redirected = False
        attempt = 0
        last_error = ""
        while attempt < self.settings.max_attempts:
            attempt += 1
            try:
                self.fetcher.fetch_to(url, tmp_path)
                os.replace(tmp_path, target)
                return DownloadResult(outcome=DownloadOutcome.DONE, attempts=attempt, path=target)
            except ArtifactRedirect as redirect:
                tmp_path.unlink(missing_ok=True)
                if not redirected:
                    redirected = True
                    url = redirect.location
                    attempt -= 1
                    continue
                last_error = f"Redirected more than once (last to {redirect.location})"
            except LocatorExpired as error:
                tmp_path.unlink(missing_ok=True)
                last_error = f"Locator expired: {error}"
            except (DownloadError, OSError) as error:
                tmp_path.unlink(missing_ok=True)
                last_error = str(error)
            logger.debug("Download attempt %d for %s failed: %s", attempt, target.name, last_error)

            if attempt < self.settings.max_attempts:
                delay = self.settings.backoff_base_seconds * (2 ** (attempt - 1))
                if self.stop_event.wait(delay):
                    return DownloadResult(outcome=DownloadOutcome.REQUEUED, attempts=attempt)
        return DownloadResult(outcome=DownloadOutcome.FAILED, attempts=attempt, error=last_error)


class DownloadPool:
    """Fixed number of download worker threads sharing one fetcher."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: GenerationRepository,
        fetcher: ArtifactFetcher,
        settings: DownloadSettings,
        duration_sec: int,
        stop_event: threading.Event,
        on_fault: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.workers = [
            DownloadWorker(
                repository=repository,
                fetcher=fetcher,
                settings=settings,
                duration_sec=duration_sec,
                worker_id=f"download-{number}",
                stop_event=stop_event,
                on_fault=on_fault,
            )
            for number in range(1, settings.workers + 1)
        ]
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        for worker in self.workers:
            thread = threading.Thread(target=worker.run, name=worker.worker_id, daemon=True)
            self._threads.append(thread)
            thread.start()

    def join(self, *, timeout: float) -> None:
        for thread in self._threads:
            thread.join(timeout)
