"""Orchestration runtime: recovery, worker threads and completion watching."""

from __future__ import annotations

import logging
import random
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from gen_batch.config import Settings
from gen_batch.http.fetcher import ArtifactFetcher
from gen_batch.interaction.base import EventFeed, InteractionLayer
from gen_batch.orchestrator.downloader import DownloadPool, remove_partial_files
from gen_batch.orchestrator.errors import OrchestrationHalted
from gen_batch.orchestrator.feeder import SubmissionFeeder
from gen_batch.orchestrator.manifest import export_manifest
from gen_batch.orchestrator.models import RecoveryReport, StatusCounts
from gen_batch.orchestrator.poller import PollRegistry
from gen_batch.orchestrator.repository import GenerationRepository
from gen_batch.orchestrator.router import ResponseRouter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunSummary:
    """Outcome of one orchestration run for CLI reporting."""

    counts: StatusCounts
    drained: bool
    recovery: RecoveryReport
    manifest_path: Path | None = None
    manifest_rows: int = 0
    stop_reason: str | None = None


class BatchOrchestrator:
    """Runs the feeder, router, poll loops and download pool against one store."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: GenerationRepository,
        interaction: InteractionLayer,
        feed: EventFeed,
        settings: Settings,
        fetcher: ArtifactFetcher,
        rng: random.Random | None = None,
        join_timeout_seconds: float = 5.0,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.join_timeout_seconds = join_timeout_seconds
        self.stop_event = threading.Event()
        self._fault: BaseException | None = None
        self._fault_lock = threading.Lock()
        self._stop_reason: str | None = None
        self._threads: list[threading.Thread] = []
        self._started = False

        orchestrator = settings.orchestrator
        self.request_timeout = timedelta(seconds=orchestrator.request_timeout_seconds)
        self.polls = PollRegistry(
            repository=repository,
            timeout=self.request_timeout,
            interval_seconds=orchestrator.poll_interval_seconds,
            jitter_seconds=orchestrator.poll_jitter_seconds,
            stop_event=self.stop_event,
            on_fault=self._report_fault,
            rng=rng,
        )
        self.feeder = SubmissionFeeder(
            repository=repository,
            interaction=interaction,
            polls=self.polls,
            ceiling=orchestrator.concurrency_ceiling,
            request_timeout=self.request_timeout,
            ack_wait_seconds=orchestrator.ack_wait_seconds,
            heartbeat_seconds=orchestrator.heartbeat_seconds,
            stop_event=self.stop_event,
            on_fault=self._report_fault,
        )
        self.router = ResponseRouter(
            repository=repository,
            feed=feed,
            ack_sink=self.feeder.deliver_ack,
            request_timeout=self.request_timeout,
            duration_sec=orchestrator.artifact_duration_seconds,
            stop_event=self.stop_event,
            on_fault=self._report_fault,
        )
        self.downloads = DownloadPool(
            repository=repository,
            fetcher=fetcher,
            settings=settings.download,
            duration_sec=orchestrator.artifact_duration_seconds,
            stop_event=self.stop_event,
            on_fault=self._report_fault,
        )

    def recover(self) -> RecoveryReport:
        """Reconcile persisted state left by a previous run."""

        report = self.repository.recover(
            stale_after=timedelta(hours=self.settings.orchestrator.stale_in_progress_hours),
        )
        for request_id in report.promoted_request_ids:
            self.repository.evaluate_request(request_id=request_id, timeout=self.request_timeout)
        removed = remove_partial_files(self.settings.download.output_dir)
        logger.info(
            "Recovery: %d requeued, %d promoted, %d timed out, %d downloads requeued, "
            "%d partial files removed",
            report.submitting_requeued,
            report.submitting_promoted,
            report.stale_timed_out,
            report.downloads_requeued,
            removed,
        )
        return report

    def start(self) -> None:
        """Start router, feeder and download workers, and resume in-progress polling."""

        if self._started:
            raise RuntimeError("Orchestrator already started.")
        self._started = True
        for name, target in (("router", self.router.run), ("feeder", self.feeder.run)):
            thread = threading.Thread(target=target, name=name, daemon=True)
            self._threads.append(thread)
            thread.start()
        self.downloads.start()
        for request_id in self.repository.list_in_progress_ids():
            self.polls.start(request_id)

    def stop(self, *, reason: str = "stopped") -> None:
        if self._stop_reason is None:
            self._stop_reason = reason
        self.stop_event.set()
        for thread in self._threads:
            thread.join(self.join_timeout_seconds)
        self.downloads.join(timeout=self.join_timeout_seconds)
        self.polls.join_all(timeout=self.join_timeout_seconds)

    def wait_for_completion(self, *, deadline_seconds: float | None = None) -> StatusCounts:
        """Block until the store is drained, the deadline passes or a stop is requested.

        Raises ``OrchestrationHalted`` when a system-level fault stopped a loop.
        """

        interval = self.settings.orchestrator.completion_check_seconds
        deadline = time.monotonic() + deadline_seconds if deadline_seconds is not None else None
        while True:
            self._raise_if_faulted()
            counts = self.repository.status_counts()
            if counts.is_drained:
                return counts
            if self.stop_event.is_set():
                self._raise_if_faulted()
                return counts
            if deadline is not None and time.monotonic() >= deadline:
                self._stop_reason = self._stop_reason or "deadline"
                return counts
            self.stop_event.wait(interval)

    def run(
        self,
        *,
        manifest_path: Path | None = None,
        deadline_seconds: float | None = None,
    ) -> RunSummary:
        """Recover, run until drained (or stopped) and export the manifest."""

        recovery = self.recover()
        self.start()
        counts: StatusCounts | None = None
        rows = 0
        try:
            with self._signal_handlers():
                counts = self.wait_for_completion(deadline_seconds=deadline_seconds)
        finally:
            self.stop(reason="drained" if counts is not None and counts.is_drained else "early")
            if manifest_path is not None:
                rows = export_manifest(self.repository, manifest_path)
                logger.info("Manifest with %d row(s) written to %s", rows, manifest_path)
        return RunSummary(
            counts=self.repository.status_counts(),
            drained=counts.is_drained,
            recovery=recovery,
            manifest_path=manifest_path,
            manifest_rows=rows,
            stop_reason=self._stop_reason,
        )

    @property
    def fault(self) -> BaseException | None:
        return self._fault

    def _report_fault(self, error: BaseException) -> None:
        with self._fault_lock:
            if self._fault is None:
                self._fault = error
        self.stop_event.set()

    def _raise_if_faulted(self) -> None:
        if self._fault is not None:
            raise OrchestrationHalted(f"Orchestration halted: {self._fault}", cause=self._fault)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s, stopping orchestration", name)
            self._stop_reason = self._stop_reason or f"signal {name}"
            self.stop_event.set()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
