"""Controllers for gen-batch CLI commands."""

from __future__ import annotations

import importlib
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from gen_batch.config import DownloadSettings, OrchestratorSettings, Settings
from gen_batch.http.fetcher import ArtifactFetcher
from gen_batch.interaction.base import EventFeed, InteractionLayer
from gen_batch.interaction.echo import EchoInteraction, build_echo_transport
from gen_batch.orchestrator.downloader import remove_partial_files
from gen_batch.orchestrator.manifest import export_manifest
from gen_batch.orchestrator.models import DownloadState, PromptInput, RequestStatus, StatusCounts
from gen_batch.orchestrator.prompts import load_prompts
from gen_batch.orchestrator.repository import GenerationRepository
from gen_batch.orchestrator.runtime import BatchOrchestrator, RunSummary


@dataclass(slots=True)
class LoadCommand:
    """CLI input for loading a prompt batch."""

    db_path: Path | None
    prompts_file: Path
    start_index: int | None
    max_retries: int | None


@dataclass(slots=True)
class RunCommand:
    """CLI input for a full orchestration run."""

    db_path: Path | None
    interaction: str
    manifest_path: Path | None
    deadline_seconds: float | None


@dataclass(slots=True)
class SmokeCommand:
    """CLI input for the self-contained echo pipeline run."""

    requests: int
    outputs: int
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class SmokeResult:
    success: bool
    lines: list[str]


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class ListRequestsCommand:
    """CLI input for request listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectRequestCommand:
    db_path: Path | None
    request_index: int


@dataclass(slots=True)
class RetryCommand:
    """CLI input for explicit retries."""

    db_path: Path | None
    request_index: int | None
    all_failed: bool


@dataclass(slots=True)
class RecoverCommand:
    db_path: Path | None


@dataclass(slots=True)
class DownloadsRetryCommand:
    db_path: Path | None


@dataclass(slots=True)
class ManifestCommand:
    db_path: Path | None
    output_path: Path | None


class OrchestratorCliController:
    """Command handlers used by the click layer."""

    def load(self, command: LoadCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            start_index = command.start_index or repository.next_free_index()
            prompts = load_prompts(command.prompts_file, start_index=start_index)
            summary = repository.insert_requests(
                prompts,
                max_retries=(
                    command.max_retries
                    if command.max_retries is not None
                    else settings.orchestrator.max_request_retries
                ),
            )
        return [
            f"Loaded {command.prompts_file}: prompts={len(prompts)} "
            f"inserted={summary.inserted} skipped_duplicates={summary.skipped}",
        ]

    def run(self, command: RunCommand) -> list[str]:
        """Run orchestration until drained; raises ``OrchestrationHalted`` on faults."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        factory = resolve_interaction_factory(command.interaction)
        feed = EventFeed()
        interaction = factory(feed)
        manifest_path = command.manifest_path or settings.orchestrator.manifest_path
        with (
            _repository(settings) as repository,
            ArtifactFetcher(timeout_seconds=settings.download.http_timeout_seconds) as fetcher,
        ):
            orchestrator = BatchOrchestrator(
                repository=repository,
                interaction=interaction,
                feed=feed,
                settings=settings,
                fetcher=fetcher,
            )
            summary = orchestrator.run(
                manifest_path=manifest_path,
                deadline_seconds=command.deadline_seconds,
            )
        return _render_run_summary(summary)

    def smoke(self, command: SmokeCommand) -> SmokeResult:
        """Run the whole pipeline against the echo layer in a throwaway directory."""

        with tempfile.TemporaryDirectory(prefix="gen-batch-smoke-") as tmp:
            root = Path(tmp)
            settings = Settings(
                db_path=root / "smoke.db",
                orchestrator=OrchestratorSettings(
                    heartbeat_seconds=0.05,
                    ack_wait_seconds=2.0,
                    poll_interval_seconds=0.2,
                    poll_jitter_seconds=0.05,
                    completion_check_seconds=0.1,
                    request_timeout_seconds=command.timeout_seconds,
                    manifest_path=root / "manifest.json",
                ),
                download=DownloadSettings(
                    output_dir=root / "videos",
                    backoff_base_seconds=0.0,
                    idle_wait_seconds=0.05,
                ),
            )
            feed = EventFeed()
            interaction = EchoInteraction(feed, outputs=command.outputs)
            with (
                _repository(settings) as repository,
                ArtifactFetcher(transport=build_echo_transport()) as fetcher,
            ):
                repository.insert_requests(
                    [_smoke_prompt(index) for index in range(1, command.requests + 1)],
                )
                orchestrator = BatchOrchestrator(
                    repository=repository,
                    interaction=interaction,
                    feed=feed,
                    settings=settings,
                    fetcher=fetcher,
                )
                try:
                    summary = orchestrator.run(
                        manifest_path=settings.orchestrator.manifest_path,
                        deadline_seconds=command.timeout_seconds,
                    )
                finally:
                    interaction.close()

        counts = summary.counts
        expected_files = command.requests * command.outputs
        success = (
            summary.drained
            and counts.request_count(RequestStatus.DONE) == command.requests
            and counts.attempts_downloaded == expected_files
        )
        lines = [
            f"Smoke: {'OK' if success else 'FAILED'} requests={command.requests} "
            f"outputs={command.outputs}",
            *_render_counts(counts),
        ]
        return SmokeResult(success=success, lines=lines)

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            counts = repository.status_counts()
        return _render_counts(counts)

    def list_requests(self, command: ListRequestsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            requests = repository.list_requests(status=status_filter, limit=command.limit)

        lines = [f"Requests: {len(requests)}"]
        for request in requests:
            lines.append(
                f"  #{request.request_index:03d} status={request.status.value} "
                f"retries={request.retry_count}/{request.max_retries} "
                f"slug={request.tail_slug or '-'} error={request.error or '-'}",
            )
        return lines

    def inspect_request(self, command: InspectRequestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_request_details(request_index=command.request_index)
        if details is None:
            return [f"Request not found: #{command.request_index}"]

        request = details.request
        lines = [
            f"Request: #{request.request_index}",
            f"Status: {request.status.value}",
            f"Prompt: {request.prompt_text}",
            f"Retries: {request.retry_count}/{request.max_retries}",
            f"Submitted: {request.submit_at.isoformat() if request.submit_at else '-'}",
            f"Finished: {request.done_at.isoformat() if request.done_at else '-'}",
            f"Error: {request.error or '-'}",
            f"Attempts: {len(details.attempts)}",
        ]
        for attempt in details.attempts:
            lines.append(
                f"  take={attempt.take_index:02d} op={attempt.operation_id} "
                f"status={attempt.status or '-'} round={attempt.submission_round} "
                f"downloaded={'yes' if attempt.downloaded else 'no'} "
                f"file={attempt.file_path or '-'}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry(self, command: RetryCommand) -> list[str]:
        if command.all_failed == (command.request_index is not None):
            raise ValueError("Pass either a request index or --all-failed.")
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.all_failed:
                results = repository.retry_failed_requests()
            else:
                results = [repository.retry_request(request_index=command.request_index or 0)]

        lines = [f"Retried: {sum(1 for result in results if result.retried)}/{len(results)}"]
        for result in results:
            state = "re-queued" if result.retried else "not retried"
            lines.append(f"  #{result.request_index:03d} {state}: {result.reason}")
        return lines

    def recover(self, command: RecoverCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            report = repository.recover(
                stale_after=timedelta(hours=settings.orchestrator.stale_in_progress_hours),
            )
        removed = remove_partial_files(settings.download.output_dir)
        return [
            "Recovery: "
            f"requeued={report.submitting_requeued} promoted={report.submitting_promoted} "
            f"timed_out={report.stale_timed_out} downloads_requeued={report.downloads_requeued} "
            f"partial_files_removed={removed}",
        ]

    def downloads_retry(self, command: DownloadsRetryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            requeued = repository.requeue_failed_downloads()
        return [f"Failed downloads re-queued: {requeued}"]

    def manifest(self, command: ManifestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        output_path = command.output_path or settings.orchestrator.manifest_path
        with _repository(settings) as repository:
            rows = export_manifest(repository, output_path)
        return [f"Manifest written: {output_path} rows={rows}"]


def resolve_interaction_factory(reference: str) -> Callable[[EventFeed], InteractionLayer]:
    """Resolve ``module:attr`` to a callable that builds an interaction layer from a feed."""

    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Invalid interaction reference {reference!r}; expected 'module:attr'.")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"Interaction reference {reference!r} is not callable.")
    return factory


def _smoke_prompt(index: int) -> PromptInput:
    return PromptInput(index=index, text=f"Smoke prompt {index}: a quiet lake at dawn")


def _render_counts(counts: StatusCounts) -> list[str]:
    requests = " ".join(
        f"{status.value}={counts.request_count(status)}" for status in RequestStatus
    )
    downloads = " ".join(
        f"{state.value}={counts.download_count(state)}" for state in DownloadState
    )
    return [
        f"Requests ({counts.total_requests}): {requests}",
        f"Downloads: {downloads}",
        f"Attempts: total={counts.attempts_total} downloaded={counts.attempts_downloaded}",
        f"Retried requests: {counts.retried_requests}",
    ]


def _render_run_summary(summary: RunSummary) -> list[str]:
    lines = [
        f"Run finished: drained={'yes' if summary.drained else 'no'} "
        f"reason={summary.stop_reason or '-'}",
        *_render_counts(summary.counts),
    ]
    if summary.manifest_path is not None:
        lines.append(f"Manifest: {summary.manifest_path} rows={summary.manifest_rows}")
    return lines


def _parse_status(value: str | None) -> RequestStatus | None:
    if value is None:
        return None
    try:
        return RequestStatus(value.strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported status filter: {value!r}") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[GenerationRepository]:
    repository = GenerationRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
