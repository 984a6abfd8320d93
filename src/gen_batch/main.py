"""CLI entrypoint for gen-batch."""

import logging
from pathlib import Path

import rich_click as click
from rich.logging import RichHandler

from gen_batch import __version__
from gen_batch.orchestrator.controllers import (
    DownloadsRetryCommand,
    InspectRequestCommand,
    ListRequestsCommand,
    LoadCommand,
    ManifestCommand,
    OrchestratorCliController,
    RecoverCommand,
    RetryCommand,
    RunCommand,
    SmokeCommand,
    StatsCommand,
)
from gen_batch.orchestrator.errors import OrchestrationHalted

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="gen-batch")
@click.option("--verbose", "-v", is_flag=True, help="Log orchestration progress.")
def gen_batch(verbose: bool) -> None:
    """Batch orchestrator for a slow, stateful generation service."""

    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        )


@gen_batch.command("load")
@db_path_option
@click.argument("prompts_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--start-index",
    type=click.IntRange(min=1),
    default=None,
    help="First request index; defaults to the next free index.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retry budget per request; defaults to GEN_BATCH_MAX_REQUEST_RETRIES.",
)
def load(
    db_path: Path | None,
    prompts_file: Path,
    start_index: int | None,
    max_retries: int | None,
) -> None:
    """Load prompts from a .txt (one per line) or .csv (prompt column) file."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.load(
            LoadCommand(
                db_path=db_path,
                prompts_file=prompts_file,
                start_index=start_index,
                max_retries=max_retries,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@gen_batch.command("run")
@db_path_option
@click.option(
    "--interaction",
    required=True,
    help="Interaction layer factory as 'module:attr'; called with the event feed.",
)
@click.option(
    "--manifest",
    "manifest_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Manifest output (.json or .csv); defaults to GEN_BATCH_MANIFEST_PATH.",
)
@click.option(
    "--deadline",
    "deadline_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop after this many seconds even if work remains.",
)
def run(
    db_path: Path | None,
    interaction: str,
    manifest_path: Path | None,
    deadline_seconds: float | None,
) -> None:
    """Recover, submit, track and download until the queue is drained."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.run(
            RunCommand(
                db_path=db_path,
                interaction=interaction,
                manifest_path=manifest_path,
                deadline_seconds=deadline_seconds,
            ),
        )
    except OrchestrationHalted as error:
        raise click.ClickException(str(error)) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@gen_batch.command("smoke")
@click.option(
    "--requests",
    type=click.IntRange(min=1, max=100),
    default=3,
    show_default=True,
    help="Number of synthetic prompts.",
)
@click.option(
    "--outputs",
    type=click.IntRange(min=1, max=4),
    default=1,
    show_default=True,
    help="Takes generated per prompt.",
)
def smoke(requests: int, outputs: int) -> None:
    """Run the full pipeline against the simulated echo service."""

    result = ORCHESTRATOR_CONTROLLER.smoke(SmokeCommand(requests=requests, outputs=outputs))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Smoke run failed.")


@gen_batch.command("stats")
@db_path_option
def stats(db_path: Path | None) -> None:
    """Show request, attempt and download counters."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.stats(StatsCommand(db_path=db_path)))


@gen_batch.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(
        ["queued", "submitting", "in_progress", "done", "failed", "timeout"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max requests to print.",
)
def list_requests(db_path: Path | None, status: str | None, limit: int) -> None:
    """List requests in submission order."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_requests(
            ListRequestsCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@gen_batch.command("inspect")
@db_path_option
@click.argument("request_index", type=click.IntRange(min=1))
def inspect(db_path: Path | None, request_index: int) -> None:
    """Inspect one request with its attempts and event history."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect_request(
            InspectRequestCommand(db_path=db_path, request_index=request_index),
        ),
    )


@gen_batch.command("retry")
@db_path_option
@click.argument("request_index", type=click.IntRange(min=1), required=False)
@click.option("--all-failed", is_flag=True, help="Retry every failed/timeout request.")
def retry(db_path: Path | None, request_index: int | None, all_failed: bool) -> None:
    """Re-queue a request, dropping its failed/cancelled takes."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.retry(
            RetryCommand(db_path=db_path, request_index=request_index, all_failed=all_failed),
        )
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@gen_batch.command("recover")
@db_path_option
def recover(db_path: Path | None) -> None:
    """Reconcile rows left behind by an interrupted run.

    Offline only: submitting requests and in-flight downloads are reset
    unconditionally, so never run this while a ``gen-batch run`` is active on
    the same database.
    """

    _emit_lines(ORCHESTRATOR_CONTROLLER.recover(RecoverCommand(db_path=db_path)))


@gen_batch.command("downloads-retry")
@db_path_option
def downloads_retry(db_path: Path | None) -> None:
    """Re-queue every failed download."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.downloads_retry(DownloadsRetryCommand(db_path=db_path)))


@gen_batch.command("manifest")
@db_path_option
@click.option(
    "--output",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Manifest output (.json or .csv); defaults to GEN_BATCH_MANIFEST_PATH.",
)
def manifest(db_path: Path | None, output_path: Path | None) -> None:
    """Export the request x attempt manifest from the current store state."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.manifest(ManifestCommand(db_path=db_path, output_path=output_path)),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    gen_batch()
