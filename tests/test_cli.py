from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from gen_batch.main import gen_batch

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("CLI"),
]


@pytest.fixture()
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("GEN_BATCH_OUTPUT_DIR", str(tmp_path / "videos"))
    monkeypatch.setenv("GEN_BATCH_MANIFEST_PATH", str(tmp_path / "manifest.json"))
    prompts = tmp_path / "prompts.txt"
    prompts.write_text("A fox in the snow\nA city at night, neon rain\n", encoding="utf-8")
    return tmp_path


def _invoke(*args: str) -> object:
    return CliRunner().invoke(gen_batch, list(args))


def test_load_is_idempotent_per_prompt(workspace: Path) -> None:
    db_path = str(workspace / "queue.db")
    prompts = str(workspace / "prompts.txt")

    first = _invoke("load", prompts, "--db-path", db_path)
    second = _invoke("load", prompts, "--db-path", db_path)

    assert first.exit_code == 0, first.output
    assert "prompts=2 inserted=2 skipped_duplicates=0" in first.output
    assert second.exit_code == 0, second.output
    assert "inserted=0 skipped_duplicates=2" in second.output


def test_stats_list_and_inspect(workspace: Path) -> None:
    db_path = str(workspace / "queue.db")
    _invoke("load", str(workspace / "prompts.txt"), "--db-path", db_path)

    stats = _invoke("stats", "--db-path", db_path)
    listing = _invoke("list", "--db-path", db_path, "--status", "queued")
    inspect = _invoke("inspect", "2", "--db-path", db_path)
    missing = _invoke("inspect", "9", "--db-path", db_path)

    assert stats.exit_code == 0, stats.output
    assert "Requests (2): queued=2" in stats.output
    assert "Attempts: total=0 downloaded=0" in stats.output
    assert listing.exit_code == 0, listing.output
    assert "Requests: 2" in listing.output
    assert "#001 status=queued retries=0/3 slug=a-fox-in-the-snow" in listing.output
    assert inspect.exit_code == 0, inspect.output
    assert "Request: #2" in inspect.output
    assert "Prompt: A city at night, neon rain" in inspect.output
    assert "Status: queued" in inspect.output
    assert "Request not found: #9" in missing.output


def test_retry_argument_validation(workspace: Path) -> None:
    db_path = str(workspace / "queue.db")
    _invoke("load", str(workspace / "prompts.txt"), "--db-path", db_path)

    neither = _invoke("retry", "--db-path", db_path)
    both = _invoke("retry", "1", "--all-failed", "--db-path", db_path)
    active = _invoke("retry", "1", "--db-path", db_path)
    none_failed = _invoke("retry", "--all-failed", "--db-path", db_path)

    assert neither.exit_code != 0
    assert "Pass either a request index or --all-failed" in neither.output
    assert both.exit_code != 0
    assert active.exit_code != 0
    assert none_failed.exit_code == 0, none_failed.output
    assert "Retried: 0/0" in none_failed.output


def test_operator_maintenance_commands(workspace: Path) -> None:
    db_path = str(workspace / "queue.db")
    _invoke("load", str(workspace / "prompts.txt"), "--db-path", db_path)

    recover = _invoke("recover", "--db-path", db_path)
    downloads = _invoke("downloads-retry", "--db-path", db_path)
    manifest = _invoke("manifest", "--db-path", db_path)

    assert recover.exit_code == 0, recover.output
    assert "Recovery: requeued=0 promoted=0 timed_out=0" in recover.output
    assert downloads.exit_code == 0, downloads.output
    assert "Failed downloads re-queued: 0" in downloads.output
    assert manifest.exit_code == 0, manifest.output
    assert "rows=2" in manifest.output
    records = json.loads((workspace / "manifest.json").read_text(encoding="utf-8"))
    assert [record["request_status"] for record in records] == ["queued", "queued"]


def test_run_rejects_bad_interaction_reference(workspace: Path) -> None:
    result = _invoke(
        "run",
        "--db-path",
        str(workspace / "queue.db"),
        "--interaction",
        "not-a-reference",
    )

    assert result.exit_code != 0
    assert "Invalid interaction reference" in result.output


def test_smoke_runs_echo_pipeline_end_to_end() -> None:
    result = _invoke("smoke", "--requests", "2", "--outputs", "2")

    assert result.exit_code == 0, result.output
    assert "Smoke: OK requests=2 outputs=2" in result.output
    assert "Attempts: total=4 downloaded=4" in result.output


def test_recover_help_marks_it_offline_only() -> None:
    result = _invoke("recover", "--help")

    assert result.exit_code == 0, result.output
    assert "Offline only" in result.output
