from __future__ import annotations

import csv
import json
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import allure

from gen_batch.orchestrator.manifest import MANIFEST_FIELDS, export_manifest, write_manifest
from gen_batch.orchestrator.models import ManifestRow
from gen_batch.orchestrator.repository import GenerationRepository

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Manifest Export"),
]


def _row(**overrides: object) -> ManifestRow:
    values: dict[str, object] = {
        "request_index": 1,
        "prompt_text": "Café by the sea",
        "tail_slug": "cafe-by-the-sea",
        "request_status": "done",
        "submit_at": datetime(2026, 10, 17, 9, 0, tzinfo=UTC),
        "done_at": None,
        "take_index": 0,
        "model": "veo_3_1_t2v_fast",
        "file_path": "dist/videos/a.mp4",
        "attempt_status": "MEDIA_GENERATION_STATUS_SUCCESSFUL",
        "downloaded": True,
        "locator": "https://cdn.example/a.mp4",
    }
    values.update(overrides)
    return ManifestRow(**values)  # type: ignore[arg-type]


def test_json_manifest_keeps_unicode_and_nulls(tmp_path: Path) -> None:
    path = write_manifest([_row()], tmp_path / "out" / "manifest.json")

    (record,) = json.loads(path.read_text(encoding="utf-8"))
    assert list(record) == list(MANIFEST_FIELDS)
    assert record["prompt_text"] == "Café by the sea"
    assert record["submit_at"] == "2026-10-17T09:00:00+00:00"
    assert record["done_at"] is None
    assert "Café" in path.read_text(encoding="utf-8")


def test_csv_manifest_blanks_missing_values(tmp_path: Path) -> None:
    path = write_manifest(
        [_row(take_index=None, model=None, file_path=None, downloaded=False)],
        tmp_path / "manifest.CSV",
    )

    with path.open(encoding="utf-8", newline="") as handle:
        (record,) = list(csv.DictReader(handle))
    assert record["take_index"] == ""
    assert record["file_path"] == ""
    assert record["downloaded"] == "False"


def test_export_lists_requests_without_attempts(
    repository: GenerationRepository,
    add_requests: Callable[..., list[int]],
    submit: Callable[..., list],
    tmp_path: Path,
) -> None:
    first, _ = add_requests("with takes", "still queued")
    submit(first, "op-1", "op-2")

    path = tmp_path / "manifest.json"
    assert export_manifest(repository, path) == 3

    records = json.loads(path.read_text(encoding="utf-8"))
    assert [(r["request_index"], r["take_index"]) for r in records] == [
        (1, 0),
        (1, 1),
        (2, None),
    ]
    assert records[2]["request_status"] == "queued"
