"""Manifest export of request x attempt rows."""

from __future__ import annotations

import csv
import json
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from gen_batch.orchestrator.models import ManifestRow
from gen_batch.orchestrator.repository import GenerationRepository

MANIFEST_FIELDS = (
    "request_index",
    "prompt_text",
    "request_status",
    "submit_at",
    "done_at",
    "take_index",
    "model",
    "file_path",
    "attempt_status",
    "downloaded",
    "locator",
)


def manifest_record(row: ManifestRow) -> dict[str, Any]:
    return {
        "request_index": row.request_index,
        "prompt_text": row.prompt_text,
        "request_status": row.request_status,
        "submit_at": row.submit_at.isoformat() if row.submit_at else None,
        "done_at": row.done_at.isoformat() if row.done_at else None,
        "take_index": row.take_index,
        "model": row.model,
        "file_path": row.file_path,
        "attempt_status": row.attempt_status,
        "downloaded": row.downloaded,
        "locator": row.locator,
    }


def write_manifest(rows: Sequence[ManifestRow], path: Path) -> Path:
    """Write rows as CSV when ``path`` ends in .csv, JSON otherwise."""

    records = [manifest_record(row) for row in rows]
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".csv":
        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=MANIFEST_FIELDS)
            writer.writeheader()
            for record in records:
                writer.writerow(
                    {key: "" if value is None else value for key, value in record.items()},
                )
    else:
        path.write_text(
            json.dumps(records, ensure_ascii=False, indent=2) + "\n",
            encoding="utf-8",
        )
    return path


def export_manifest(repository: GenerationRepository, path: Path) -> int:
    """Export the current store state; returns the number of rows written."""

    rows = repository.manifest_rows()
    write_manifest(rows, path)
    return len(rows)
