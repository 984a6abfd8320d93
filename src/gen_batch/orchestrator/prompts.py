"""Prompt batch loading from text and CSV files."""

from __future__ import annotations

import csv
from pathlib import Path

from gen_batch.orchestrator.models import PromptInput

_PROMPT_COLUMNS = ("prompt", "Prompt")
_INDEX_COLUMNS = ("index", "ID")


def load_prompts(path: Path, *, start_index: int = 1) -> list[PromptInput]:
    """Load a prompt batch.

    ``.txt`` files hold one prompt per non-empty line. ``.csv`` files need a
    ``prompt`` (or ``Prompt``) column and may carry explicit ``index``/``ID``
    values; rows without one are numbered from ``start_index``.
    """

    suffix = path.suffix.lower()
    if suffix == ".txt":
        return _load_text(path, start_index=start_index)
    if suffix == ".csv":
        return _load_csv(path, start_index=start_index)
    raise ValueError(f"Unsupported prompts file type: {path.name!r} (expected .txt or .csv)")


def _load_text(path: Path, *, start_index: int) -> list[PromptInput]:
    lines = [line.strip() for line in path.read_text(encoding="utf-8").splitlines()]
    return [
        PromptInput(index=start_index + offset, text=text)
        for offset, text in enumerate(line for line in lines if line)
    ]


def _load_csv(path: Path, *, start_index: int) -> list[PromptInput]:
    with path.open(encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        fieldnames = reader.fieldnames or []
        prompt_column = next((name for name in _PROMPT_COLUMNS if name in fieldnames), None)
        if prompt_column is None:
            raise ValueError(f"CSV {path.name!r} has no 'prompt' column.")
        index_column = next((name for name in _INDEX_COLUMNS if name in fieldnames), None)

        prompts: list[PromptInput] = []
        seen: set[int] = set()
        next_index = start_index
        for line_no, row in enumerate(reader, start=2):
            text = (row.get(prompt_column) or "").strip()
            if not text:
                continue
            raw_index = (row.get(index_column) or "").strip() if index_column else ""
            if raw_index:
                try:
                    index = int(raw_index)
                except ValueError as error:
                    raise ValueError(
                        f"Invalid index {raw_index!r} on line {line_no} of {path.name!r}",
                    ) from error
                if index <= 0:
                    raise ValueError(f"Index must be positive on line {line_no}: {index}")
            else:
                index = next_index
            if index in seen:
                raise ValueError(f"Duplicate index {index} on line {line_no} of {path.name!r}")
            seen.add(index)
            next_index = max(next_index, index + 1)
            prompts.append(PromptInput(index=index, text=text))
    return prompts
