from __future__ import annotations

from pathlib import Path

import allure
import pytest

from gen_batch.orchestrator.models import PromptInput
from gen_batch.orchestrator.prompts import load_prompts

pytestmark = [
    allure.epic("Batch Orchestration"),
    allure.feature("Prompt Loading"),
]


def test_text_file_skips_blank_lines(tmp_path: Path) -> None:
    path = tmp_path / "prompts.txt"
    path.write_text("  first prompt \n\n second prompt\n   \n", encoding="utf-8")

    assert load_prompts(path, start_index=4) == [
        PromptInput(index=4, text="first prompt"),
        PromptInput(index=5, text="second prompt"),
    ]


def test_csv_mixes_explicit_and_implicit_indexes(tmp_path: Path) -> None:
    path = tmp_path / "prompts.csv"
    path.write_text(
        "ID,Prompt\n10,ten\n,after ten\n3,three\n,\n,next\n",
        encoding="utf-8",
    )

    prompts = load_prompts(path)

    assert [(prompt.index, prompt.text) for prompt in prompts] == [
        (10, "ten"),
        (11, "after ten"),
        (3, "three"),
        (12, "next"),
    ]


def test_csv_with_bom_and_lowercase_columns(tmp_path: Path) -> None:
    path = tmp_path / "prompts.csv"
    path.write_text("\ufeffprompt\nhello\n", encoding="utf-8")

    assert load_prompts(path) == [PromptInput(index=1, text="hello")]


@pytest.mark.parametrize(
    ("name", "content", "message"),
    [
        ("prompts.csv", "text\nhello\n", "no 'prompt' column"),
        ("prompts.csv", "index,prompt\nabc,hello\n", "Invalid index"),
        ("prompts.csv", "index,prompt\n0,hello\n", "must be positive"),
        ("prompts.csv", "index,prompt\n2,a\n2,b\n", "Duplicate index 2"),
        ("prompts.json", "[]", "Unsupported prompts file type"),
    ],
)
def test_invalid_files_are_rejected(tmp_path: Path, name: str, content: str, message: str) -> None:
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ValueError, match=message):
        load_prompts(path)
