"""Deterministic artifact file naming."""

from __future__ import annotations

import re
import unicodedata
from datetime import date

SLUG_TAIL_CHARS = 50
DEFAULT_MODEL_SHORT = "veo3"

# Checked in order; first rule whose markers all occur in the raw label wins.
_MODEL_SHORT_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("veo_3_1", "fast"), "veo3.1-fast"),
    (("veo_3_1",), "veo3.1"),
)

_DROP_CHARS = re.compile(r"[^\w\s-]", re.ASCII)
_WHITESPACE = re.compile(r"\s+")
_DASHES = re.compile(r"-+")


def tail_slug(prompt_text: str) -> str:
    """Lowercase hyphenated slug of the last characters of a prompt."""

    tail = prompt_text[-SLUG_TAIL_CHARS:]
    decomposed = unicodedata.normalize("NFD", tail)
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    slug = _DROP_CHARS.sub("", stripped.lower())
    slug = _WHITESPACE.sub("-", slug)
    slug = _DASHES.sub("-", slug)
    return slug.strip("-")


def model_short(model: str | None, *, default: str = DEFAULT_MODEL_SHORT) -> str:
    """Canonical abbreviation of a raw model label."""

    if not model:
        return default
    for markers, short in _MODEL_SHORT_RULES:
        if all(marker in model for marker in markers):
            return short
    return default


def artifact_filename(  # noqa: PLR0913
    *,
    day: date,
    request_index: int,
    slug: str,
    model: str | None,
    take_index: int,
    duration_sec: int,
    extension: str = "mp4",
) -> str:
    return (
        f"{day.isoformat()}_{request_index:03d}_{slug}_{model_short(model)}_"
        f"{take_index:02d}_{duration_sec}s.{extension.lstrip('.')}"
    )


FILENAME_PATTERN = re.compile(
    r"^\d{4}-\d{2}-\d{2}_\d{3,}_[a-z0-9_-]*_veo3(?:\.1(?:-fast)?)?_\d{2,}_\d+s\.[A-Za-z0-9]+$",
)
