"""Decode a job list from CSV text."""

from __future__ import annotations

import csv
import io
import re
from pathlib import Path

from genbatch.models import Job

# A column label: a known name, optionally qualified by one more word ("Scene Description").
_LABEL_RE = re.compile(r"^(scene|context|style|prompt)(?:\s+\w+)?$", re.IGNORECASE)
_POSITIONAL_COLUMNS = ("scene", "context", "style")


def parse_jobs_csv(text: str) -> list[Job]:
    """Parse CSV rows into jobs with 1-based, contiguous indices.

    Blank rows are ignored. A first row with a cell labelled ``scene``,
    ``context``, ``style`` or ``prompt`` is a header. Columns are read by name
    only when every header cell carries such a label; otherwise they are read
    by position (scene, context, style). A ``prompt`` column is used verbatim;
    otherwise the non-empty scene/context/style cells are joined.
    """

    rows = [
        [cell.strip() for cell in row]
        for row in csv.reader(io.StringIO(text))
        if row and any(cell.strip() for cell in row)
    ]
    if not rows:
        return []

    columns = _header_columns(rows[0])
    if columns is None:
        columns = _POSITIONAL_COLUMNS
    else:
        rows = rows[1:]

    jobs: list[Job] = []
    for row in rows:
        text = compose_input(dict(zip(columns, row, strict=False)))
        if text:
            jobs.append(Job(index=len(jobs) + 1, input=text))
    return jobs


def load_jobs_csv(path: Path) -> list[Job]:
    return parse_jobs_csv(path.read_text("utf-8-sig"))


def compose_input(record: dict[str, str]) -> str:
    prompt = record.get("prompt", "").strip()
    if prompt:
        return prompt
    parts = [record.get(column, "").strip() for column in _POSITIONAL_COLUMNS]
    return ". ".join(part for part in parts if part)


def _header_columns(row: list[str]) -> tuple[str, ...] | None:
    """Column keys for a header row, or None when the row holds data."""

    labels = [_LABEL_RE.match(cell) for cell in row]
    if not any(labels):
        return None
    keys = tuple(match.group(1).lower() if match else "" for match in labels)
    named = [key for key in keys if key]
    fully_labelled = all(match or not cell for match, cell in zip(labels, row, strict=True))
    if fully_labelled and len(set(named)) == len(named):
        return keys
    return _POSITIONAL_COLUMNS
