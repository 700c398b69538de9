"""Readers for fact import files.

JSON: an array of objects with the fact fields. CSV: a header row naming the
columns; ``type``, ``subject``, ``predicate`` and ``object`` are required.
"""

from __future__ import annotations

import csv
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any, TextIO

from .errors import ParseError
from .importer import RawFact

Parser = Callable[[TextIO], list[RawFact]]

REQUIRED_COLUMNS = ("type", "subject", "predicate", "object")


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _confidence(value: Any, line: int) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ParseError(f"line {line}: invalid confidence value {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ParseError(f"line {line}: invalid confidence value {value!r}") from None


def _record(d: dict[str, Any], line: int) -> RawFact:
    return RawFact(
        type=_text(d.get("type")),
        subject=_text(d.get("subject")),
        predicate=_text(d.get("predicate")),
        object=_text(d.get("object")),
        context=_text(d.get("context")),
        id=_text(d.get("id")),
        source_file=_text(d.get("source_file")),
        confidence=_confidence(d.get("confidence"), line),
        line=line,
    )


def parse_json(stream: TextIO) -> list[RawFact]:
    """Line numbers are the 1-based array index."""
    try:
        data = json.load(stream)
    except json.JSONDecodeError as e:
        raise ParseError(f"parsing JSON: {e}") from e
    if not isinstance(data, list):
        raise ParseError("parsing JSON: expected an array of fact objects")
    out: list[RawFact] = []
    for i, item in enumerate(data, start=1):
        if not isinstance(item, dict):
            raise ParseError(f"line {i}: expected an object, got {type(item).__name__}")
        out.append(_record(item, i))
    return out


def parse_csv(stream: TextIO) -> list[RawFact]:
    """Line numbers count the header as line 1."""
    reader = csv.DictReader(stream)
    try:
        header = reader.fieldnames
    except csv.Error as e:
        raise ParseError(f"reading CSV header: {e}") from e
    if not header:
        raise ParseError("reading CSV header: empty file")
    header = [h.strip() for h in header]
    reader.fieldnames = header
    for col in REQUIRED_COLUMNS:
        if col not in header:
            raise ParseError(f"missing required column: {col}")

    out: list[RawFact] = []
    line = 1
    try:
        for row in reader:
            line += 1
            out.append(_record(row, line))
    except csv.Error as e:
        raise ParseError(f"line {line + 1}: {e}") from e
    return out


_BY_FORMAT: dict[str, Parser] = {"json": parse_json, "csv": parse_csv}


def parser_for_format(fmt: str) -> Parser | None:
    return _BY_FORMAT.get(fmt.strip().lower())


def parser_for_file(path: str | Path) -> Parser | None:
    return _BY_FORMAT.get(Path(path).suffix.lower().lstrip("."))
