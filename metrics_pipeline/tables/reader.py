from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType
from typing import Any

from .source import Grid, MissingTable, TableSource

"""Table reader: raw grid -> keyed records.

Header row: cells are trimmed, case-folded and whitespace runs collapsed to
``_`` ("Org  ID" -> "org_id"). Blank header cells are skipped (the column
still occupies its position). Duplicate normalized headers collide and the
last one wins, so callers must not rely on ambiguous headers.

Data rows: everything from ``data_start_row`` to the last populated row;
rows where every cell is blank are skipped. Records are read-only mappings.
"""

__all__ = [
    "EmptyInput",
    "MissingColumns",
    "MissingTable",
    "header_of",
    "Record",
    "normalize_header",
    "read_records",
    "require_columns",
]

Record = Mapping[str, Any]

_WHITESPACE = re.compile(r"\s+")


class EmptyInput(Exception):
    """Raised when a table that must have data rows has none."""


class MissingColumns(Exception):
    """Raised when expected columns are missing from a table header."""


def normalize_header(raw: Any) -> str:
    if raw is None:
        return ""
    return _WHITESPACE.sub("_", str(raw).strip().casefold())


def _header_keys(grid: Grid, header_row: int, width: int, contiguous: bool) -> list[tuple[int, str]]:
    keys: list[tuple[int, str]] = []
    for col in range(1, width + 1):
        key = normalize_header(grid.cell(header_row, col))
        if not key:
            if contiguous:
                break
            continue
        keys.append((col, key))
    return keys


def _iter_records(
    grid: Grid,
    keys: list[tuple[int, str]],
    width: int,
    first_row: int,
    last_row: int,
) -> Iterator[Record]:
    for r in range(first_row, last_row + 1):
        values = grid.row_values(r, width)
        if all(v is None or (isinstance(v, str) and not v.strip()) for v in values):
            continue
        record: dict[str, Any] = {}
        for col, key in keys:
            record[key] = values[col - 1]
        yield MappingProxyType(record)


def read_records(
    source: TableSource,
    sheet: str,
    *,
    header_row: int = 1,
    data_start_row: int | None = None,
    require_rows: bool = False,
    contiguous_header: bool = False,
) -> Iterator[Record]:
    """Read a table as an iterator of records in row order.

    The grid is fetched and validated eagerly so that ``MissingTable`` and
    ``EmptyInput`` surface at call time; records are produced lazily and
    the iterator can only be consumed once.

    Parameters
    ----------
    source: table source holding the raw grid
    sheet: table name
    header_row: 1-based header row
    data_start_row: first data row (defaults to the row after the header)
    require_rows: raise EmptyInput when there are no data rows
    contiguous_header: keep only the leading run of non-blank header cells
    """
    if header_row < 1:
        raise ValueError("header_row must be >= 1")
    grid = source.read_grid(sheet)
    first = data_start_row if data_start_row is not None else header_row + 1
    if first <= header_row:
        raise ValueError("data_start_row must come after header_row")

    last_row = grid.last_row
    width = grid.last_column
    keys = _header_keys(grid, header_row, width, contiguous_header)
    if contiguous_header:
        width = keys[-1][0] if keys else 0

    if last_row < first:
        if require_rows:
            raise EmptyInput(f"table '{sheet}' has no data rows")
        return iter(())

    records = _iter_records(grid, keys, width, first, last_row)
    if require_rows:
        # Blank rows are skipped, so "has rows" is only known after peeking.
        head = next(records, None)
        if head is None:
            raise EmptyInput(f"table '{sheet}' has no data rows")
        return _chain_head(head, records)
    return records


def _chain_head(head: Record, rest: Iterator[Record]) -> Iterator[Record]:
    yield head
    yield from rest


def header_of(source: TableSource, sheet: str, *, header_row: int = 1) -> list[str]:
    """Normalized, non-blank header names of a table, in column order."""
    grid = source.read_grid(sheet)
    return [key for _, key in _header_keys(grid, header_row, grid.last_column, False)]


def require_columns(
    source: TableSource, sheet: str, expected: Iterable[str], *, header_row: int = 1
) -> None:
    """Raise MissingColumns when any expected (normalized) header is absent."""
    present = set(header_of(source, sheet, header_row=header_row))
    missing = {normalize_header(c) for c in expected} - present
    if missing:
        raise MissingColumns(f"table '{sheet}' missing columns: {sorted(missing)}")
