from __future__ import annotations

import logging
import os
import re
from collections.abc import Sequence
from datetime import date, datetime
from pathlib import Path
from typing import Any, Protocol

import pandas as pd
import psycopg2

from metrics_pipeline.db.batch_insert import BatchInsertError, batch_insert

"""Output sinks for report tables.

All sinks stage writes per sheet and make them visible only on
``commit(sheet)``: a report that fails half way leaves the previously
published table untouched. Positions are 1-based (row, column), like the
spreadsheet surface the reports are rendered on. Calling ``clear`` /
``write_rows`` / ``commit`` again with identical arguments yields the same
published table.

Sinks:
- ``MemorySink``: keeps committed tables in memory (dry runs, tests)
- ``WorkbookSink``: one ``.xlsx`` per sheet, replaced atomically
- ``PostgresSink``: cell mirror table, replaced in one transaction
"""

__all__ = [
    "MemorySink",
    "PostgresSink",
    "SinkError",
    "TableSink",
    "WorkbookSink",
]

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9_.-]+")
# Excel limits sheet names to 31 characters.
MAX_SHEET_NAME = 31


class SinkError(Exception):
    """Raised when a sink cannot publish a table."""


class TableSink(Protocol):
    def clear(self, sheet: str) -> None: ...

    def write_rows(self, sheet: str, start_row: int, start_col: int, rows: Sequence[Sequence[Any]]) -> None: ...

    def commit(self, sheet: str) -> None: ...


def _materialize(cells: dict[tuple[int, int], Any]) -> list[list[Any]]:
    if not cells:
        return []
    n_rows = max(r for r, _ in cells)
    n_cols = max(c for _, c in cells)
    grid: list[list[Any]] = [[None] * n_cols for _ in range(n_rows)]
    for (r, c), value in cells.items():
        grid[r - 1][c - 1] = value
    return grid


class _StagingSink:
    """Shared staging logic: cells keyed by (row, col) per sheet."""

    def __init__(self) -> None:
        self._staged: dict[str, dict[tuple[int, int], Any]] = {}

    def _load_committed(self, sheet: str) -> list[list[Any]]:
        return []

    def _stage(self, sheet: str) -> dict[tuple[int, int], Any]:
        if sheet not in self._staged:
            cells: dict[tuple[int, int], Any] = {}
            for r, row in enumerate(self._load_committed(sheet), start=1):
                for c, value in enumerate(row, start=1):
                    if value is not None:
                        cells[(r, c)] = value
            self._staged[sheet] = cells
        return self._staged[sheet]

    def clear(self, sheet: str) -> None:
        self._staged[sheet] = {}

    def write_rows(self, sheet: str, start_row: int, start_col: int, rows: Sequence[Sequence[Any]]) -> None:
        if start_row < 1 or start_col < 1:
            raise ValueError("start_row and start_col must be >= 1")
        cells = self._stage(sheet)
        for i, row in enumerate(rows):
            for j, value in enumerate(row):
                key = (start_row + i, start_col + j)
                if value is None:
                    cells.pop(key, None)
                else:
                    cells[key] = value

    def _take(self, sheet: str) -> list[list[Any]]:
        return _materialize(self._stage(sheet))

    def commit(self, sheet: str) -> None:
        grid = self._take(sheet)
        self._publish(sheet, grid)
        self._staged.pop(sheet, None)

    def _publish(self, sheet: str, grid: list[list[Any]]) -> None:
        raise NotImplementedError


class MemorySink(_StagingSink):
    def __init__(self) -> None:
        super().__init__()
        self.tables: dict[str, list[list[Any]]] = {}
        self.commits = 0

    def _load_committed(self, sheet: str) -> list[list[Any]]:
        return [list(r) for r in self.tables.get(sheet, [])]

    def _publish(self, sheet: str, grid: list[list[Any]]) -> None:
        self.tables[sheet] = grid
        self.commits += 1


class WorkbookSink(_StagingSink):
    """Writes each sheet to ``<directory>/<sheet>.xlsx``.

    The workbook is written to a temporary file in the same directory and
    moved into place with ``os.replace`` so readers never see a partial file.
    """

    def __init__(self, directory: Path | str) -> None:
        super().__init__()
        self.directory = Path(directory)

    def path_for(self, sheet: str) -> Path:
        stem = _UNSAFE_FILENAME.sub("_", sheet.strip()) or "sheet"
        return self.directory / f"{stem}.xlsx"

    def _load_committed(self, sheet: str) -> list[list[Any]]:
        path = self.path_for(sheet)
        if not path.exists():
            return []
        df = pd.read_excel(path, header=None, dtype=object)
        return [[None if pd.isna(v) else v for v in row] for row in df.values.tolist()]

    def _publish(self, sheet: str, grid: list[list[Any]]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.path_for(sheet)
        tmp = target.with_name(f".{target.stem}.tmp.xlsx")
        replaced = False
        try:
            with pd.ExcelWriter(tmp) as writer:
                pd.DataFrame(grid).to_excel(
                    writer, sheet_name=sheet[:MAX_SHEET_NAME] or "sheet", header=False, index=False
                )
            os.replace(tmp, target)
            replaced = True
        except OSError as e:
            raise SinkError(f"failed writing {target}: {e}") from e
        finally:
            # also on non-OSError failures from the writer engine
            if not replaced:
                tmp.unlink(missing_ok=True)
        logger.debug("published sheet=%s rows=%d path=%s", sheet, len(grid), target)


def _cell_text(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class PostgresSink(_StagingSink):
    """Mirrors report sheets into a ``(sheet, row_no, col_no, value)`` table.

    Expected table::

        CREATE TABLE report_cells (
            sheet  text    NOT NULL,
            row_no integer NOT NULL,
            col_no integer NOT NULL,
            value  text,
            PRIMARY KEY (sheet, row_no, col_no)
        );

    ``commit`` deletes the sheet's cells and inserts the new ones inside a
    single transaction; on failure the transaction is rolled back and the
    previous cells stay in place.
    """

    COLUMNS = ("sheet", "row_no", "col_no", "value")

    def __init__(self, cursor: Any, table: str = "report_cells", page_size: int = 1000) -> None:
        super().__init__()
        if not _IDENTIFIER.match(table):
            raise ValueError(f"invalid table name: {table!r}")
        self.cursor = cursor
        self.table = table
        self.page_size = page_size

    def _publish(self, sheet: str, grid: list[list[Any]]) -> None:
        rows = [
            (sheet, r, c, _cell_text(value))
            for r, row in enumerate(grid, start=1)
            for c, value in enumerate(row, start=1)
            if value is not None
        ]
        cur = self.cursor
        try:
            cur.execute("BEGIN")
            cur.execute(f"DELETE FROM {self.table} WHERE sheet = %s", (sheet,))
            result = batch_insert(cur, self.table, self.COLUMNS, rows, page_size=self.page_size)
            cur.execute("COMMIT")
        except (BatchInsertError, psycopg2.Error) as e:
            try:
                cur.execute("ROLLBACK")
            except psycopg2.Error:
                logger.warning("rollback failed for sheet=%s", sheet, exc_info=True)
            raise SinkError(f"failed publishing sheet '{sheet}': {e}") from e
        logger.debug("published sheet=%s cells=%d table=%s", sheet, result.inserted_rows, self.table)
