from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import pandas as pd

"""Raw table sources.

A source hands out the raw rectangular grid of one named table. The grid is
1-based like the spreadsheet it came from: ``cell(1, 1)`` is the top-left
cell. ``last_row`` / ``last_column`` are probed from the data, ignoring
trailing blank rows and columns.

Sources:
- ``WorkbookSource``: one ``.xlsx`` export with one sheet per raw table
- ``FrameSource``: in-memory tables (lists of rows or DataFrames)
"""

__all__ = [
    "FrameSource",
    "Grid",
    "MissingTable",
    "TableSource",
    "WorkbookSource",
]


class MissingTable(Exception):
    """Raised when a required input table does not exist in the source."""


def _blank(value: Any) -> bool:
    if value is None or value is pd.NaT:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _clean(value: Any) -> Any:
    # pandas marks empty cells with NaN / NaT; the grid uses None
    if value is None or value is pd.NaT or value is pd.NA:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


@dataclass(frozen=True)
class Grid:
    name: str
    rows: tuple[tuple[Any, ...], ...]

    @classmethod
    def from_rows(cls, name: str, rows: Sequence[Sequence[Any]]) -> Grid:
        return cls(name=name, rows=tuple(tuple(_clean(v) for v in r) for r in rows))

    @property
    def last_row(self) -> int:
        for idx in range(len(self.rows), 0, -1):
            if any(not _blank(v) for v in self.rows[idx - 1]):
                return idx
        return 0

    @property
    def last_column(self) -> int:
        width = 0
        for r in self.rows:
            for idx in range(len(r), width, -1):
                if not _blank(r[idx - 1]):
                    width = idx
                    break
        return width

    def cell(self, row: int, column: int) -> Any:
        """1-based cell access; out-of-range cells read as None."""
        if row < 1 or column < 1 or row > len(self.rows):
            return None
        r = self.rows[row - 1]
        if column > len(r):
            return None
        return r[column - 1]

    def row_values(self, row: int, width: int) -> tuple[Any, ...]:
        return tuple(self.cell(row, c) for c in range(1, width + 1))


class TableSource(Protocol):
    def read_grid(self, sheet: str) -> Grid: ...


class WorkbookSource:
    """Reads raw tables from an Excel workbook, one sheet per table.

    Sheets are parsed with ``header=None`` and ``dtype=object`` so that each
    cell keeps its native type (int stays int, dates stay Timestamps) and the
    header row is interpreted by the table reader, not by pandas.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._xls: pd.ExcelFile | None = None
        self._cache: dict[str, Grid] = {}

    def _excel(self) -> pd.ExcelFile:
        if self._xls is None:
            if not self.path.exists():
                raise MissingTable(f"workbook not found: {self.path}")
            self._xls = pd.ExcelFile(self.path)
        return self._xls

    def sheet_names(self) -> list[str]:
        return [str(n) for n in self._excel().sheet_names]

    def read_grid(self, sheet: str) -> Grid:
        if sheet in self._cache:
            return self._cache[sheet]
        xls = self._excel()
        if sheet not in [str(n) for n in xls.sheet_names]:
            raise MissingTable(f"missing input table: {sheet}")
        df = xls.parse(sheet, header=None, dtype=object)
        grid = Grid.from_rows(sheet, df.values.tolist())
        self._cache[sheet] = grid
        return grid

    def close(self) -> None:
        if self._xls is not None:
            self._xls.close()
            self._xls = None
        self._cache.clear()


class FrameSource:
    """In-memory source.

    Values may be a list of rows (header row first) or a DataFrame whose
    column labels become the header row.
    """

    def __init__(self, tables: Mapping[str, Sequence[Sequence[Any]] | pd.DataFrame]) -> None:
        self._tables = dict(tables)

    def sheet_names(self) -> list[str]:
        return list(self._tables)

    def read_grid(self, sheet: str) -> Grid:
        if sheet not in self._tables:
            raise MissingTable(f"missing input table: {sheet}")
        table = self._tables[sheet]
        if isinstance(table, pd.DataFrame):
            rows = [list(table.columns)] + table.astype(object).values.tolist()
            return Grid.from_rows(sheet, rows)
        return Grid.from_rows(sheet, table)
