from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from metrics_pipeline.models.bucket import AggregateBucket
from metrics_pipeline.tables.sink import TableSink

"""Report assembly: buckets -> header row + data rows -> sink.

Pure data transformation. Column order is fixed by each report's declared
schema; ratios are 0-1 fractions and never divide by zero. Visual styling
(number formats, colors, widths) is the rendering surface's concern.
"""

__all__ = [
    "ReportBlock",
    "ReportTable",
    "assemble",
    "publish",
    "ratio",
    "stack_blocks",
]


def ratio(numerator: float, denominator: float) -> float:
    """numerator / denominator, or 0.0 when the denominator is 0."""
    if not denominator:
        return 0.0
    return numerator / denominator


@dataclass(frozen=True)
class ReportBlock:
    """A header row plus data rows placed at ``start_row`` (1-based)."""
    header: tuple[str, ...]
    rows: tuple[tuple[Any, ...], ...]
    start_row: int = 1

    @property
    def height(self) -> int:
        return 1 + len(self.rows)

    def as_rows(self) -> list[list[Any]]:
        return [list(self.header)] + [list(r) for r in self.rows]


@dataclass(frozen=True)
class ReportTable:
    sheet: str
    blocks: tuple[ReportBlock, ...]

    @property
    def data_rows(self) -> int:
        return sum(len(b.rows) for b in self.blocks)


def assemble(
    columns: Sequence[str],
    buckets: Iterable[AggregateBucket],
    row_fn: Callable[[AggregateBucket], Sequence[Any]],
) -> ReportBlock:
    """Build one block in bucket order; each row must match the schema width."""
    header = tuple(columns)
    rows: list[tuple[Any, ...]] = []
    for bucket in buckets:
        row = tuple(row_fn(bucket))
        if len(row) != len(header):
            raise ValueError(
                f"row width {len(row)} does not match schema width {len(header)} ({bucket.sort_key})"
            )
        rows.append(row)
    return ReportBlock(header=header, rows=tuple(rows))


def stack_blocks(*blocks: ReportBlock, gap: int = 1) -> tuple[ReportBlock, ...]:
    """Lay blocks out top to bottom with ``gap`` blank rows between them."""
    placed: list[ReportBlock] = []
    row = 1
    for block in blocks:
        placed.append(ReportBlock(header=block.header, rows=block.rows, start_row=row))
        row += block.height + gap
    return tuple(placed)


def publish(sink: TableSink, table: ReportTable) -> int:
    """Replace the sheet's content with the table; returns data rows written."""
    sink.clear(table.sheet)
    for block in table.blocks:
        sink.write_rows(table.sheet, block.start_row, 1, block.as_rows())
    sink.commit(table.sheet)
    return table.data_rows
