from __future__ import annotations

import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import psycopg2
from psycopg2.extras import execute_values

"""Batched INSERT for the Postgres report mirror.

Uses ``psycopg2.extras.execute_values``; transaction boundaries (BEGIN /
COMMIT / ROLLBACK) belong to the caller so that a whole report table is
replaced atomically.
"""

__all__ = [
    "BatchInsertError",
    "InsertResult",
    "batch_insert",
]


class BatchInsertError(Exception):
    pass


@dataclass(frozen=True)
class InsertResult:
    inserted_rows: int
    elapsed_seconds: float = 0.0


def batch_insert(
    cursor: Any,
    table: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    page_size: int = 1000,
) -> InsertResult:
    """Insert rows into ``table`` in pages of ``page_size``.

    Parameters
    ----------
    cursor: psycopg2 cursor
    table: target table (validated identifier)
    columns: target columns, same order as each row
    rows: row sequences
    page_size: execute_values page size
    """
    rows_list = list(rows)
    if not rows_list:
        return InsertResult(inserted_rows=0)

    cols_sql = ",".join(f'"{c}"' for c in columns)
    sql = f"INSERT INTO {table} ({cols_sql}) VALUES %s"

    start = time.perf_counter()
    try:
        execute_values(cursor, sql, rows_list, page_size=page_size)
    except psycopg2.Error as e:
        raise BatchInsertError(str(e)) from e
    return InsertResult(inserted_rows=len(rows_list), elapsed_seconds=time.perf_counter() - start)
