from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import psycopg2
from dotenv import load_dotenv

from metrics_pipeline.config.loader import DEFAULT_CONFIG_PATH, ConfigError, PipelineConfig, load_config
from metrics_pipeline.logging.audit_log import JsonlAuditLog
from metrics_pipeline.logging.init import log_summary, set_debug, setup_logging
from metrics_pipeline.models.step_result import RunState
from metrics_pipeline.reports.base import ReportContext, run_job
from metrics_pipeline.services.catalog import build_steps, get_job
from metrics_pipeline.services.lock import LockHeld, LockTimeout, ProcessLock
from metrics_pipeline.services.runner import PipelineRunner, describe_error
from metrics_pipeline.services.summary import render_summary_line
from metrics_pipeline.tables.reader import read_records
from metrics_pipeline.tables.sink import MemorySink, PostgresSink, TableSink, WorkbookSink
from metrics_pipeline.tables.source import WorkbookSource

"""CLI entrypoint.

Flow:
- Load ``.env`` (python-dotenv) and the YAML config
- Open the source workbook and the configured output sink
- Run the configured steps under the process lock (or one report with
  ``--report``) and print the SUMMARY line

Exit codes: 0 all steps ok, 2 some step failed, 1 fatal (config, missing
source, lock not acquired).
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env; its values win over the inherited environment."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Cohort metrics pipeline")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to the YAML config")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--dry-run", action="store_true", help="Build reports in memory, publish nothing")
    p.add_argument("--inspect-data", action="store_true", help="Print table headers & first rows then exit")
    p.add_argument("--report", metavar="NAME", help="Run a single report instead of the configured steps")
    return p.parse_args(argv)


@contextmanager
def _open_sink(cfg: PipelineConfig, dry_run: bool) -> Iterator[TableSink]:  # pragma: no cover (postgres branch)
    """Yield the output sink; the Postgres connection is closed on exit.

    DSN resolution: ``DATABASE_URL`` (usually from .env), then ``output.dsn``.
    """
    if dry_run:
        yield MemorySink()
        return
    if cfg.output.kind == "workbook":
        yield WorkbookSink(cfg.output.directory)
        return

    dsn = os.getenv("DATABASE_URL") or cfg.output.dsn
    if not dsn:
        raise ConfigError("output.kind=postgres requires DATABASE_URL or output.dsn")
    conn = psycopg2.connect(dsn)
    # PostgresSink issues BEGIN/COMMIT itself.
    conn.autocommit = True
    try:
        with conn.cursor() as cur:
            yield PostgresSink(cur, table=cfg.output.table)
    finally:
        conn.close()


def _inspect_data(source: WorkbookSource, header_row: int) -> int:
    print(f"FILE: {source.path.name}")
    for name in source.sheet_names():
        try:
            sample = []
            for record in read_records(source, name, header_row=header_row):
                sample.append({k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in record.items()})
                if len(sample) == 3:
                    break
        except Exception as e:  # pragma: no cover
            print(f"  SHEET: {name} error={e}")
            continue
        print(f"  SHEET: {name} cols={list(sample[0]) if sample else []}")
        print("    sample_rows=", sample)
    return EXIT_SUCCESS_ALL


def _run_single(name: str, ctx: ReportContext, lock: ProcessLock, timeout: float) -> int:
    logger = setup_logging()
    try:
        result = run_job(name, get_job(name), ctx, lock, timeout)
    except (LockTimeout, LockHeld) as e:
        logger.error(f"lock: {describe_error(e)}")
        return EXIT_FATAL
    except Exception as e:
        logger.error(f"report {name}: {describe_error(e)}")
        log_summary(f"report={name} status=error")
        return EXIT_PARTIAL_FAILURE
    log_summary(f"report={name} rows_in={result.rows_in} rows_out={result.rows_out} status=ok")
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # Only read sys.argv when no argv is given (cli_main([]) must not see pytest flags).
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"), override=True)

    if args.debug:
        set_debug(logger)
        logger.debug("debug mode enabled")

    try:
        cfg = load_config(args.config)
        if args.report:
            get_job(args.report)
        else:
            for name in cfg.steps:
                get_job(name)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    source_path = Path(cfg.source_workbook)
    if not source_path.exists():
        logger.error(f"source workbook not found: {source_path}")
        return EXIT_FATAL
    source = WorkbookSource(source_path)

    try:
        if args.inspect_data:
            return _inspect_data(source, cfg.reports.header_row)

        audit = JsonlAuditLog(cfg.audit_log)
        lock = ProcessLock(cfg.lock.path)
        logger.info(f"source={source_path} output={'memory' if args.dry_run else cfg.output.kind}")

        try:
            with _open_sink(cfg, args.dry_run) as sink:
                ctx = ReportContext(source=source, sink=sink, audit=audit, settings=cfg.reports)
                if args.report:
                    return _run_single(args.report, ctx, lock, cfg.lock.timeout_seconds)
                runner = PipelineRunner(
                    build_steps(cfg.steps, ctx, self_logging=cfg.self_logging_steps),
                    lock=lock,
                    audit=audit,
                    lock_timeout_seconds=cfg.lock.timeout_seconds,
                    self_logging_steps=cfg.self_logging_steps,
                )
                summary = runner.run()
                if isinstance(sink, MemorySink):
                    for sheet, grid in sink.tables.items():
                        logger.info(f"dry-run sheet={sheet} rows={len(grid)}")
        except (ConfigError, psycopg2.Error) as e:
            logger.error(f"output: {e}")
            return EXIT_FATAL
    finally:
        source.close()

    # log_summary adds the "SUMMARY " prefix itself
    log_summary(render_summary_line(summary).removeprefix("SUMMARY "))

    if summary.state is RunState.ABORTED:
        return EXIT_FATAL
    if summary.failed_steps:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
