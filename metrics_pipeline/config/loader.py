from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

"""Pipeline configuration loader.

Responsibilities:
- Load the YAML config (default ``config/pipeline.yml``)
- Validate it against ``config_schema.json`` (shipped beside this module)
- Apply defaults (lock timeout 300 s, 7-day conversion window, day grain)
- Surface every problem as ``ConfigError``
"""

__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_PATH",
    "LockConfig",
    "OutputConfig",
    "PipelineConfig",
    "ReportSettings",
    "SCHEMA_PATH",
    "load_config",
]

SCHEMA_PATH = Path(__file__).with_name("config_schema.json")
DEFAULT_CONFIG_PATH = Path("config/pipeline.yml")


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class OutputConfig:
    kind: str = "workbook"
    directory: str = "out"
    table: str = "report_cells"
    dsn: str | None = None


@dataclass(frozen=True)
class LockConfig:
    path: str = "logs/pipeline.lock"
    timeout_seconds: float = 300.0


@dataclass(frozen=True)
class ReportSettings:
    """Per-report knobs shared through ``ReportContext``."""
    header_row: int = 1
    conversion_window_days: int = 7
    onboarding_cutoff: str | None = None
    type_audit_sheet: str = "arr_snapshot"
    type_audit_cohort_field: str = "snapshot_date"
    type_audit_secondary_field: str = "trial_cohort_month"
    type_audit_numeric_field: str = "total_arr"
    cohort_grain: str = "day"


@dataclass(frozen=True)
class PipelineConfig:
    source_workbook: str
    output: OutputConfig
    steps: tuple[str, ...]
    lock: LockConfig = field(default_factory=LockConfig)
    audit_log: str = "logs/audit.jsonl"
    self_logging_steps: frozenset[str] = frozenset()
    reports: ReportSettings = field(default_factory=ReportSettings)


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigError: the schema file is missing or not valid JSON, or the
            config violates the schema (missing keys, wrong types, unknown
            report fields, ...).
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")

    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigError(f"config validation failed at {location}: {e.message}") from e


def _report_settings(raw: dict[str, Any]) -> ReportSettings:
    defaults = ReportSettings()
    audit = raw.get("type_audit", {})
    cutoff = raw.get("onboarding_cutoff")
    return ReportSettings(
        header_row=raw.get("header_row", defaults.header_row),
        conversion_window_days=raw.get("conversion_window_days", defaults.conversion_window_days),
        onboarding_cutoff=str(cutoff) if cutoff is not None else None,
        type_audit_sheet=audit.get("sheet", defaults.type_audit_sheet),
        type_audit_cohort_field=audit.get("cohort_field", defaults.type_audit_cohort_field),
        type_audit_secondary_field=audit.get("secondary_field", defaults.type_audit_secondary_field),
        type_audit_numeric_field=audit.get("numeric_field", defaults.type_audit_numeric_field),
        cohort_grain=audit.get("cohort_grain", defaults.cohort_grain),
    )


def load_config(path: Path | str = DEFAULT_CONFIG_PATH) -> PipelineConfig:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping, got {type(data).__name__}")

    _validate_config_schema(data)

    out_raw = data["output"]
    output = OutputConfig(
        kind=out_raw["kind"],
        directory=out_raw.get("directory", OutputConfig.directory),
        table=out_raw.get("table", OutputConfig.table),
        dsn=out_raw.get("dsn"),
    )
    lock_raw = data.get("lock", {})
    lock = LockConfig(
        path=lock_raw.get("path", LockConfig.path),
        timeout_seconds=float(lock_raw.get("timeout_seconds", LockConfig.timeout_seconds)),
    )
    steps = tuple(data["steps"])
    self_logging = frozenset(data.get("self_logging_steps", ()))
    unknown = sorted(self_logging - set(steps))
    if unknown:
        raise ConfigError(f"self_logging_steps not in steps: {unknown}")

    return PipelineConfig(
        source_workbook=data["source_workbook"],
        output=output,
        steps=steps,
        lock=lock,
        audit_log=data.get("audit_log", PipelineConfig.audit_log),
        self_logging_steps=self_logging,
        reports=_report_settings(data.get("reports", {})),
    )
