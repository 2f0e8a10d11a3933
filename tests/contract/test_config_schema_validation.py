from __future__ import annotations

import json
from pathlib import Path

import jsonschema
import pytest
import yaml

from metrics_pipeline.config.loader import SCHEMA_PATH


def _load_schema():
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def test_schema_is_valid_draft():
    jsonschema.Draft202012Validator.check_schema(_load_schema())


def test_sample_config_validates(sample_config_yaml: str):
    jsonschema.validate(yaml.safe_load(sample_config_yaml), _load_schema())


def test_shipped_example_config_validates():
    example = Path(__file__).resolve().parents[2] / "config" / "pipeline.yml"
    jsonschema.validate(yaml.safe_load(example.read_text(encoding="utf-8")), _load_schema())


@pytest.mark.parametrize(
    "patch",
    [
        {"steps": []},
        {"output": {"kind": "s3"}},
        {"output": {"kind": "postgres", "table": "drop table;"}},
        {"lock": {"timeout_seconds": -1}},
        {"reports": {"header_row": 0}},
        {"reports": {"type_audit": {"cohort_grain": "week"}}},
    ],
)
def test_schema_rejects_invalid_values(sample_config_yaml: str, patch):
    data = yaml.safe_load(sample_config_yaml)
    data.update(patch)
    with pytest.raises(jsonschema.ValidationError):
        jsonschema.validate(data, _load_schema())
