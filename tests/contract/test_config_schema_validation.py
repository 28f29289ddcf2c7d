from __future__ import annotations

import json
from pathlib import Path

import jsonschema
import pytest
import yaml

"""config/intake.yml schema contract (contracts/config_schema.json)."""

REPO_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_PATH = REPO_ROOT / "specs" / "001-device-intake" / "contracts" / "config_schema.json"


@pytest.fixture(scope="module")
def schema() -> dict:
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def test_schema_is_valid_draft7(schema):
    jsonschema.Draft7Validator.check_schema(schema)


def test_sample_config_validates(schema):
    data = yaml.safe_load((REPO_ROOT / "config" / "intake.yml").read_text(encoding="utf-8"))
    jsonschema.validate(data, schema)


def test_minimal_config_validates(schema):
    jsonschema.validate({"source_directory": "./data"}, schema)


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"source_directory": ""},
        {"source_directory": "./data", "timezone": "UTC"},
        {"source_directory": "./data", "retry": {"max_retries": 0}},
        {"source_directory": "./data", "duplicates": {"window_days": "90"}},
        {"source_directory": "./data", "database": {"port": "5432"}},
    ],
)
def test_invalid_configs_are_rejected(schema, data):
    with pytest.raises(jsonschema.exceptions.ValidationError):
        jsonschema.validate(data, schema)
