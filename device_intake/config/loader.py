from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..models.config_models import (
    DatabaseConfig,
    DuplicateConfig,
    ExtractionConfig,
    IntakeConfig,
    RetryConfig,
)

"""Config loader.

- Load YAML (config/intake.yml by default)
- Validate against contracts/config_schema.json (no unknown keys)
- Apply defaults for omitted optional sections
"""

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "SCHEMA_PATH",
    "ConfigError",
    "load_config",
]

DEFAULT_CONFIG_PATH = Path("config/intake.yml")

# device_intake/config/loader.py -> device_intake/config -> device_intake -> repo_root
_repo_root = Path(__file__).parent.parent.parent
SCHEMA_PATH = _repo_root / "specs" / "001-device-intake" / "contracts" / "config_schema.json"


class ConfigError(Exception):
    pass


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Raise ConfigError when the schema is missing/broken or ``data`` violates it."""
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path)
        raise ConfigError(f"config validation failed{f' at {where}' if where else ''}: {e.message}") from e


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    return data.get(key) or {}


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> IntakeConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")

    _validate_config_schema(data)

    extraction = _section(data, "extraction")
    duplicates = _section(data, "duplicates")
    retry = _section(data, "retry")
    db_raw = _section(data, "database")

    retry_cfg = RetryConfig(**retry)
    if retry_cfg.initial_delay_minutes > retry_cfg.max_delay_minutes:
        raise ConfigError("retry.initial_delay_minutes must not exceed retry.max_delay_minutes")

    return IntakeConfig(
        source_directory=data["source_directory"],
        extraction=ExtractionConfig(**extraction),
        duplicates=DuplicateConfig(**duplicates),
        retry=retry_cfg,
        database=DatabaseConfig(
            host=db_raw.get("host"),
            port=db_raw.get("port"),
            user=db_raw.get("user"),
            password=db_raw.get("password"),
            database=db_raw.get("database"),
            dsn=db_raw.get("dsn"),
        ),
    )
