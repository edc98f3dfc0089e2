"""JSON Schema-based validation for dohstub YAML configuration.

This module centralizes validating the parsed ``config.yaml`` against the
JSON Schema document shipped next to it as ``config-schema.json``.
"""

from __future__ import annotations

import functools
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator, ValidationError


def get_default_schema_path() -> Path:
    """Brief: Resolve the packaged JSON Schema path for configuration.

    Inputs:
      - None.

    Outputs:
      - Path to ``config-schema.json`` installed alongside this module.
    """
    return Path(__file__).resolve().with_name("config-schema.json")


@functools.lru_cache(maxsize=4)
def _load_schema(schema_path: Path) -> Dict[str, Any]:
    with open(schema_path, "r", encoding="utf-8") as f:
        schema = json.load(f)
    Draft202012Validator.check_schema(schema)
    return schema


def _normalize_cache_config_for_validation(cfg: Dict[str, Any]) -> None:
    """Brief: Treat an explicit null or blank cache module as the none (off) module.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Notes:
      - ``cache: {module: }`` parses as {"module": None}; the runtime loader
        treats that as "disable caching", so validation does too.
    """
    cache_cfg = cfg.get("cache")
    if not isinstance(cache_cfg, dict):
        return

    module = cache_cfg.get("module")
    if "module" in cache_cfg and (
        module is None or (isinstance(module, str) and not module.strip())
    ):
        cache_cfg["module"] = "none"

    if "config" in cache_cfg and cache_cfg.get("config") is None:
        cache_cfg.pop("config", None)


def _normalize_upstream_config_for_validation(cfg: Dict[str, Any]) -> None:
    """Brief: Lower-case upstream.transport so the schema enum is case-insensitive.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.
    """
    upstream = cfg.get("upstream")
    if isinstance(upstream, dict) and isinstance(upstream.get("transport"), str):
        upstream["transport"] = upstream["transport"].strip().lower()


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    """Brief: Format jsonschema validation errors into a human-readable string.

    Inputs:
      - errors: List of jsonschema.ValidationError instances.
      - config_path: Optional path to the YAML config being validated.

    Outputs:
      - String suitable for display in logs or CLI output.
    """
    lines: List[str] = [f"Invalid configuration in {config_path or '<config dict>'}:"]
    for err in errors:
        instance_path = "/".join(str(p) for p in err.path) or "<root>"
        schema_path = "/".join(str(p) for p in err.schema_path)
        lines.append(f"- {instance_path}: {err.message} (schema: {schema_path})")
    return "\n".join(lines)


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
) -> None:
    """Brief: Validate a parsed YAML configuration mapping against JSON Schema.

    Inputs:
      - cfg: Dict loaded from YAML (top-level configuration mapping). It is
        normalized in place before validation.
      - schema_path: Optional explicit path to a JSON Schema file. When
        omitted, the packaged ``config-schema.json`` is used.
      - config_path: Optional string path to the YAML file, used only for
        error messages.

    Outputs:
      - None on success.

    Raises:
      - ValueError: when validation fails. The message lists every error with
        its instance path and schema path.

    Example:
      >>> import yaml
      >>> data = yaml.safe_load("upstream: {host: 9.9.9.9, transport: tcp}")
      >>> validate_config(data)  # does not raise for valid config
    """
    _normalize_cache_config_for_validation(cfg)
    _normalize_upstream_config_for_validation(cfg)

    schema = _load_schema(schema_path or get_default_schema_path())
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.path])
    if errors:
        message = _format_errors(errors, config_path=config_path)
        raise ValueError(message)
