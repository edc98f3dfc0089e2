"""Configuration parsing and normalization helpers for dohstub.

Brief:
  This module contains the configuration-parsing utilities that are used by the
  CLI entrypoint. It centralizes:
    - reading YAML config files
    - expanding ${VAR} references from the environment
    - JSON Schema validation
    - normalization helpers for the listen, upstream and cache sections

Inputs:
  - YAML config dicts and paths

Outputs:
  - Normalized config values and constructed runtime objects
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict, Mapping, Optional

import yaml

from ..cache import ResponseCache
from ..cache_plugins.registry import load_cache_plugin
from ..upstream import UpstreamConfig
from .config_schema import validate_config

DEFAULT_LISTEN_HOST = "127.0.0.1"
DEFAULT_LISTEN_PORT = 8053
DEFAULT_HANDOFF_TIMEOUT_MS = 50

_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse an environment variable value as YAML.

    Inputs:
      - text: String containing a YAML scalar/list/dict.

    Outputs:
      - Any: Parsed value (falls back to the original string on parse errors).
    """
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def expand_env_vars(obj: Any, environ: Optional[Mapping[str, str]] = None) -> Any:
    """Brief: Expand ${VAR} references in string values from the environment.

    Inputs:
      - obj: Parsed YAML node (dict, list, str or scalar).
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - Any: A new node with references expanded. Keys are not substituted.

    Notes:
      - A string that is exactly ``${VAR}`` is replaced by the variable's value
        parsed as YAML, so ``port: ${DOH_PORT}`` yields an integer.
      - Inside longer strings the raw text is substituted.
      - Unknown variables are left untouched so schema validation reports them.

    Example:
      >>> expand_env_vars({"upstream": {"port": "${P}"}}, {"P": "5353"})
      {'upstream': {'port': 5353}}
    """
    env = os.environ if environ is None else environ

    if isinstance(obj, str):
        whole = _VAR_PATTERN.fullmatch(obj)
        if whole and whole.group(1) in env:
            return _parse_yaml_value(env[whole.group(1)])
        return _VAR_PATTERN.sub(lambda m: env.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, list):
        return [expand_env_vars(item, env) for item in obj]
    if isinstance(obj, dict):
        return {k: expand_env_vars(v, env) for k, v in obj.items()}
    return obj


def parse_config_file(
    config_path: str,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Read, env-expand, and schema-validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.
      - environ: Optional environment mapping used for ${VAR} expansion.

    Outputs:
      - dict: Parsed and validated configuration mapping.

    Raises:
      - ValueError: When the root is not a mapping or schema validation fails.
      - OSError: When the file cannot be read.
    """
    with open(config_path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    cfg = expand_env_vars(cfg, environ)
    validate_config(cfg, config_path=config_path)
    return cfg


def normalize_listen_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Brief: Resolve the DoH listener settings with defaults applied.

    Inputs:
      - cfg: Validated configuration mapping.

    Outputs:
      - dict with keys host, port, cert_file, key_file.
    """
    listen = cfg.get("listen") or {}
    return {
        "host": str(listen.get("host") or DEFAULT_LISTEN_HOST),
        "port": int(listen.get("port", DEFAULT_LISTEN_PORT)),
        "cert_file": listen.get("cert_file") or None,
        "key_file": listen.get("key_file") or None,
    }


def normalize_upstream_config(cfg: Dict[str, Any]) -> UpstreamConfig:
    """Brief: Build an UpstreamConfig from the ``upstream`` section.

    Inputs:
      - cfg: Validated configuration mapping.

    Outputs:
      - UpstreamConfig

    Raises:
      - ValueError: For a missing section, missing host or unknown transport.
    """
    upstream = cfg.get("upstream")
    if not isinstance(upstream, dict):
        raise ValueError("config.upstream must be a mapping")
    if not upstream.get("host"):
        raise ValueError("config.upstream must include 'host'")

    return UpstreamConfig(
        host=str(upstream["host"]),
        port=int(upstream.get("port", 53)),
        transport=str(upstream.get("transport", "udp")),
        connect_timeout_ms=int(upstream.get("connect_timeout_ms", 5000)),
        read_timeout_ms=int(upstream.get("read_timeout_ms", 5000)),
        write_timeout_ms=int(upstream.get("write_timeout_ms", 5000)),
    )


def build_response_cache(cfg: Dict[str, Any]) -> Optional[ResponseCache]:
    """Brief: Construct the ResponseCache described by the ``cache`` section.

    Inputs:
      - cfg: Validated configuration mapping.

    Outputs:
      - ResponseCache wrapping the configured plugin, or None when caching is
        disabled (section omitted, false, enabled: false, or the none module).

    Raises:
      - ValueError: When the plugin rejects its config.
      - KeyError: When the module alias is unknown.

    Example:
      cache:
        module: in_memory_ttl
        config: {maxsize: 1024}
        handoff_timeout_ms: 20
    """
    raw = cfg.get("cache")
    backend = load_cache_plugin(raw)
    if backend is None:
        return None
    handoff_ms = DEFAULT_HANDOFF_TIMEOUT_MS
    if isinstance(raw, dict):
        handoff_ms = int(raw.get("handoff_timeout_ms", DEFAULT_HANDOFF_TIMEOUT_MS))
    return ResponseCache(backend, handoff_timeout=handoff_ms / 1000.0)
