from __future__ import annotations

import argparse
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from .config.config_parser import (
    build_response_cache,
    normalize_listen_config,
    normalize_upstream_config,
    parse_config_file,
)
from .config.config_schema import validate_config
from .config.logging_config import init_logging, level_from_name
from .doh_api import start_doh_server
from .handler import RequestHandler
from .upstream import UpstreamLink


def _split_host_port(value: str, default_port: int) -> Tuple[str, int]:
    """Brief: Split HOST[:PORT] (IPv6 as [addr]:port) into host and port.

    Inputs:
      - value: CLI value such as '127.0.0.1:8053', '[::1]:53' or '9.9.9.9'.
      - default_port: port used when none is given.

    Outputs:
      - (host, port)

    Raises:
      - ValueError: for an empty host or a non-numeric port.

    Example:
      >>> _split_host_port('[::1]:5353', 53)
      ('::1', 5353)
    """
    text = value.strip()
    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep:
            raise ValueError(f"unterminated IPv6 address in {value!r}")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif text.count(":") == 1:
        host, _, port_text = text.partition(":")
    else:
        # Bare host or unbracketed IPv6 address.
        host, port_text = text, ""
    if not host:
        raise ValueError(f"missing host in {value!r}")
    if not port_text:
        return host, default_port
    if not port_text.isdigit():
        raise ValueError(f"invalid port in {value!r}")
    return host, int(port_text)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dohstub",
        description="DNS-over-HTTPS stub proxy relaying GET /resolve to one upstream resolver",
    )
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument(
        "--listen", default=None, metavar="HOST:PORT", help="DoH listen address"
    )
    parser.add_argument(
        "--upstream",
        default=None,
        metavar="HOST:PORT",
        help="Upstream resolver address (required without --config)",
    )
    parser.add_argument(
        "--protocol",
        default=None,
        choices=["tcp", "udp"],
        help="Transport used to reach the upstream resolver",
    )
    cache_group = parser.add_mutually_exclusive_group()
    cache_group.add_argument(
        "--cache", dest="cache", action="store_true", default=None, help="Enable caching"
    )
    cache_group.add_argument(
        "--no-cache", dest="cache", action="store_false", help="Disable caching"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warn", "error", "crit"],
        help="Override logging.level",
    )
    return parser


def build_config(args: argparse.Namespace) -> Dict[str, Any]:
    """
    Brief: Merge the optional config file with CLI overrides and validate.

    Inputs:
    - args: parsed CLI namespace

    Outputs:
    - dict: validated configuration mapping

    Raises:
    - ValueError: invalid file contents, invalid overrides or no upstream.
    - OSError: config file cannot be read.
    """
    cfg: Dict[str, Any] = parse_config_file(args.config) if args.config else {}

    if args.listen:
        host, port = _split_host_port(args.listen, 8053)
        listen = dict(cfg.get("listen") or {})
        listen.update({"host": host, "port": port})
        cfg["listen"] = listen

    if args.upstream or args.protocol:
        upstream = dict(cfg.get("upstream") or {})
        if args.upstream:
            host, port = _split_host_port(args.upstream, 53)
            upstream.update({"host": host, "port": port})
        if args.protocol:
            upstream["transport"] = args.protocol
        cfg["upstream"] = upstream

    if "upstream" not in cfg:
        raise ValueError("an upstream resolver is required: pass --upstream or --config")

    if args.cache is not None:
        current = cfg.get("cache")
        if isinstance(current, dict):
            cfg["cache"] = dict(current, enabled=args.cache)
        elif isinstance(current, str) and args.cache:
            cfg["cache"] = current
        else:
            cfg["cache"] = bool(args.cache)

    if args.log_level:
        log_cfg = dict(cfg.get("logging") or {})
        log_cfg["level"] = args.log_level
        cfg["logging"] = log_cfg

    validate_config(cfg, config_path=args.config)
    return cfg


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the DoH stub proxy.
    Parses arguments, loads configuration, and serves /resolve until interrupted.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 on clean shutdown, 1 on invalid configuration or when
        the HTTP server stops on its own.

    Example use:
        CLI:
            dohstub --upstream 8.8.8.8:53 --protocol tcp --listen 127.0.0.1:8053
            dohstub --config config.yaml --no-cache
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = build_config(args)
    except (OSError, ValueError) as exc:
        print(str(exc))
        return 1

    # Initialize logging before any other operations
    log_cfg = cfg.get("logging") or {}
    init_logging(log_cfg)
    logger = logging.getLogger("dohstub.main")
    if args.config:
        logger.info("Loaded config from %s", args.config)

    try:
        listen = normalize_listen_config(cfg)
        upstream_cfg = normalize_upstream_config(cfg)
        cache = build_response_cache(cfg)
    except (KeyError, ValueError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    link = UpstreamLink(upstream_cfg)
    handler = RequestHandler(link, cache)
    uvicorn_level = logging.getLevelName(level_from_name(log_cfg.get("level"))).lower()

    handle = start_doh_server(
        listen["host"],
        listen["port"],
        handler,
        cert_file=listen["cert_file"],
        key_file=listen["key_file"],
        log_level=uvicorn_level,
    )
    logger.info("caching %s", "enabled" if handler.use_cache else "disabled")

    rc = 0
    try:
        while handle.is_running():
            time.sleep(1.0)
        logger.error("DoH server stopped unexpectedly")
        rc = 1
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        handle.stop()
        link.close()
        if cache is not None:
            cache.close()
    return rc


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
