import logging
import threading
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response

from .handler import RequestHandler

logger = logging.getLogger("dohstub.doh_api")


class _Suppress2xxAccessFilter(logging.Filter):
    """Logging filter that drops uvicorn access records for HTTP 2xx responses.

    Inputs:
      - record: logging.LogRecord instance from uvicorn.access.

    Outputs:
      - bool: False for records that clearly correspond to HTTP 2xx status codes,
        True otherwise (including when no status code can be determined).
    """

    def filter(self, record: logging.LogRecord) -> bool:
        status = getattr(record, "status_code", None)

        # uvicorn passes (client, method, path, http_version, status_code).
        if status is None:
            args = getattr(record, "args", None)
            if isinstance(args, dict):
                status = args.get("status_code") or args.get("status")
            elif isinstance(args, (tuple, list)) and args:
                status = args[-1]

        try:
            code = int(status)
        except (TypeError, ValueError):
            return True

        return not (200 <= code <= 299)


def install_uvicorn_2xx_suppression() -> None:
    """Attach _Suppress2xxAccessFilter to the uvicorn.access logger once.

    Inputs:
      - None (operates on the global logging configuration).

    Outputs:
      - None.
    """
    access_logger = logging.getLogger("uvicorn.access")
    if not any(isinstance(f, _Suppress2xxAccessFilter) for f in access_logger.filters):
        access_logger.addFilter(_Suppress2xxAccessFilter())


def _first_values(request: Request) -> Dict[str, str]:
    # A repeated parameter resolves to its first occurrence.
    params: Dict[str, str] = {}
    for key, value in request.query_params.multi_items():
        params.setdefault(key, value)
    return params


def create_doh_app(handler: RequestHandler) -> FastAPI:
    """
    Brief: Create the FastAPI app serving DoH lookups as GET /resolve.

    Inputs:
    - handler: RequestHandler doing the translation and relay.

    Outputs:
    - FastAPI application exposing /resolve and /health.

    Example:
      >>> app = create_doh_app(RequestHandler(link, cache))
    """
    app = FastAPI(
        title="dohstub",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    # Plain def: served from Starlette's threadpool.
    @app.get("/resolve")
    def resolve(request: Request) -> Response:
        """
        Brief: Handle GET /resolve?name=&type=&edns_client_subnet=[&ct=].

        Inputs:
        - request: FastAPI Request

        Outputs:
        - 200 application/dns-message body, or 403/502/503 text/plain.
        """
        result = handler.handle(_first_values(request), request.headers.get("accept"))
        return Response(
            content=result.body,
            status_code=result.status,
            media_type=result.media_type,
        )

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    return app


class DoHServerHandle:
    """Brief: Handle for a background uvicorn server thread.

    Inputs (constructor):
    - thread: Thread object running the uvicorn server loop.
    - server: Optional uvicorn.Server; stop() asks it to exit.

    Outputs:
    - DoHServerHandle with is_running() and stop().
    """

    def __init__(self, thread: threading.Thread, server: Any | None = None) -> None:
        self._thread = thread
        self._server = server

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        """Brief: Ask the server to exit and wait for its thread.

        Inputs:
        - timeout: seconds to wait
        Outputs: None
        """
        if self._server is not None:
            self._server.should_exit = True
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("DoH server thread did not exit within %.1fs", timeout)


def start_doh_server(
    host: str,
    port: int,
    handler: RequestHandler,
    *,
    cert_file: Optional[str] = None,
    key_file: Optional[str] = None,
    log_level: str = "info",
) -> DoHServerHandle:
    """Brief: Serve the DoH app with uvicorn on a daemon thread.

    Inputs:
    - host: listen address
    - port: listen port
    - handler: RequestHandler behind /resolve
    - cert_file / key_file: optional TLS material handed to uvicorn
    - log_level: uvicorn log level

    Outputs:
    - DoHServerHandle

    Example:
      >>> handle = start_doh_server('127.0.0.1', 8053, handler)
    """
    import uvicorn

    app = create_doh_app(handler)
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level=log_level,
        log_config=None,
        ssl_certfile=cert_file or None,
        ssl_keyfile=key_file or None,
    )
    server = uvicorn.Server(config)
    install_uvicorn_2xx_suppression()

    def _runner() -> None:
        try:
            server.run()
        except Exception:  # pragma: no cover - unexpected runtime error
            logger.exception("Unhandled exception in DoH server thread")

    thread = threading.Thread(target=_runner, name="dohstub-doh", daemon=True)
    thread.start()
    logger.info(
        "running stub server http://%s:%d <--> %s://%s ...",
        host,
        port,
        handler.link.config.transport,
        handler.link.config.address,
    )
    return DoHServerHandle(thread, server=server)
