"""Single persistent connection to the upstream resolver.

Brief:
  UpstreamLink owns one client configuration (UpstreamClient) and one
  connection handle. Both are created lazily on the first relay, reused by
  every later relay, and dropped together whenever a dial or exchange fails
  so that the next relay reconnects from scratch.

Inputs:
  - UpstreamConfig describing host, port, transport and fixed timeouts.

Outputs:
  - relay(query) -> answer, or RelayFailed.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional, Union

import dns.exception
import dns.message

from .transports.tcp import TCPConnection, TCPError
from .transports.udp import UDPConnection, UDPError

logger = logging.getLogger("dohstub.upstream")

Connection = Union[TCPConnection, UDPConnection]

TRANSPORTS = ("udp", "tcp")

_TRANSPORT_ERRORS = (TCPError, UDPError, dns.exception.DNSException, ValueError)


class UpstreamError(Exception):
    """Brief: Base class for upstream relay failures.

    Inputs:
      - message: description of the upstream failure.

    Outputs:
      - Exception instance
    """


class UpstreamUnreachable(UpstreamError):
    """Dialing the upstream resolver failed."""


class RelayFailed(UpstreamError):
    """A relay attempt failed; the shared connection has been torn down."""


@dataclass(frozen=True)
class UpstreamConfig:
    """Brief: Address, transport and fixed timeouts for the upstream resolver.

    Inputs:
      - host, port: upstream resolver address.
      - transport: 'udp' or 'tcp'.
      - connect_timeout_ms / read_timeout_ms / write_timeout_ms: per-phase
        timeouts applied to every dial and exchange.

    Outputs:
      - UpstreamConfig instance
    """

    host: str
    port: int = 53
    transport: str = "udp"
    connect_timeout_ms: int = 5000
    read_timeout_ms: int = 5000
    write_timeout_ms: int = 5000

    def __post_init__(self) -> None:
        transport = str(self.transport).strip().lower()
        if transport not in TRANSPORTS:
            raise ValueError(f"unsupported upstream transport {self.transport!r}")
        object.__setattr__(self, "transport", transport)
        object.__setattr__(self, "port", int(self.port))

    @property
    def address(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class UpstreamClient:
    """Brief: Dial and exchange settings bound to one transport.

    Inputs:
      - config: UpstreamConfig

    Outputs:
      - dial() -> Connection, exchange(query, conn) -> answer
    """

    def __init__(self, config: UpstreamConfig) -> None:
        self.config = config
        self.transport = config.transport

    def dial(self) -> Connection:
        if self.transport == "tcp":
            conn: Connection = TCPConnection(self.config.host, self.config.port)
        else:
            conn = UDPConnection(self.config.host, self.config.port)
        conn.connect(self.config.connect_timeout_ms)
        return conn

    def exchange(
        self, query: dns.message.Message, conn: Connection
    ) -> dns.message.Message:
        """Brief: Send query over conn and wait for the reply carrying its id.

        Inputs:
          - query: outgoing DNS message.
          - conn: connected transport.

        Outputs:
          - dns.message.Message parsed from the matching reply.

        Raises:
          - TCPError / UDPError: transport failure.
          - dns.exception.Timeout: read deadline elapsed while skipping
            replies with foreign ids.
          - dns.exception.DNSException: unparsable reply.

        Notes:
          - Replies with a different id are late answers to an earlier
            exchange that timed out on the same socket; they are discarded.
        """
        conn.send(query.to_wire(), self.config.write_timeout_ms)
        timeout = self.config.read_timeout_ms / 1000.0
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise dns.exception.Timeout(timeout=timeout)
            wire = conn.recv(max(1, int(remaining * 1000)))
            answer = dns.message.from_wire(wire)
            if answer.id == query.id:
                return answer
            logger.debug(
                "discarding upstream reply with id %d (waiting for %d)",
                answer.id,
                query.id,
            )


class UpstreamLink:
    """Brief: Process-wide single upstream connection with reconnect-on-error.

    Inputs:
      - config: UpstreamConfig

    Outputs:
      - UpstreamLink instance

    Notes:
      - One lock guards the client/handle pair. Exchanges hold it too, so a
        single query is in flight on the shared socket at any time.
      - Any failure resets both fields; the next relay re-dials. There is no
        retry inside a relay.

    Example:
      >>> link = UpstreamLink(UpstreamConfig(host="127.0.0.1", port=53))
      >>> link.connected
      False
    """

    def __init__(self, config: UpstreamConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._client: Optional[UpstreamClient] = None
        self._conn: Optional[Connection] = None

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._conn is not None

    def ensure_connection(self) -> None:
        """Brief: Make sure a client configuration and connection exist.

        Inputs:
          - None

        Outputs:
          - None

        Raises:
          - UpstreamUnreachable: dial failed; both fields are left unset.
        """
        with self._lock:
            self._ensure_connection_locked()

    def _ensure_connection_locked(self) -> None:
        if self._client is None:
            self._client = UpstreamClient(self.config)
        if self._conn is not None:
            return
        try:
            self._conn = self._client.dial()
        except (TCPError, UDPError) as exc:
            logger.error(
                "connect to upstream server %s://%s failed: %s",
                self._client.transport,
                self.config.address,
                exc,
            )
            self._client = None
            raise UpstreamUnreachable(str(exc)) from exc

    def _reset_locked(self) -> None:
        if self._conn is not None:
            self._conn.close()
        self._conn = None
        self._client = None

    def relay(self, query: dns.message.Message) -> dns.message.Message:
        """Brief: Deliver query upstream and return the answer.

        Inputs:
          - query: DNS query message.

        Outputs:
          - dns.message.Message: upstream answer, unmodified (its id is the
            outgoing query id).

        Raises:
          - RelayFailed: connecting or exchanging failed; the connection has
            been torn down.
        """
        with self._lock:
            try:
                self._ensure_connection_locked()
            except UpstreamUnreachable as exc:
                self._reset_locked()
                raise RelayFailed("client connecting error") from exc

            try:
                answer = self._client.exchange(query, self._conn)
            except _TRANSPORT_ERRORS as exc:
                self._reset_locked()
                logger.error("error when relaying query: %s", exc)
                raise RelayFailed(str(exc) or exc.__class__.__name__) from exc

        logger.debug("upstream answer: %s", answer)
        if answer.question:
            logger.info("resolved from upstream for: %s", answer.question[0])
        return answer

    def close(self) -> None:
        """Brief: Close the shared connection, if any."""
        with self._lock:
            self._reset_locked()
