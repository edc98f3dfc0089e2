import socket
from typing import Optional

# Largest possible DNS-over-UDP datagram.
_MAX_DATAGRAM = 65535


class UDPError(Exception):
    """
    Brief: DNS-over-UDP transport error.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


class UDPConnection:
    """
    Brief: A connected UDP socket reused for successive queries.

    Inputs:
    - host: upstream resolver host/IP
    - port: upstream UDP port
    - source_ip: optional source address to bind

    Outputs:
    - send(query_bytes) / recv() against the single connected peer.

    Notes:
    - connect() on a datagram socket only fixes the peer address; an
      unreachable upstream shows up as a read timeout or ICMP-driven
      ConnectionRefusedError on recv().
    """

    transport = "udp"

    def __init__(self, host: str, port: int, *, source_ip: Optional[str] = None):
        self._host = host
        self._port = int(port)
        self._source_ip = source_ip
        self._sock = None  # type: socket.socket | None

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    def connect(self, connect_timeout_ms: int) -> None:
        self.close()
        try:
            infos = socket.getaddrinfo(
                self._host, self._port, type=socket.SOCK_DGRAM
            )
            family, socktype, proto, _, addr = infos[0]
            s = socket.socket(family, socktype, proto)
            try:
                s.settimeout(connect_timeout_ms / 1000.0)
                if self._source_ip:
                    s.bind((self._source_ip, 0))
                s.connect(addr)
            except OSError:
                s.close()
                raise
        except OSError as e:
            raise UDPError(f"UDP error: {e}")
        self._sock = s

    def send(self, query: bytes, write_timeout_ms: int) -> None:
        if self._sock is None:
            raise UDPError("socket not connected")
        try:
            self._sock.settimeout(write_timeout_ms / 1000.0)
            self._sock.send(query)
        except OSError as e:
            raise UDPError(f"UDP error: {e}")

    def recv(self, read_timeout_ms: int) -> bytes:
        if self._sock is None:
            raise UDPError("socket not connected")
        try:
            self._sock.settimeout(read_timeout_ms / 1000.0)
            return self._sock.recv(_MAX_DATAGRAM)
        except OSError as e:
            raise UDPError(f"UDP error: {e}")

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:  # pragma: no cover - close on a dead socket
                pass
        self._sock = None
