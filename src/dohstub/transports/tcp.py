import socket


class TCPError(Exception):
    """
    A DNS-over-TCP transport error.

    Inputs:
      - message: Error description.
    Outputs:
      - Exception instance.

    Brief: Raised for connect/read/write or framing errors.
    """

    pass


class TCPConnection:
    """
    A persistent DNS-over-TCP connection; one in-flight query at a time.

    Inputs:
      - host, port
    Outputs:
      - send(query_bytes) / recv() on a length-prefixed stream (RFC 7766).
    """

    transport = "tcp"

    def __init__(self, host: str, port: int):
        self._host = host
        self._port = int(port)
        self._sock = None  # type: socket.socket | None

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    def connect(self, connect_timeout_ms: int) -> None:
        self.close()
        try:
            s = socket.create_connection(
                (self._host, self._port), timeout=connect_timeout_ms / 1000.0
            )
        except OSError as e:
            raise TCPError(f"connect to {self._host}:{self._port} failed: {e}")
        s.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self._sock = s

    def send(self, query: bytes, write_timeout_ms: int) -> None:
        if self._sock is None:
            raise TCPError("connection not established")
        payload = len(query).to_bytes(2, "big") + query
        try:
            self._sock.settimeout(write_timeout_ms / 1000.0)
            self._sock.sendall(payload)
        except OSError as e:
            raise TCPError(f"write failed: {e}")

    def recv(self, read_timeout_ms: int) -> bytes:
        if self._sock is None:
            raise TCPError("connection not established")
        try:
            self._sock.settimeout(read_timeout_ms / 1000.0)
            hdr = _recv_exact(self._sock, 2)
            if len(hdr) != 2:
                raise TCPError("short read on length header")
            ln = int.from_bytes(hdr, "big")
            resp = _recv_exact(self._sock, ln)
        except OSError as e:
            raise TCPError(f"read failed: {e}")
        if len(resp) != ln:
            raise TCPError("short read on body")
        return resp

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:  # pragma: no cover - close on a dead socket
                pass
        self._sock = None


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    """
    Receive exactly n bytes from a blocking socket.

    Inputs:
      - sock: Socket
      - n: Number of bytes
    Outputs:
      - bytes: Exactly n bytes unless EOF occurs.

    Example:
      >>> _recv_exact(sock, 2)
    """
    remaining = n
    chunks = []
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)
