"""
Brief: Global pytest configuration enforcing per-test 10s timeout, plus a
local threaded stub resolver shared by transport, upstream and HTTP tests.

Inputs:
  - None

Outputs:
  - None
"""

import signal
import os
import socket
import sys
import threading
import time

import pytest

# Ensure 'src' is on sys.path so 'dohstub' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

import dns.message  # noqa: E402
import dns.rrset  # noqa: E402


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


# Install handler if supported on this platform
if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        # Fallback: no-op on platforms without SIGALRM
        yield


def make_answer(query, address="192.0.2.1", ttl=300):
    """
    Brief: Build a NOERROR A answer for query.

    Inputs:
      - query: dns.message.Message
      - address: IPv4 address for the A record
      - ttl: record TTL

    Outputs:
      - dns.message.Message
    """
    resp = dns.message.make_response(query)
    q = query.question[0]
    resp.answer.append(dns.rrset.from_text(q.name, ttl, "IN", "A", address))
    return resp


def _recv_exact(sock, n):
    data = b""
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


class StubResolver:
    """
    Brief: Local DNS resolver on 127.0.0.1 answering over UDP and TCP.

    Inputs:
      - responder: callable(query) -> list of dns.message.Message replies.
        Defaults to a single make_answer() reply.

    Outputs:
      - StubResolver with udp_port, tcp_port, queries, tcp_accepts.

    Notes:
      - close_tcp_after_reply=True closes each TCP connection after its first
        reply, forcing clients to reconnect.
    """

    def __init__(self, responder=None):
        self.responder = responder or (lambda q: [make_answer(q)])
        self.queries = []
        self.tcp_accepts = 0
        self.close_tcp_after_reply = False
        self._stop = False

        self.udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.udp.bind(("127.0.0.1", 0))
        self.udp.settimeout(0.2)
        self.udp_port = self.udp.getsockname()[1]

        self.tcp = socket.socket()
        self.tcp.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.tcp.bind(("127.0.0.1", 0))
        self.tcp.listen(5)
        self.tcp.settimeout(0.2)
        self.tcp_port = self.tcp.getsockname()[1]

        self._threads = [
            threading.Thread(target=self._udp_loop, daemon=True),
            threading.Thread(target=self._tcp_loop, daemon=True),
        ]

    def start(self):
        for t in self._threads:
            t.start()
        time.sleep(0.02)

    def _replies(self, wire):
        query = dns.message.from_wire(wire)
        self.queries.append(query)
        return [r.to_wire() for r in self.responder(query)]

    def _udp_loop(self):
        while not self._stop:
            try:
                wire, peer = self.udp.recvfrom(65535)
            except OSError:
                continue
            try:
                for reply in self._replies(wire):
                    self.udp.sendto(reply, peer)
            except Exception:
                continue

    def _tcp_loop(self):
        while not self._stop:
            try:
                conn, _ = self.tcp.accept()
            except OSError:
                continue
            self.tcp_accepts += 1
            t = threading.Thread(target=self._tcp_conn, args=(conn,), daemon=True)
            t.start()

    def _tcp_conn(self, conn):
        with conn:
            while not self._stop:
                try:
                    hdr = _recv_exact(conn, 2)
                    if len(hdr) != 2:
                        return
                    body = _recv_exact(conn, int.from_bytes(hdr, "big"))
                    for reply in self._replies(body):
                        conn.sendall(len(reply).to_bytes(2, "big") + reply)
                except Exception:
                    return
                if self.close_tcp_after_reply:
                    return

    def close(self):
        self._stop = True
        for s in (self.udp, self.tcp):
            try:
                s.close()
            except OSError:
                pass


@pytest.fixture
def stub_resolver():
    """
    Brief: Running StubResolver, closed after the test.

    Inputs:
      - None

    Outputs:
      - StubResolver
    """
    s = StubResolver()
    s.start()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def closed_tcp_port():
    """
    Brief: A loopback TCP port with nothing listening on it.

    Inputs:
      - None

    Outputs:
      - int port number
    """
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port
