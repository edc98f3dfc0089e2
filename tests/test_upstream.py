"""
Brief: Tests for dohstub.upstream (UpstreamConfig, UpstreamClient, UpstreamLink).

Inputs:
  - None

Outputs:
  - None
"""

import threading
import time

import dns.message
import pytest

from conftest import make_answer
from dohstub.upstream import (
    RelayFailed,
    UpstreamConfig,
    UpstreamLink,
    UpstreamUnreachable,
)


def _query(name="example.com."):
    return dns.message.make_query(name, "A")


def _config(port, transport="tcp", read_timeout_ms=1000):
    return UpstreamConfig(
        host="127.0.0.1",
        port=port,
        transport=transport,
        connect_timeout_ms=500,
        read_timeout_ms=read_timeout_ms,
        write_timeout_ms=500,
    )


def test_upstream_config_normalizes_transport_and_address():
    """
    Brief: Transport is lower-cased, unknown transports are rejected, IPv6 is bracketed.

    Inputs:
      - None

    Outputs:
      - None
    """
    assert UpstreamConfig(host="9.9.9.9", transport="TCP").transport == "tcp"
    assert UpstreamConfig(host="9.9.9.9").address == "9.9.9.9:53"
    assert UpstreamConfig(host="2001:db8::1", port=5353).address == "[2001:db8::1]:5353"
    with pytest.raises(ValueError):
        UpstreamConfig(host="9.9.9.9", transport="quic")


def test_relay_over_tcp_reuses_connection(stub_resolver):
    """
    Brief: Successive relays share one lazily dialed TCP connection.

    Inputs:
      - stub_resolver fixture

    Outputs:
      - None: Asserts answers and a single accept
    """
    link = UpstreamLink(_config(stub_resolver.tcp_port))
    assert not link.connected
    try:
        for name in ("example.com.", "example.org."):
            q = _query(name)
            answer = link.relay(q)
            assert answer.id == q.id
            assert answer.question[0].name.to_text() == name
        assert link.connected
        assert stub_resolver.tcp_accepts == 1
    finally:
        link.close()
    assert not link.connected


def test_relay_over_udp(stub_resolver):
    """
    Brief: The udp transport relays through a connected datagram socket.

    Inputs:
      - stub_resolver fixture

    Outputs:
      - None
    """
    link = UpstreamLink(_config(stub_resolver.udp_port, transport="udp"))
    try:
        q = _query()
        assert link.relay(q).answer
    finally:
        link.close()


def test_relay_skips_replies_with_foreign_id(stub_resolver):
    """
    Brief: A stale reply carrying another id is discarded in favour of the matching one.

    Inputs:
      - stub_resolver fixture with a responder emitting a stale reply first

    Outputs:
      - None: Asserts the returned answer carries the query id
    """

    def responder(q):
        stale = make_answer(q, address="203.0.113.9")
        stale.id = (q.id + 1) % 65536
        return [stale, make_answer(q)]

    stub_resolver.responder = responder
    link = UpstreamLink(_config(stub_resolver.udp_port, transport="udp"))
    try:
        q = _query()
        answer = link.relay(q)
        assert answer.id == q.id
        assert answer.answer[0][0].address == "192.0.2.1"
    finally:
        link.close()


def test_relay_times_out_when_only_foreign_ids_arrive(stub_resolver):
    """
    Brief: Without a matching reply before the read deadline, relay fails and resets.

    Inputs:
      - stub_resolver fixture

    Outputs:
      - None: Asserts RelayFailed and disconnected link
    """

    def responder(q):
        stale = make_answer(q)
        stale.id = (q.id + 1) % 65536
        return [stale]

    stub_resolver.responder = responder
    link = UpstreamLink(_config(stub_resolver.udp_port, transport="udp", read_timeout_ms=200))
    with pytest.raises(RelayFailed):
        link.relay(_query())
    assert not link.connected


def test_relay_failure_invalidates_and_next_relay_redials(stub_resolver):
    """
    Brief: An exchange failure drops the connection; the following relay dials again.

    Inputs:
      - stub_resolver fixture closing TCP connections after one reply

    Outputs:
      - None: Asserts failure on the dead socket and a second accept afterwards
    """
    stub_resolver.close_tcp_after_reply = True
    link = UpstreamLink(_config(stub_resolver.tcp_port))
    try:
        assert link.relay(_query()).answer
        assert stub_resolver.tcp_accepts == 1

        with pytest.raises(RelayFailed):
            link.relay(_query())
        assert not link.connected

        assert link.relay(_query()).answer
        assert stub_resolver.tcp_accepts == 2
    finally:
        link.close()


def test_relay_unreachable_upstream_raises_relay_failed(closed_tcp_port):
    """
    Brief: A refused dial surfaces as RelayFailed with both fields reset.

    Inputs:
      - closed_tcp_port fixture

    Outputs:
      - None
    """
    link = UpstreamLink(_config(closed_tcp_port))
    with pytest.raises(RelayFailed) as info:
        link.relay(_query())
    assert isinstance(info.value.__cause__, UpstreamUnreachable)
    assert not link.connected


def test_ensure_connection_raises_unreachable(closed_tcp_port):
    """
    Brief: ensure_connection reports dial failures as UpstreamUnreachable.

    Inputs:
      - closed_tcp_port fixture

    Outputs:
      - None
    """
    link = UpstreamLink(_config(closed_tcp_port))
    with pytest.raises(UpstreamUnreachable):
        link.ensure_connection()
    assert not link.connected


def test_concurrent_relays_share_one_tcp_connection(stub_resolver):
    """
    Brief: Many threads relaying over one link each get their own answer on one connection.

    Inputs:
      - stub_resolver fixture

    Outputs:
      - None: Asserts matching ids and names for every relay and a single accept
    """
    link = UpstreamLink(_config(stub_resolver.tcp_port))
    results, errors = [], []
    guard = threading.Lock()

    def worker(n):
        for i in range(20):
            q = _query(f"host{i}.worker{n}.example.")
            try:
                answer = link.relay(q)
            except RelayFailed as exc:
                with guard:
                    errors.append(exc)
                continue
            with guard:
                results.append(
                    answer.id == q.id and answer.question[0].name == q.question[0].name
                )

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    try:
        for t in threads:
            t.start()
        for t in threads:
            t.join(8)
        assert errors == []
        assert len(results) == 160
        assert all(results)
        assert stub_resolver.tcp_accepts == 1
    finally:
        link.close()


def test_failure_while_others_wait_redials_once(stub_resolver):
    """
    Brief: When the in-flight exchange fails, waiting relays share a single new connection.

    Inputs:
      - stub_resolver fixture whose first query kills its TCP connection

    Outputs:
      - None: Asserts one failure, answers for the waiters and exactly two accepts
    """
    started, gate = threading.Event(), threading.Event()
    calls = []

    def responder(q):
        calls.append(q)
        if len(calls) == 1:
            started.set()
            gate.wait(5)
            raise RuntimeError("drop connection")
        return [make_answer(q)]

    stub_resolver.responder = responder
    link = UpstreamLink(_config(stub_resolver.tcp_port))
    outcomes = []
    guard = threading.Lock()

    def relay_one(name):
        q = _query(name)
        try:
            answer = link.relay(q)
        except RelayFailed:
            outcome = "failed"
        else:
            outcome = "ok" if answer.id == q.id else "mismatch"
        with guard:
            outcomes.append(outcome)

    first = threading.Thread(target=relay_one, args=("first.example.",))
    waiters = [
        threading.Thread(target=relay_one, args=(f"w{n}.example.",)) for n in range(4)
    ]
    try:
        first.start()
        assert started.wait(2)
        for t in waiters:
            t.start()
        time.sleep(0.1)
        gate.set()
        for t in [first] + waiters:
            t.join(5)
        assert sorted(outcomes) == ["failed", "ok", "ok", "ok", "ok"]
        assert stub_resolver.tcp_accepts == 2
        assert link.connected
    finally:
        gate.set()
        link.close()
