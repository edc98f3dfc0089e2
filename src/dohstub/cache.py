"""Response cache front-end: keyed lookup and fire-and-forget insertion.

Brief:
  ResponseCache sits between the request handler and a CachePlugin store.
  Lookups are synchronous and in-memory. Inserts are handed to a background
  worker through a single-slot queue; when the worker is busy for longer
  than the handoff timeout the insert is dropped instead of delaying the
  HTTP response.
"""

from __future__ import annotations

import ipaddress
import logging
import queue
import threading
from typing import Optional, Tuple

import dns.edns
import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype

from .cache_plugins.base import CachePlugin

logger = logging.getLogger("dohstub.cache")

CacheKey = Tuple[str, int, int, str]

_STOP = object()


def client_subnet_of(msg: dns.message.Message) -> str:
    """Brief: Return the message's Client-Subnet as a network string.

    Inputs:
      - msg: DNS message, query or answer.

    Outputs:
      - str: e.g. "192.0.2.0/24" (address masked to the source prefix), or ""
        when the message carries no ECS option.
    """
    for opt in msg.options:
        if isinstance(opt, dns.edns.ECSOption):
            net = ipaddress.ip_network(f"{opt.address}/{opt.srclen}", strict=False)
            return str(net)
    return ""


def cache_key(msg: dns.message.Message) -> CacheKey:
    """Brief: Build the identifier-agnostic cache key for a message.

    Inputs:
      - msg: DNS message with exactly one question.

    Outputs:
      - (qname, qtype, qclass, client_subnet) with qname lower-cased and
        fully qualified.

    Raises:
      - ValueError: when the message has no question.

    Example:
      >>> from dohstub.query import build_query
      >>> q = build_query({"name": "Example.com", "type": "28",
      ...                  "edns_client_subnet": "192.0.2.77/24"})
      >>> cache_key(q)
      ('example.com.', 28, 1, '192.0.2.0/24')
    """
    if not msg.question:
        raise ValueError("cannot build a cache key for a message without question")
    q = msg.question[0]
    return (
        q.name.canonicalize().to_text(),
        int(q.rdtype),
        int(q.rdclass),
        client_subnet_of(msg),
    )


def compute_cache_ttl(
    answer: dns.message.Message,
    min_cache_ttl: int = 0,
    max_cache_ttl: Optional[int] = None,
) -> int:
    """
    Computes the cache lifetime for an upstream answer.

    Inputs:
      - answer: dns.message.Message from upstream
      - min_cache_ttl: int (seconds), minimum TTL floor
      - max_cache_ttl: optional int (seconds), TTL cap

    Outputs:
      - int: seconds to keep the answer; 0 means do not cache.

    For NOERROR + answers: max(min(answer rrset TTL), min_cache_ttl)
    For NXDOMAIN / NODATA: max(min(SOA TTL, SOA minimum), min_cache_ttl),
    or min_cache_ttl without an SOA in the authority section.
    Truncated answers and other rcodes (SERVFAIL, REFUSED, ...) are not cached.

    Example:
      >>> # NOERROR answer with one A rrset at TTL 30, floor 60
      >>> compute_cache_ttl(resp_with_low_ttl, 60)
      60
    """
    if answer.flags & dns.flags.TC:
        return 0
    floor = max(0, int(min_cache_ttl))
    rcode = answer.rcode()
    if rcode == dns.rcode.NOERROR and answer.answer:
        ttl = max(min(rrset.ttl for rrset in answer.answer), floor)
    elif rcode in (dns.rcode.NOERROR, dns.rcode.NXDOMAIN):
        soa_ttls = [
            min(rrset.ttl, rrset[0].minimum)
            for rrset in answer.authority
            if rrset.rdtype == dns.rdatatype.SOA and len(rrset)
        ]
        ttl = max(min(soa_ttls), floor) if soa_ttls else floor
    else:
        return 0
    if max_cache_ttl is not None:
        ttl = min(ttl, int(max_cache_ttl))
    return max(0, int(ttl))


class ResponseCache:
    """Brief: Lookup-before-relay and insert-after-relay over a CachePlugin.

    Inputs:
      - backend: CachePlugin store; its min_cache_ttl / max_cache_ttl bound
        the computed TTLs.
      - handoff_timeout: seconds insert() waits for the worker to accept an
        answer before dropping it.

    Outputs:
      - ResponseCache instance with a running daemon insert worker.

    Example:
      >>> from dohstub.cache_plugins import InMemoryTTLCache
      >>> rc = ResponseCache(InMemoryTTLCache())
      >>> rc.lookup(query) is None
      True
    """

    def __init__(self, backend: CachePlugin, *, handoff_timeout: float = 0.05) -> None:
        self.backend = backend
        self.handoff_timeout = max(0.0, float(handoff_timeout))
        self._handoff: "queue.Queue[object]" = queue.Queue(maxsize=1)
        self._worker = threading.Thread(
            target=self._run, name="dohstub-cache-insert", daemon=True
        )
        self._worker.start()

    def lookup(self, query: dns.message.Message) -> Optional[dns.message.Message]:
        """Brief: Return a previously stored answer for query, if any.

        Inputs:
          - query: DNS query message (not mutated).

        Outputs:
          - dns.message.Message freshly parsed from the stored wire bytes, or
            None on a miss. The caller rewrites its id.
        """
        try:
            key = cache_key(query)
        except ValueError:
            return None
        wire = self.backend.get(key)
        if wire is None:
            return None
        try:
            return dns.message.from_wire(wire)
        except dns.exception.DNSException as exc:
            logger.warning("discarding unparsable cache entry for %s: %s", key, exc)
            return None

    def insert(
        self,
        answer: dns.message.Message,
        query: Optional[dns.message.Message] = None,
    ) -> bool:
        """Brief: Offer answer to the insert worker without blocking the caller.

        Inputs:
          - answer: freshly relayed upstream answer.
          - query: optional originating query; when given, the cache key is
            derived from it so the entry is found again even when upstream
            does not echo the Client-Subnet option.

        Outputs:
          - bool: True when the worker accepted the handoff, False when it was
            dropped after handoff_timeout.
        """
        try:
            self._handoff.put((answer, query), timeout=self.handoff_timeout)
        except queue.Full:
            logger.debug("cache insert dropped: insert worker busy")
            return False
        return True

    def store(
        self,
        answer: dns.message.Message,
        query: Optional[dns.message.Message] = None,
    ) -> bool:
        """Brief: Synchronously write answer to the backend.

        Inputs:
          - answer: upstream answer.
          - query: optional originating query used for the key.

        Outputs:
          - bool: True when an entry was written.
        """
        key = cache_key(query if query is not None else answer)
        ttl = compute_cache_ttl(
            answer,
            getattr(self.backend, "min_cache_ttl", 0),
            getattr(self.backend, "max_cache_ttl", None),
        )
        if ttl <= 0:
            logger.debug("not caching %s (rcode %s)", key, dns.rcode.to_text(answer.rcode()))
            return False
        self.backend.set(key, ttl, answer.to_wire())
        logger.debug("cached %s for %ds", key, ttl)
        return True

    def _run(self) -> None:
        while True:
            item = self._handoff.get()
            if item is _STOP:
                return
            answer, query = item  # type: ignore[misc]
            try:
                self.store(answer, query)
            except Exception:
                # A failing store must not stop the worker.
                logger.warning("cache insert failed", exc_info=True)

    def close(self, timeout: float = 1.0) -> None:
        """Brief: Stop the insert worker and purge expired backend entries.

        Inputs:
          - timeout: seconds to wait for the worker to drain and exit.

        Outputs:
          - None
        """
        try:
            self._handoff.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("cache insert worker did not accept stop request")
            return
        self._worker.join(timeout=timeout)
        self.backend.purge()
