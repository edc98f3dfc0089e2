"""Per-request orchestration from DoH GET parameters to a wire-format answer.

Brief:
  RequestHandler runs the negotiate, build, cache lookup, relay, cache
  offer and pack steps for one request and maps every failure to an HTTP
  status with a single-line plain-text body. It never raises for request
  or upstream errors.
"""

from __future__ import annotations

import logging
from typing import Mapping, NamedTuple, Optional

import dns.exception
import dns.message

from .cache import ResponseCache
from .query import DNS_MESSAGE_CT, QueryBuildError, build_query
from .upstream import UpstreamError, UpstreamLink

logger = logging.getLogger("dohstub.handler")

TEXT_CT = "text/plain"

MSG_UNSUPPORTED_CT = "request content type not supported."
MSG_BAD_REQUEST = "get message from request failed."
MSG_UPSTREAM_FAILED = "error when querying upstream."


class PackingFailure(Exception):
    """Brief: An answer could not be serialized to DNS wire format.

    Inputs:
      - message: description

    Outputs:
      - Exception instance
    """


class StubResponse(NamedTuple):
    """HTTP status, body bytes and media type produced for one request."""

    status: int
    body: bytes
    media_type: str


def _error(status: int, message: str) -> StubResponse:
    return StubResponse(status, message.encode("ascii"), TEXT_CT)


def pack_answer(answer: dns.message.Message) -> bytes:
    """Brief: Serialize answer to wire format.

    Inputs:
      - answer: DNS message

    Outputs:
      - bytes

    Raises:
      - PackingFailure: when dnspython cannot render the message.
    """
    try:
        return answer.to_wire()
    except (dns.exception.DNSException, ValueError) as exc:
        raise PackingFailure(str(exc) or exc.__class__.__name__) from exc


def accepts_dns_message(accept: Optional[str]) -> bool:
    """Brief: Content negotiation on the Accept header.

    Inputs:
      - accept: raw Accept header value or None.

    Outputs:
      - bool: True when the header is absent, empty, */* or
        application/dns-message.
    """
    value = (accept or "").strip()
    return value in ("", "*/*", DNS_MESSAGE_CT)


class RequestHandler:
    """Brief: DoH GET request pipeline.

    Inputs:
      - link: UpstreamLink used to relay cache misses.
      - cache: optional ResponseCache; None disables caching.

    Outputs:
      - handle(params, accept) -> StubResponse

    Example:
      >>> handler = RequestHandler(UpstreamLink(UpstreamConfig(host="9.9.9.9")))
      >>> handler.handle({"name": "example.com", "type": "1"}, None).status
      502
    """

    def __init__(
        self, link: UpstreamLink, cache: Optional[ResponseCache] = None
    ) -> None:
        self.link = link
        self.cache = cache

    @property
    def use_cache(self) -> bool:
        return self.cache is not None

    def handle(self, params: Mapping[str, str], accept: Optional[str] = None) -> StubResponse:
        if not accepts_dns_message(accept):
            logger.error("request content type not supported: %s", accept)
            return _error(403, MSG_UNSUPPORTED_CT)

        try:
            query = build_query(params)
        except QueryBuildError as exc:
            logger.error("get message from request failed: %s", exc)
            return _error(502, MSG_BAD_REQUEST)

        if self.cache is not None:
            cached = self.cache.lookup(query)
            if cached is not None:
                cached.id = query.id
                logger.info("resolved from cache")
                return self._respond(cached)

        try:
            answer = self.link.relay(query)
        except UpstreamError as exc:
            logger.error("error when querying upstream: %s", exc)
            return _error(503, MSG_UPSTREAM_FAILED)

        if self.cache is not None:
            self.cache.insert(answer, query)

        return self._respond(answer)

    def _respond(self, answer: dns.message.Message) -> StubResponse:
        try:
            wire = pack_answer(answer)
        except PackingFailure as exc:
            logger.error("packing answer failed: %s", exc)
            return _error(503, MSG_UPSTREAM_FAILED)
        return StubResponse(200, wire, DNS_MESSAGE_CT)
