"""Translate DoH GET query parameters into DNS query messages.

Brief:
  A request such as ``/resolve?name=example.com&type=1&edns_client_subnet=192.0.2.0/24``
  becomes a single-question ``dns.message.QueryMessage`` with RD and AD set and
  exactly one EDNS0 Client-Subnet option attached.

Inputs:
  - Mapping of query parameter names to string values.

Outputs:
  - dns.message.QueryMessage, or a QueryBuildError subclass on invalid input.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Mapping, Optional, Union

import dns.edns
import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rdataclass

logger = logging.getLogger("dohstub.query")

DNS_MESSAGE_CT = "application/dns-message"

# Advertised EDNS0 UDP payload size (DNS flag day 2020 default).
EDNS_PAYLOAD = 1232

_DIGITS = re.compile(r"[0-9]+")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class QueryBuildError(ValueError):
    """Brief: Base class for request-translation failures.

    Inputs:
      - message: description including the offending parameter.

    Outputs:
      - Exception instance
    """


class UnsupportedContentType(QueryBuildError):
    """The ``ct`` parameter names a media type other than application/dns-message."""


class InvalidQuestionName(QueryBuildError):
    """The ``name`` parameter is empty or not a valid domain name."""


class InvalidQuestionType(QueryBuildError):
    """The ``type`` parameter is not a numeric RR type in 0..65535."""


class InvalidClientSubnet(QueryBuildError):
    """The ``edns_client_subnet`` parameter is neither an IP address nor a CIDR block."""


def canonical_name(text: Optional[str]) -> dns.name.Name:
    """Brief: Parse and canonicalize a question name.

    Inputs:
      - text: presentation-format name, with or without a trailing dot.

    Outputs:
      - dns.name.Name: absolute, lower-cased name.

    Raises:
      - InvalidQuestionName: for empty input, empty labels, labels over 63
        octets or names over 255 octets.

    Example:
      >>> canonical_name("Example.COM").to_text()
      'example.com.'
    """
    raw = (text or "").strip()
    if not raw:
        raise InvalidQuestionName("question name invalid: empty name")
    try:
        name = dns.name.from_text(raw, origin=dns.name.root)
    except dns.exception.DNSException as exc:
        raise InvalidQuestionName(f"question name invalid: {raw!r}: {exc}") from exc
    return name.canonicalize()


def parse_question_type(text: Optional[str]) -> int:
    """Brief: Parse the numeric RR type code.

    Inputs:
      - text: decimal string such as "1" or "28".

    Outputs:
      - int in 0..65535.

    Raises:
      - InvalidQuestionType: for non-numeric or out-of-range input.
    """
    raw = (text or "").strip()
    if not _DIGITS.fullmatch(raw):
        raise InvalidQuestionType(f"question type invalid: {raw!r}")
    value = int(raw)
    if value > 0xFFFF:
        raise InvalidQuestionType(f"question type out of range: {raw!r}")
    return value


def _parse_cidr(text: str) -> Optional[tuple[IPAddress, int]]:
    addr_text, sep, prefix_text = text.partition("/")
    if not sep or not _DIGITS.fullmatch(prefix_text):
        return None
    try:
        iface = ipaddress.ip_interface(f"{addr_text}/{int(prefix_text)}")
    except ValueError:
        return None
    return iface.ip, iface.network.prefixlen


def _parse_address(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def parse_client_subnet(text: Optional[str]) -> dns.edns.ECSOption:
    """Brief: Build an EDNS0 Client-Subnet option from a bare IP or CIDR block.

    Inputs:
      - text: "192.0.2.0/24", "2001:db8::/56", "198.51.100.7", ...

    Outputs:
      - dns.edns.ECSOption with family matching the address version, source
        prefix from the mask (or 32/128 for a bare address) and scope 0.

    Raises:
      - InvalidClientSubnet: when neither form parses.

    Notes:
      - Host bits after the prefix are allowed in the parameter; the option's
        wire form carries only ceil(prefix/8) address octets with trailing
        bits zeroed.

    Example:
      >>> opt = parse_client_subnet("192.0.2.0/24")
      >>> (opt.family, opt.srclen, opt.scopelen)
      (1, 24, 0)
    """
    raw = (text or "").strip()
    parsed = _parse_cidr(raw)
    if parsed is None:
        address = _parse_address(raw)
        if address is not None:
            parsed = (address, address.max_prefixlen)
    if parsed is None:
        raise InvalidClientSubnet(f"question subnet invalid: {raw!r}")

    address, prefix = parsed
    # Zoned IPv6 literals (fe80::1%eth0) have no wire representation.
    if getattr(address, "scope_id", None):
        raise InvalidClientSubnet(f"question subnet invalid: {raw!r}")
    try:
        return dns.edns.ECSOption(str(address), prefix, 0)
    except ValueError as exc:
        raise InvalidClientSubnet(f"question subnet invalid: {raw!r}: {exc}") from exc


def replace_client_subnet(
    msg: dns.message.Message, option: dns.edns.ECSOption
) -> None:
    """Brief: Attach option as the message's only Client-Subnet option.

    Inputs:
      - msg: message to update in place; EDNS0 is enabled when absent.
      - option: the ECS option to attach.

    Outputs:
      - None
    """
    others = [o for o in msg.options if o.otype != dns.edns.OptionType.ECS]
    msg.use_edns(
        edns=max(msg.edns, 0),
        ednsflags=msg.ednsflags,
        payload=msg.payload or EDNS_PAYLOAD,
        options=others + [option],
    )


def build_query(params: Mapping[str, str]) -> dns.message.QueryMessage:
    """Brief: Build a validated DNS query from DoH GET parameters.

    Inputs:
      - params: mapping with keys ``ct`` (optional), ``name``, ``type`` and
        ``edns_client_subnet``.

    Outputs:
      - dns.message.QueryMessage with a fresh random id, RD=1, AD=1, CD=0.

    Raises:
      - UnsupportedContentType, InvalidQuestionName, InvalidQuestionType,
        InvalidClientSubnet (all QueryBuildError).

    Example:
      >>> q = build_query({"name": "example.com", "type": "1",
      ...                  "edns_client_subnet": "192.0.2.0/24"})
      >>> q.question[0].name.to_text()
      'example.com.'
    """
    ct = params.get("ct") or ""
    if ct and ct != DNS_MESSAGE_CT:
        logger.error("content type not supported: %s", ct)
        raise UnsupportedContentType(f"content type not supported: {ct!r}")

    try:
        qname = canonical_name(params.get("name"))
        qtype = parse_question_type(params.get("type"))
        subnet = parse_client_subnet(params.get("edns_client_subnet"))
    except QueryBuildError as exc:
        logger.error("%s", exc)
        raise

    msg = dns.message.make_query(
        qname, qtype, rdclass=dns.rdataclass.IN, use_edns=0, payload=EDNS_PAYLOAD
    )
    msg.flags = dns.flags.RD | dns.flags.AD
    replace_client_subnet(msg, subnet)

    logger.info(
        "will query name: %s, type: %s, client_subnet: %s",
        qname,
        qtype,
        params.get("edns_client_subnet"),
    )
    return msg
