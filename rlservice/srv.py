"""Resolving DNS SRV records into sorted ``host:port`` strings."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Tuple

import dns.resolver

logger = logging.getLogger(__name__)

_SRV_PATTERN = re.compile(r"^_(.+?)\._(.+?)\.(.+)$")


class SrvParseError(ValueError):
    """The string is not of the form ``_service._proto.name``."""


@dataclass(frozen=True)
class SrvRecord:
    """A single SRV answer."""

    target: str
    port: int
    priority: int = 0
    weight: int = 0


def parse_srv(srv: str) -> Tuple[str, str, str]:
    """Split an SRV name into service, protocol and domain name."""
    match = _SRV_PATTERN.match(srv)
    if match is None:
        message = f"could not parse {srv} to SRV parts"
        logger.error(message)
        raise SrvParseError(message)
    return match.group(1), match.group(2), match.group(3)


def lookup_server_strings_from_srv(
    srv: str, addrs_lookup: Callable[[str, str, str], Iterable[SrvRecord]]
) -> List[str]:
    """Resolve ``srv`` with ``addrs_lookup`` and return sorted ``target:port`` strings.

    Sorting keeps the server order stable, which matters when servers are sharded by position.
    """
    service, proto, name = parse_srv(srv)
    try:
        records = list(addrs_lookup(service, proto, name))
    except Exception as exc:
        logger.error("failed to lookup SRV: %s", exc)
        raise
    logger.debug("found %d server(s) from SRV", len(records))
    servers = [f"{record.target}:{record.port}" for record in records]
    for index, server in enumerate(servers):
        logger.debug("server from srv[%d]: %s", index, server)
    return sorted(servers)


def _dns_lookup(service: str, proto: str, name: str) -> List[SrvRecord]:
    answers = dns.resolver.resolve(f"_{service}._{proto}.{name}", "SRV")
    return [
        SrvRecord(
            target=answer.target.to_text(),
            port=answer.port,
            priority=getattr(answer, "priority", 0),
            weight=getattr(answer, "weight", 0),
        )
        for answer in answers
    ]


class DnsSrvResolver:
    """Resolves SRV names through DNS."""

    def server_strings_from_srv(self, srv: str) -> List[str]:
        return lookup_server_strings_from_srv(srv, _dns_lookup)