"""Request, response and limit types exchanged with the rate limit service."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional


class Unit(enum.IntEnum):
    """Time unit of a rate limit."""

    UNKNOWN = 0
    SECOND = 1
    MINUTE = 2
    HOUR = 3
    DAY = 4
    MONTH = 5
    YEAR = 6
    WEEK = 7

    def __str__(self) -> str:
        return self.name


class Code(enum.IntEnum):
    """Outcome of a rate limit check."""

    UNKNOWN = 0
    OK = 1
    OVER_LIMIT = 2

    def __str__(self) -> str:
        return self.name


@dataclass
class DescriptorEntry:
    """A single key/value pair of a descriptor."""

    key: str
    value: str = ""


@dataclass
class RateLimit:
    """A limit of ``requests_per_unit`` requests per ``unit``."""

    requests_per_unit: int
    unit: Unit
    name: str = ""


@dataclass
class Descriptor:
    """An ordered list of entries, with an optional limit override and hit count."""

    entries: List[DescriptorEntry] = field(default_factory=list)
    limit: Optional[RateLimit] = None
    hits_addend: Optional[int] = None


@dataclass
class RateLimitRequest:
    """A request to check one or more descriptors within a domain."""

    domain: str = ""
    descriptors: List[Descriptor] = field(default_factory=list)
    hits_addend: int = 0


@dataclass
class DescriptorStatus:
    """The result of checking a single descriptor."""

    code: Code = Code.UNKNOWN
    current_limit: Optional[RateLimit] = None
    limit_remaining: int = 0
    duration_until_reset: Optional[int] = None


@dataclass
class HeaderValue:
    """A header to add to the response."""

    key: str
    value: str


@dataclass
class RateLimitResponse:
    """The overall answer to a rate limit request."""

    overall_code: Code = Code.UNKNOWN
    statuses: List[DescriptorStatus] = field(default_factory=list)
    response_headers_to_add: List[HeaderValue] = field(default_factory=list)