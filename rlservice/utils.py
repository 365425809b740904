"""Time helpers, stat name handling and other small utilities."""

from __future__ import annotations

import random
import re
import threading
import time
from typing import Iterable, List, Optional

from .models import RateLimitRequest, Unit

_DIVIDERS = {
    Unit.SECOND: 1,
    Unit.MINUTE: 60,
    Unit.HOUR: 60 * 60,
    Unit.DAY: 60 * 60 * 24,
    Unit.WEEK: 60 * 60 * 24 * 7,
    Unit.MONTH: 60 * 60 * 24 * 30,
    Unit.YEAR: 60 * 60 * 24 * 365,
}

_IPV4 = re.compile(r"\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}")


class SystemTimeSource:
    """Time source backed by the system clock."""

    def unix_now(self) -> int:
        return int(time.time())


class LockedSource:
    """A thread-safe seeded source of 63-bit random integers for expiration jitter."""

    def __init__(self, seed: int) -> None:
        self._lock = threading.Lock()
        self._rng = random.Random(seed)

    def int63(self) -> int:
        with self._lock:
            return self._rng.getrandbits(63)

    def seed(self, seed: int) -> None:
        with self._lock:
            self._rng.seed(seed)


class MultiCloser:
    """Closes several closeable objects together."""

    def __init__(self, closers: Optional[Iterable] = None) -> None:
        self.closers = list(closers or [])

    def close(self) -> None:
        """Close every closer; re-raise the last failure, if any."""
        failure: Optional[BaseException] = None
        for closer in self.closers:
            try:
                closer.close()
            except Exception as exc:  # noqa: BLE001 - every closer must be tried
                failure = exc
        if failure is not None:
            raise failure

    def __enter__(self) -> "MultiCloser":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def unit_to_divider(unit: Unit) -> int:
    """Return the number of seconds in one ``unit``."""
    try:
        return _DIVIDERS[Unit(unit)]
    except (KeyError, ValueError):
        raise ValueError(f"unsupported rate limit unit: {unit}") from None


def calculate_reset(unit: Unit, time_source) -> int:
    """Seconds until the current window of ``unit`` ends."""
    seconds = unit_to_divider(unit)
    now = time_source.unix_now()
    return seconds - now % seconds


def mask_credentials_in_url(url: str) -> str:
    """Hide credentials in a comma separated list of redis URLs."""
    masked = []
    for part in url.split(","):
        pieces = part.split("@")
        if len(pieces) > 1 and pieces[0].startswith("redis://"):
            part = "redis://*****@" + pieces[-1]
        masked.append(part)
    return ",".join(masked)


def sanitize_stat_name(s: str) -> str:
    """Replace characters that are not allowed in stat names."""
    replaced = s.replace(":", "_").replace("|", "_")
    return _IPV4.sub(lambda match: match.group(0).replace(".", "_"), replaced)


def get_hits_addends(request: RateLimitRequest) -> List[int]:
    """Hits to add for each descriptor of the request."""
    return [
        descriptor.hits_addend
        if descriptor.hits_addend is not None
        else max(1, request.hits_addend)
        for descriptor in request.descriptors
    ]