"""Counters, scopes and the stat structures used by the rate limit service."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .utils import sanitize_stat_name

logger = logging.getLogger(__name__)


class Counter:
    """A monotonically increasing, thread-safe counter."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._value = 0
        self._flushed = 0

    def inc(self) -> None:
        self.add(1)

    def add(self, amount: int) -> None:
        with self._lock:
            self._value += amount

    def value(self) -> int:
        with self._lock:
            return self._value

    def _latch(self) -> int:
        with self._lock:
            delta = self._value - self._flushed
            self._flushed = self._value
            return delta


class MemorySink:
    """A sink that accumulates flushed counter values in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counters: Dict[str, int] = {}

    def flush_counter(self, name: str, value: int) -> None:
        with self._lock:
            self.counters[name] = self.counters.get(name, 0) + value


def _tagged_name(name: str, tags: Optional[Mapping[str, str]]) -> str:
    if not tags:
        return name
    return name + "".join(f".__{key}={tags[key]}" for key in sorted(tags))


class StatsStore:
    """Holds every counter by name and flushes their increments to a sink."""

    def __init__(self, sink=None) -> None:
        self.sink = sink
        self._lock = threading.Lock()
        self._counters: Dict[str, Counter] = {}

    def new_counter(self, name: str) -> Counter:
        """Return the counter of that name, creating it on first use."""
        with self._lock:
            counter = self._counters.get(name)
            if counter is None:
                counter = self._counters[name] = Counter(name)
            return counter

    def scope(self, name: str, tags: Optional[Mapping[str, str]] = None) -> "Scope":
        return Scope(self, name, dict(tags or {}))

    def flush(self) -> None:
        """Send the increase of each counter since the last flush to the sink."""
        if self.sink is None:
            return
        with self._lock:
            counters = list(self._counters.values())
        for counter in counters:
            delta = counter._latch()
            if delta:
                self.sink.flush_counter(counter.name, delta)


class Scope:
    """A name prefix, with tags, under which counters are created."""

    def __init__(self, store: StatsStore, prefix: str, tags: Optional[Mapping[str, str]] = None):
        self.store = store
        self.prefix = prefix
        self.tags = dict(tags or {})

    def scope(self, name: str) -> "Scope":
        return Scope(self.store, f"{self.prefix}.{name}", self.tags)

    def new_counter(self, name: str) -> Counter:
        return self.store.new_counter(_tagged_name(f"{self.prefix}.{name}", self.tags))


@dataclass
class RateLimitStats:
    """Stats for a single rate limit config entry."""

    key: str
    total_hits: Counter
    over_limit: Counter
    near_limit: Counter
    over_limit_with_local_cache: Counter
    within_limit: Counter
    shadow_mode: Counter


@dataclass
class DomainStats:
    """Stats for a domain without matching descriptors."""

    key: str
    not_found: Counter


@dataclass
class ShouldRateLimitStats:
    """Counts of cache and service errors during a check."""

    redis_error: Counter
    service_error: Counter


@dataclass
class ServiceStats:
    """Service level success and failure counters."""

    config_load_success: Counter
    config_load_error: Counter
    should_rate_limit: ShouldRateLimitStats
    global_shadow_mode: Counter


class StatsManager:
    """Creates the stat structures under the ``ratelimit.service`` scope."""

    def __init__(self, store: StatsStore, extra_tags: Optional[Mapping[str, str]] = None):
        self.store = store
        service_scope = store.scope("ratelimit", extra_tags).scope("service")
        self._service_scope = service_scope
        self._rate_limit_scope = service_scope.scope("rate_limit")
        self._should_rate_limit_scope = service_scope.scope("call.should_rate_limit")

    def new_stats(self, key: str) -> RateLimitStats:
        logger.debug("Creating stats for key: '%s'", key)
        name = sanitize_stat_name(key)
        scope = self._rate_limit_scope
        return RateLimitStats(
            key=key,
            total_hits=scope.new_counter(name + ".total_hits"),
            over_limit=scope.new_counter(name + ".over_limit"),
            near_limit=scope.new_counter(name + ".near_limit"),
            over_limit_with_local_cache=scope.new_counter(name + ".over_limit_with_local_cache"),
            within_limit=scope.new_counter(name + ".within_limit"),
            shadow_mode=scope.new_counter(name + ".shadow_mode"),
        )

    def new_domain_stats(self, domain: str) -> DomainStats:
        name = sanitize_stat_name(domain)
        return DomainStats(
            key=domain,
            not_found=self._rate_limit_scope.new_counter(name + ".domain_not_found"),
        )

    def new_should_rate_limit_stats(self) -> ShouldRateLimitStats:
        scope = self._should_rate_limit_scope
        return ShouldRateLimitStats(
            redis_error=scope.new_counter("redis_error"),
            service_error=scope.new_counter("service_error"),
        )

    def new_service_stats(self) -> ServiceStats:
        scope = self._service_scope
        return ServiceStats(
            config_load_success=scope.new_counter("config_load_success"),
            config_load_error=scope.new_counter("config_load_error"),
            should_rate_limit=self.new_should_rate_limit_stats(),
            global_shadow_mode=scope.new_counter("global_shadow_mode"),
        )