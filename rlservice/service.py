"""The rate limit service: matches descriptors to limits and asks the cache for a verdict."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .models import (
    Code,
    DescriptorStatus,
    HeaderValue,
    RateLimitRequest,
    RateLimitResponse,
)
from .settings import Settings, load_settings
from .utils import calculate_reset

logger = logging.getLogger(__name__)

MAX_UINT32 = (1 << 32) - 1
CONFIG_HEALTH_COMPONENT_NAME = "config"

_POLL_INTERVAL = 0.05


class ServiceError(Exception):
    """The request cannot be served, e.g. it is malformed or no config is loaded."""


class CacheError(Exception):
    """The backing cache failed while checking limits."""


class RateLimitConfigError(Exception):
    """A new rate limit configuration could not be loaded."""


@dataclass
class ConfigUpdateEvent:
    """A configuration produced by a provider, or the error met while producing it."""

    config: Any = None
    error: Optional[BaseException] = None

    def get_config(self) -> Any:
        """Return the configuration, raising the stored error if there is one."""
        if self.error is not None:
            raise self.error
        return self.config


class RateLimitCache(Protocol):
    def do_limit(self, request: RateLimitRequest, limits: Sequence[Any]) -> List[DescriptorStatus]:
        ...


class _ServiceHealth(Protocol):
    def ok(self, component: str) -> None:
        ...

    def fail(self, component: str) -> None:
        ...


def _check(condition: bool, message: str) -> None:
    if not condition:
        raise ServiceError(message)


class RateLimitService:
    """Answers rate limit requests against the most recently loaded configuration.

    ``config_updates`` is a queue of :class:`ConfigUpdateEvent`. Unless
    ``force_start`` is set, construction blocks until the first event arrives;
    afterwards a background thread applies every further event until
    :meth:`stop` is called.
    """

    def __init__(
        self,
        cache: RateLimitCache,
        config_updates: "queue.Queue[ConfigUpdateEvent]",
        stats_manager,
        health: Optional[_ServiceHealth] = None,
        clock=None,
        shadow_mode: bool = False,
        force_start: bool = False,
        healthy_with_at_least_one_config_load: bool = False,
        settings_loader: Callable[[], Settings] = load_settings,
    ) -> None:
        self._lock = threading.Lock()
        self._config_updates = config_updates
        self._config: Any = None
        self._cache = cache
        self._stats = stats_manager.new_service_stats()
        self._health = health
        self._clock = clock
        self._global_shadow_mode = shadow_mode
        self._settings_loader = settings_loader
        self._custom_headers_enabled = False
        self._limit_header = ""
        self._remaining_header = ""
        self._reset_header = ""
        self._stopping = threading.Event()

        if not force_start:
            logger.info("Waiting for initial ratelimit config update event")
            self.set_config(config_updates.get(), healthy_with_at_least_one_config_load)
            logger.info("Successfully loaded the initial ratelimit configs")

        self._watcher = threading.Thread(
            target=self._watch_updates,
            args=(healthy_with_at_least_one_config_load,),
            name="ratelimit-config-updates",
            daemon=True,
        )
        self._watcher.start()

    def _watch_updates(self, healthy_with_at_least_one_config_load: bool) -> None:
        while not self._stopping.is_set():
            try:
                event = self._config_updates.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            logger.debug("Setting config retrieved from config provider")
            self.set_config(event, healthy_with_at_least_one_config_load)

    def stop(self) -> None:
        """Stop applying configuration updates."""
        self._stopping.set()
        if self._watcher.is_alive() and self._watcher is not threading.current_thread():
            self._watcher.join()

    def __enter__(self) -> "RateLimitService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def set_config(self, update_event: ConfigUpdateEvent, healthy_with_at_least_one_config_load: bool) -> None:
        """Install the configuration carried by ``update_event``.

        A :class:`RateLimitConfigError` is counted and logged and the current
        configuration is kept; any other error propagates.
        """
        try:
            new_config = update_event.get_config()
        except RateLimitConfigError as exc:
            self._stats.config_load_error.inc()
            logger.error("Error loading new configuration: %s", exc)
            return

        if healthy_with_at_least_one_config_load and self._health is not None:
            try:
                if not new_config.is_empty_domains():
                    self._health.ok(CONFIG_HEALTH_COMPONENT_NAME)
                else:
                    self._health.fail(CONFIG_HEALTH_COMPONENT_NAME)
            except Exception as exc:  # noqa: BLE001 - health failures are only reported
                logger.error("Unable to update health status: %s", exc)

        self._stats.config_load_success.inc()

        settings = self._settings_loader()
        with self._lock:
            self._config = new_config
            self._global_shadow_mode = settings.global_shadow_mode
            if settings.rate_limit_response_headers_enabled:
                self._custom_headers_enabled = True
                self._limit_header = settings.header_ratelimit_limit
                self._remaining_header = settings.header_ratelimit_remaining
                self._reset_header = settings.header_ratelimit_reset
        logger.info("Successfully loaded new configuration")

    def current_config(self) -> Tuple[Any, bool]:
        """Return the loaded configuration and whether global shadow mode is on."""
        with self._lock:
            return self._config, self._global_shadow_mode

    def should_rate_limit(self, request: RateLimitRequest) -> RateLimitResponse:
        """Check every descriptor of ``request`` and return the overall verdict."""
        try:
            response = self._should_rate_limit(request)
        except CacheError:
            self._stats.should_rate_limit.redis_error.inc()
            raise
        except ServiceError:
            self._stats.should_rate_limit.service_error.inc()
            raise
        logger.debug("returning normal response: %s", response)
        return response

    def _limits_to_check(self, request: RateLimitRequest, config: Any) -> Tuple[List[Any], List[bool]]:
        _check(config is not None, "no rate limit configuration loaded")

        limits: List[Any] = []
        unlimited: List[bool] = []
        replacing: Dict[str, bool] = {}

        for descriptor in request.descriptors:
            if logger.isEnabledFor(logging.DEBUG):
                entries = ",".join(f"({entry.key}={entry.value})" for entry in descriptor.entries)
                logger.debug("got descriptor: %s", entries)
            limit = config.get_limit(request.domain, descriptor)
            if logger.isEnabledFor(logging.DEBUG):
                if limit is None:
                    logger.debug("descriptor does not match any limit, no limits applied")
                elif limit.unlimited:
                    logger.debug("descriptor is unlimited, not passing to the cache")
                else:
                    logger.debug(
                        "applying limit: %s requests per %s, shadow_mode: %s",
                        limit.limit.requests_per_unit,
                        limit.limit.unit,
                        limit.shadow_mode,
                    )

            is_unlimited = False
            if limit is not None:
                for name in limit.replaces or ():
                    replacing[name] = True
                if limit.unlimited:
                    is_unlimited = True
                    limit = None
            limits.append(limit)
            unlimited.append(is_unlimited)

        for index, limit in enumerate(limits):
            if limit is None or not limit.name:
                continue
            if limit.name in replacing:
                limits[index] = None
                logger.debug("replacing %s", limit.name)

        return limits, unlimited

    def _should_rate_limit(self, request: RateLimitRequest) -> RateLimitResponse:
        _check(request.domain != "", "rate limit domain must not be empty")
        _check(len(request.descriptors) != 0, "rate limit descriptor list must not be empty")

        config, global_shadow_mode = self.current_config()
        limits, unlimited = self._limits_to_check(request, config)
        assert len(limits) == len(unlimited) == len(request.descriptors)

        statuses = list(self._cache.do_limit(request, limits))
        assert len(statuses) == len(limits)

        response = RateLimitResponse()
        final_code = Code.OK
        min_remaining = MAX_UINT32
        minimum: Optional[DescriptorStatus] = None

        for status, is_unlimited in zip(statuses, unlimited):
            if (
                self._custom_headers_enabled
                and status.current_limit is not None
                and status.limit_remaining < min_remaining
            ):
                minimum = status
                min_remaining = status.limit_remaining

            if is_unlimited:
                response.statuses.append(DescriptorStatus(code=Code.OK, limit_remaining=MAX_UINT32))
            else:
                response.statuses.append(status)
                if status.code == Code.OVER_LIMIT:
                    final_code = status.code
                    minimum = status
                    min_remaining = 0

        if self._custom_headers_enabled and minimum is not None:
            response.response_headers_to_add = [
                HeaderValue(self._limit_header, str(minimum.current_limit.requests_per_unit)),
                HeaderValue(self._remaining_header, str(minimum.limit_remaining)),
                HeaderValue(
                    self._reset_header,
                    str(calculate_reset(minimum.current_limit.unit, self._clock)),
                ),
            ]

        if final_code == Code.OVER_LIMIT and global_shadow_mode:
            final_code = Code.OK
            self._stats.global_shadow_mode.inc()

        response.overall_code = final_code
        return response