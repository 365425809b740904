"""Service settings read from environment variables."""

from __future__ import annotations

import os
import re
import ssl
from dataclasses import dataclass, field, fields
from datetime import timedelta
from fractions import Fraction
from typing import Callable, Dict, List, Mapping, Optional

from .tls import CAType, tls_config_from_files

_MAX_DURATION_NS = (1 << 63) - 1

_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 60 * 60 * 1_000_000_000,
}

_DURATION_PART = re.compile(r"(\d*)(\.(\d*))?([^\d.]*)")
_LEGACY_OCTAL = re.compile(r"[+-]?0[0-7_]+")
_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


class SettingsError(ValueError):
    """A setting could not be parsed from its environment variable."""


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h30m"``, ``"300ms"`` or ``"-1.5s"``."""
    original = text
    negative = False
    if text[:1] in ("-", "+"):
        negative = text[0] == "-"
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise SettingsError(f'time: invalid duration "{original}"')

    total_ns = 0
    while text:
        match = _DURATION_PART.match(text)
        whole, has_dot, fraction, unit = match.group(1), match.group(2), match.group(3), match.group(4)
        if not whole and not fraction:
            raise SettingsError(f'time: invalid duration "{original}"')
        if not unit:
            raise SettingsError(f'time: missing unit in duration "{original}"')
        if unit not in _DURATION_UNITS:
            raise SettingsError(f'time: unknown unit "{unit}" in duration "{original}"')
        amount = Fraction(int(whole or "0"))
        if has_dot and fraction:
            amount += Fraction(int(fraction), 10 ** len(fraction))
        total_ns += int(amount * _DURATION_UNITS[unit])
        if total_ns > _MAX_DURATION_NS:
            raise SettingsError(f'time: invalid duration "{original}"')
        text = text[match.end():]

    microseconds = timedelta(microseconds=total_ns // 1000)
    return -microseconds if negative else microseconds


def _parse_int(text: str) -> int:
    try:
        return int(text, 0)
    except ValueError:
        if _LEGACY_OCTAL.fullmatch(text):
            return int(text.replace("_", ""), 8)
        raise


def _parse_bool(text: str) -> bool:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"invalid boolean {text!r}")


def _parse_float(text: str) -> float:
    return float(text)


def _parse_list(text: str) -> List[str]:
    if not text.strip():
        return []
    return text.split(",")


def _parse_map(text: str) -> Dict[str, str]:
    result: Dict[str, str] = {}
    if not text.strip():
        return result
    for pair in text.split(","):
        parts = pair.split(":")
        if len(parts) != 2:
            raise ValueError(f"invalid map item: {pair!r}")
        result[parts[0]] = parts[1]
    return result


def _setting(env: str, kind: str, parser: Callable[[str], object], default):
    metadata = {"env": env, "kind": kind, "parse": parser}
    if isinstance(default, (list, dict)):
        return field(default_factory=type(default), metadata=metadata)
    return field(default=default, metadata=metadata)


def _str(env: str, default: str = ""):
    return _setting(env, "string", str, default)


def _int(env: str, default: int = 0):
    return _setting(env, "int", _parse_int, default)


def _bool(env: str, default: bool = False):
    return _setting(env, "bool", _parse_bool, default)


def _float(env: str, default: float = 0.0):
    return _setting(env, "float", _parse_float, default)


def _duration(env: str, default: timedelta = timedelta(0)):
    return _setting(env, "duration", parse_duration, default)


def _list(env: str):
    return _setting(env, "list", _parse_list, [])


def _map(env: str):
    return _setting(env, "map", _parse_map, {})


@dataclass
class Settings:
    """All service settings; see :func:`load_settings` to read them from the environment."""

    grpc_unary_interceptor: Optional[Callable] = None

    host: str = _str("HOST", "0.0.0.0")
    port: int = _int("PORT", 8080)
    debug_host: str = _str("DEBUG_HOST", "0.0.0.0")
    debug_port: int = _int("DEBUG_PORT", 6070)

    grpc_uds: str = _str("GRPC_UDS")
    grpc_host: str = _str("GRPC_HOST", "0.0.0.0")
    grpc_port: int = _int("GRPC_PORT", 8081)
    grpc_server_tls_config: Optional[ssl.SSLContext] = None
    grpc_max_connection_age: timedelta = _duration("GRPC_MAX_CONNECTION_AGE", timedelta(hours=24))
    grpc_max_connection_age_grace: timedelta = _duration(
        "GRPC_MAX_CONNECTION_AGE_GRACE", timedelta(hours=1)
    )
    grpc_server_use_tls: bool = _bool("GRPC_SERVER_USE_TLS")
    grpc_server_tls_cert: str = _str("GRPC_SERVER_TLS_CERT")
    grpc_server_tls_key: str = _str("GRPC_SERVER_TLS_KEY")
    grpc_client_tls_cacert: str = _str("GRPC_CLIENT_TLS_CACERT")
    grpc_client_tls_san: str = _str("GRPC_CLIENT_TLS_SAN")

    log_level: str = _str("LOG_LEVEL", "WARN")
    log_format: str = _str("LOG_FORMAT", "text")

    config_type: str = _str("CONFIG_TYPE", "FILE")
    force_start_without_initial_config: bool = _bool("FORCE_START_WITHOUT_INITIAL_CONFIG")

    config_grpc_xds_node_id: str = _str("CONFIG_GRPC_XDS_NODE_ID", "default")
    config_grpc_xds_node_metadata: str = _str("CONFIG_GRPC_XDS_NODE_METADATA")
    config_grpc_xds_server_url: str = _str("CONFIG_GRPC_XDS_SERVER_URL", "localhost:18000")
    config_grpc_xds_server_connect_retry_interval: timedelta = _duration(
        "CONFIG_GRPC_XDS_SERVER_CONNECT_RETRY_INTERVAL", timedelta(seconds=3)
    )
    config_grpc_xds_client_additional_headers: Dict[str, str] = _map(
        "CONFIG_GRPC_XDS_CLIENT_ADDITIONAL_HEADERS"
    )

    config_grpc_xds_tls_config: Optional[ssl.SSLContext] = None
    config_grpc_xds_server_use_tls: bool = _bool("CONFIG_GRPC_XDS_SERVER_USE_TLS")
    config_grpc_xds_client_tls_cert: str = _str("CONFIG_GRPC_XDS_CLIENT_TLS_CERT")
    config_grpc_xds_client_tls_key: str = _str("CONFIG_GRPC_XDS_CLIENT_TLS_KEY")
    config_grpc_xds_server_tls_cacert: str = _str("CONFIG_GRPC_XDS_SERVER_TLS_CACERT")
    config_grpc_xds_server_tls_san: str = _str("CONFIG_GRPC_XDS_SERVER_TLS_SAN")

    xds_client_backoff_initial_interval: timedelta = _duration(
        "XDS_CLIENT_BACKOFF_INITIAL_INTERVAL", timedelta(seconds=10)
    )
    xds_client_backoff_max_interval: timedelta = _duration(
        "XDS_CLIENT_BACKOFF_MAX_INTERVAL", timedelta(seconds=60)
    )
    xds_client_backoff_random_factor: float = _float("XDS_CLIENT_BACKOFF_RANDOM_FACTOR", 0.5)
    xds_client_backoff_jitter: bool = _bool("XDS_CLIENT_BACKOFF_JITTER", True)

    xds_client_grpc_options_max_msg_size_in_bytes: int = _int("XDS_CLIENT_MAX_MSG_SIZE_IN_BYTES")

    use_dog_statsd: bool = _bool("USE_DOG_STATSD")
    use_dog_statsd_mogrifiers: List[str] = _list("USE_DOG_STATSD_MOGRIFIERS")
    use_statsd: bool = _bool("USE_STATSD", True)
    statsd_host: str = _str("STATSD_HOST", "localhost")
    statsd_port: int = _int("STATSD_PORT", 8125)
    extra_tags: Dict[str, str] = _map("EXTRA_TAGS")
    stats_flush_interval: timedelta = _duration("STATS_FLUSH_INTERVAL", timedelta(seconds=10))
    disable_stats: bool = _bool("DISABLE_STATS")
    use_prometheus: bool = _bool("USE_PROMETHEUS")
    prometheus_addr: str = _str("PROMETHEUS_ADDR", ":9090")
    prometheus_path: str = _str("PROMETHEUS_PATH", "/metrics")
    prometheus_mapper_yaml: str = _str("PROMETHEUS_MAPPER_YAML")

    runtime_path: str = _str("RUNTIME_ROOT", "/srv/runtime_data/current")
    runtime_subdirectory: str = _str("RUNTIME_SUBDIRECTORY")
    runtime_app_directory: str = _str("RUNTIME_APPDIRECTORY", "config")
    runtime_ignore_dot_files: bool = _bool("RUNTIME_IGNOREDOTFILES")
    runtime_watch_root: bool = _bool("RUNTIME_WATCH_ROOT", True)

    expiration_jitter_max_seconds: int = _int("EXPIRATION_JITTER_MAX_SECONDS", 300)
    local_cache_size_in_bytes: int = _int("LOCAL_CACHE_SIZE_IN_BYTES")
    near_limit_ratio: float = _float("NEAR_LIMIT_RATIO", 0.8)
    cache_key_prefix: str = _str("CACHE_KEY_PREFIX")
    backend_type: str = _str("BACKEND_TYPE", "redis")
    stop_cache_key_increment_when_overlimit: bool = _bool("STOP_CACHE_KEY_INCREMENT_WHEN_OVERLIMIT")

    rate_limit_response_headers_enabled: bool = _bool("LIMIT_RESPONSE_HEADERS_ENABLED")
    header_ratelimit_limit: str = _str("LIMIT_LIMIT_HEADER", "RateLimit-Limit")
    header_ratelimit_remaining: str = _str("LIMIT_REMAINING_HEADER", "RateLimit-Remaining")
    header_ratelimit_reset: str = _str("LIMIT_RESET_HEADER", "RateLimit-Reset")

    healthy_with_at_least_one_config_loaded: bool = _bool("HEALTHY_WITH_AT_LEAST_ONE_CONFIG_LOADED")

    redis_socket_type: str = _str("REDIS_SOCKET_TYPE", "unix")
    redis_type: str = _str("REDIS_TYPE", "SINGLE")
    redis_url: str = _str("REDIS_URL", "/var/run/nutcracker/ratelimit.sock")
    redis_pool_size: int = _int("REDIS_POOL_SIZE", 10)
    redis_auth: str = _str("REDIS_AUTH")
    redis_tls: bool = _bool("REDIS_TLS")
    redis_tls_config: Optional[ssl.SSLContext] = None
    redis_tls_client_cert: str = _str("REDIS_TLS_CLIENT_CERT")
    redis_tls_client_key: str = _str("REDIS_TLS_CLIENT_KEY")
    redis_tls_cacert: str = _str("REDIS_TLS_CACERT")
    redis_tls_skip_hostname_verification: bool = _bool("REDIS_TLS_SKIP_HOSTNAME_VERIFICATION")

    redis_pipeline_window: timedelta = _duration("REDIS_PIPELINE_WINDOW")
    redis_pipeline_limit: int = _int("REDIS_PIPELINE_LIMIT")
    redis_per_second: bool = _bool("REDIS_PERSECOND")
    redis_per_second_socket_type: str = _str("REDIS_PERSECOND_SOCKET_TYPE", "unix")
    redis_per_second_type: str = _str("REDIS_PERSECOND_TYPE", "SINGLE")
    redis_per_second_url: str = _str(
        "REDIS_PERSECOND_URL", "/var/run/nutcracker/ratelimitpersecond.sock"
    )
    redis_per_second_pool_size: int = _int("REDIS_PERSECOND_POOL_SIZE", 10)
    redis_per_second_auth: str = _str("REDIS_PERSECOND_AUTH")
    redis_per_second_tls: bool = _bool("REDIS_PERSECOND_TLS")
    redis_per_second_pipeline_window: timedelta = _duration("REDIS_PERSECOND_PIPELINE_WINDOW")
    redis_per_second_pipeline_limit: int = _int("REDIS_PERSECOND_PIPELINE_LIMIT")
    redis_health_check_active_connection: bool = _bool("REDIS_HEALTH_CHECK_ACTIVE_CONNECTION")

    memcache_host_port: List[str] = _list("MEMCACHE_HOST_PORT")
    memcache_max_idle_conns: int = _int("MEMCACHE_MAX_IDLE_CONNS", 2)
    memcache_srv: str = _str("MEMCACHE_SRV")
    memcache_srv_refresh: timedelta = _duration("MEMCACHE_SRV_REFRESH")
    memcache_tls: bool = _bool("MEMCACHE_TLS")
    memcache_tls_config: Optional[ssl.SSLContext] = None
    memcache_tls_client_cert: str = _str("MEMCACHE_TLS_CLIENT_CERT")
    memcache_tls_client_key: str = _str("MEMCACHE_TLS_CLIENT_KEY")
    memcache_tls_cacert: str = _str("MEMCACHE_TLS_CACERT")
    memcache_tls_skip_hostname_verification: bool = _bool("MEMCACHE_TLS_SKIP_HOSTNAME_VERIFICATION")

    global_shadow_mode: bool = _bool("SHADOW_MODE")
    merge_domain_configurations: bool = _bool("MERGE_DOMAIN_CONFIG")

    tracing_enabled: bool = _bool("TRACING_ENABLED")
    tracing_service_name: str = _str("TRACING_SERVICE_NAME", "RateLimit")
    tracing_service_namespace: str = _str("TRACING_SERVICE_NAMESPACE")
    tracing_service_instance_id: str = _str("TRACING_SERVICE_INSTANCE_ID")
    tracing_exporter_protocol: str = _str("TRACING_EXPORTER_PROTOCOL", "http")
    tracing_sampling_rate: float = _float("TRACING_SAMPLING_RATE", 1.0)


def _default_client_context() -> ssl.SSLContext:
    return tls_config_from_files("", "", "", CAType.SERVER_CA, False)


def _apply_tls(settings: Settings) -> None:
    if settings.redis_tls or settings.redis_per_second_tls:
        settings.redis_tls_config = tls_config_from_files(
            settings.redis_tls_client_cert,
            settings.redis_tls_client_key,
            settings.redis_tls_cacert,
            CAType.SERVER_CA,
            settings.redis_tls_skip_hostname_verification,
        )
    else:
        settings.redis_tls_config = _default_client_context()

    if settings.memcache_tls:
        settings.memcache_tls_config = tls_config_from_files(
            settings.memcache_tls_client_cert,
            settings.memcache_tls_client_key,
            settings.memcache_tls_cacert,
            CAType.SERVER_CA,
            settings.memcache_tls_skip_hostname_verification,
        )
    else:
        settings.memcache_tls_config = _default_client_context()

    if settings.grpc_server_use_tls:
        context = tls_config_from_files(
            settings.grpc_server_tls_cert,
            settings.grpc_server_tls_key,
            settings.grpc_client_tls_cacert,
            CAType.CLIENT_CA,
            False,
        )
        context.verify_mode = ssl.CERT_REQUIRED if settings.grpc_client_tls_cacert else ssl.CERT_NONE
        settings.grpc_server_tls_config = context

    if settings.config_grpc_xds_server_use_tls:
        settings.config_grpc_xds_tls_config = tls_config_from_files(
            settings.config_grpc_xds_client_tls_cert,
            settings.config_grpc_xds_client_tls_key,
            settings.config_grpc_xds_server_tls_cacert,
            CAType.SERVER_CA,
            False,
        )


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Read settings from ``environ`` (the process environment by default) and build TLS contexts."""
    if environ is None:
        environ = os.environ
    values = {}
    for spec in fields(Settings):
        env = spec.metadata.get("env")
        if env is None or env not in environ:
            continue
        raw = environ[env]
        try:
            values[spec.name] = spec.metadata["parse"](raw)
        except ValueError as exc:
            raise SettingsError(
                f"assigning {env} to {spec.name}: converting '{raw}' to type "
                f"{spec.metadata['kind']}. details: {exc}"
            ) from exc
    settings = Settings(**values)
    _apply_tls(settings)
    return settings