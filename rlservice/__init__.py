"""Descriptor-based rate limit decision core: models, settings, stats, SRV lookup, TLS and the service."""

__version__ = "0.1.0"
__all__ = ["models", "utils", "tls", "srv", "stats", "settings", "service"]