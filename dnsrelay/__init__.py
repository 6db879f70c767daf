"""Resolving core of a forwarding DNS proxy: caching, upstream exchange, fastest address, DNS64 and rate limiting."""

__version__ = "0.1.0"

__all__ = [
    "cache",
    "helpers",
    "sema",
    "errors",
    "fastip",
    "ratelimit",
    "config",
    "exchange",
    "dns64",
    "proxy",
]