"""Immutable runtime configuration for the redirect engine."""

import os
from dataclasses import dataclass, field
from typing import Any, Optional

from reroute.shapes import SHAPE_BY_NAME

DEFAULT_PAGE_SIZE = 50
DEFAULT_MAX_PAGES = 100
DEFAULT_CACHE_TTL = 86400
DEFAULT_FETCH_TIMEOUT = 10.0
DEFAULT_CACHE_MAX_ENTRIES = 16

CACHE_BACKENDS = ("memory", "s3")


def env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RedirectConfig:
    """Everything the dispatcher, fetcher and store need, fixed at startup."""

    upstream_url: str = ""
    upstream_host: Optional[str] = None
    paginated: bool = True
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = DEFAULT_MAX_PAGES
    entry_shape: str = "auto"
    cache_enabled: bool = True
    cache_ttl: int = DEFAULT_CACHE_TTL
    cache_key: str = field(default="")
    cache_backend: str = "memory"
    cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES
    s3_bucket: Optional[str] = None
    s3_endpoint: Optional[str] = None
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT

    def __post_init__(self) -> None:
        if self.page_size < 1:
            raise ValueError(f"page_size must be positive, got {self.page_size}")
        if self.max_pages < 1:
            raise ValueError(f"max_pages must be positive, got {self.max_pages}")
        if self.cache_ttl < 0:
            raise ValueError(f"cache_ttl must not be negative, got {self.cache_ttl}")
        if self.fetch_timeout <= 0:
            raise ValueError(f"fetch_timeout must be positive, got {self.fetch_timeout}")
        if self.entry_shape not in SHAPE_BY_NAME:
            raise ValueError(f"Unknown entry shape: {self.entry_shape!r}")
        if self.cache_backend not in CACHE_BACKENDS:
            raise ValueError(f"Unknown cache backend: {self.cache_backend!r}")
        if self.cache_backend == "s3" and self.cache_enabled and not self.s3_bucket:
            raise ValueError("s3 cache backend needs a bucket")
        if not self.cache_key:
            object.__setattr__(self, "cache_key", self.upstream_url)

    @property
    def configured(self) -> bool:
        return bool(self.upstream_url)

    @classmethod
    def from_options(cls, options: Any) -> "RedirectConfig":
        """Build a config from mitmproxy's ``ctx.options`` (see proxy.Redirector.load)."""
        return cls(
            upstream_url=options.redirects_url,
            upstream_host=options.redirects_host or None,
            paginated=options.redirects_paginated,
            page_size=options.redirects_page_size,
            max_pages=options.redirects_max_pages,
            entry_shape=options.redirects_entry_shape,
            cache_enabled=options.redirects_cache,
            cache_ttl=options.redirects_cache_ttl,
            cache_key=options.redirects_cache_key,
            cache_backend=options.redirects_cache_backend,
            s3_bucket=options.redirects_s3_bucket or None,
            s3_endpoint=options.redirects_s3_endpoint or None,
            fetch_timeout=options.redirects_fetch_timeout,
        )
