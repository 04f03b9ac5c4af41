"""Chunking defaults with an optional remote source and a time-to-live cache.

``ChunkingDefaults`` is injected into the service. It returns the configured
fallback options unless a source is supplied, in which case it fetches
options from the source at most once per TTL. Source failures fall back to
the last good value (or the configured options) with a warning.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from loguru import logger

from semantic_index.chunking import ChunkingOptions
from semantic_index.errors import ConfigurationError

DEFAULT_TTL_SECONDS = 30 * 60

# Remote field name -> ChunkingOptions field
_REMOTE_FIELDS = {
    "chunkSize": "target_tokens",
    "overlapSize": "overlap_tokens",
    "strategy": "strategy",
    "minChunkSize": "min_chunk_tokens",
    "preserveWhitespace": "preserve_whitespace",
}


class ChunkingDefaultsSource(Protocol):
    """Supplies chunking defaults from an external configuration service."""

    async def fetch(self) -> ChunkingOptions | None:
        """Return the current defaults, or None when the service has none."""
        ...


class HttpChunkingDefaultsSource:
    """Fetches chunking defaults from a remote configuration API.

    The service must answer ``GET /api/healthcheck`` with a truthy ``data``
    field, and ``GET /api/ai/chunking/info`` with
    ``{"status": true, "data": {"default_config": {"chunkSize": ..., ...}}}``.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        fallback: ChunkingOptions | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.fallback = fallback or ChunkingOptions()
        self._client = client

    async def fetch(self) -> ChunkingOptions | None:
        if self._client is not None:
            return await self._fetch(self._client)
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_seconds) as client:
            return await self._fetch(client)

    async def _fetch(self, client: httpx.AsyncClient) -> ChunkingOptions | None:
        health = await client.get(f"{self.base_url}/api/healthcheck")
        health.raise_for_status()
        if not health.json().get("data"):
            logger.warning("Remote configuration service is offline")
            return None

        response = await client.get(f"{self.base_url}/api/ai/chunking/info")
        response.raise_for_status()
        payload = response.json()
        if not payload.get("status"):
            logger.warning(f"Remote chunking config unavailable: {payload.get('msg')}")
            return None

        remote = (payload.get("data") or {}).get("default_config")
        if not remote:
            return None
        return options_from_remote(remote, self.fallback)


def options_from_remote(remote: dict[str, Any], fallback: ChunkingOptions) -> ChunkingOptions:
    """Build options from a remote config payload, keeping fallback values for missing fields.

    Raises:
        ConfigurationError: If the remote values are invalid
    """
    overrides = {field: remote[name] for name, field in _REMOTE_FIELDS.items() if name in remote}
    return fallback.with_overrides(**overrides)


@dataclass(frozen=True)
class CachedValue:
    """A cached value with its expiry time (in the cache clock's units)."""

    value: ChunkingOptions
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class ChunkingDefaults:
    """Time-to-live cache around chunking defaults.

    Args:
        fallback: Options used without a source, or when the source fails
        source: Optional remote source
        ttl_seconds: How long a fetched value stays fresh
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        fallback: ChunkingOptions | None = None,
        source: ChunkingDefaultsSource | None = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fallback = fallback or ChunkingOptions()
        self.source = source
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._cached: CachedValue | None = None

    @property
    def cached(self) -> CachedValue | None:
        return self._cached

    async def get(self) -> ChunkingOptions:
        """Return current defaults, refreshing from the source once the cache expires."""
        if self.source is None:
            return self.fallback

        now = self.clock()
        if self._cached is not None and self._cached.is_fresh(now):
            return self._cached.value

        try:
            fetched = await self.source.fetch()
        except (httpx.HTTPError, ValueError, ConfigurationError) as e:
            logger.warning(f"Failed to load remote chunking defaults, using local values: {e}")
            fetched = None

        if fetched is None:
            return self._cached.value if self._cached is not None else self.fallback

        self._cached = CachedValue(value=fetched, expires_at=now + self.ttl_seconds)
        logger.info(
            f"Loaded remote chunking defaults: target={fetched.target_tokens} "
            f"overlap={fetched.overlap_tokens} strategy={fetched.strategy.value}"
        )
        return fetched

    def invalidate(self) -> None:
        self._cached = None
