"""API key resolution on top of a swappable secure key-value store."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

logger = logging.getLogger(__name__)

TMDB_API_KEY_NAME = "tmdb.api_key"
MIN_API_KEY_LENGTH = 32


class ConfigurationError(ValueError):
    """Raised when no usable API key can be resolved."""


class SecureStore(Protocol):
    """Platform secret storage; implementations decide how values are protected."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemorySecureStore:
    """Process-local store, used in tests and when no platform store is wired in."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


def is_valid_api_key(key: str) -> bool:
    return len(key) >= MIN_API_KEY_LENGTH and key.isascii() and key.isalnum()


class ApiKeyProvider:
    """Resolve the TMDB key: cached value, then secure store, then bundled fallback."""

    def __init__(self, store: SecureStore, fallback_key: str | None = None) -> None:
        self._store = store
        self._fallback = (fallback_key or "").strip() or None
        self._cached: str | None = None
        self._lock = asyncio.Lock()

    async def get_api_key(self) -> str:
        if self._cached:
            return self._cached
        async with self._lock:
            if self._cached:
                return self._cached
            stored = await self._store.get(TMDB_API_KEY_NAME)
            if stored:
                self._cached = stored
                return stored
            if not self._fallback:
                raise ConfigurationError("TMDB API key is not configured")
            try:
                await self._store.set(TMDB_API_KEY_NAME, self._fallback)
            except OSError:
                logger.warning("Could not persist the bundled TMDB API key", exc_info=True)
            self._cached = self._fallback
            return self._fallback

    async def set_api_key(self, key: str) -> None:
        cleaned = key.strip()
        if not is_valid_api_key(cleaned):
            raise ConfigurationError("TMDB API keys are at least 32 alphanumeric characters")
        async with self._lock:
            await self._store.set(TMDB_API_KEY_NAME, cleaned)
            self._cached = cleaned

    async def clear_api_key(self) -> None:
        async with self._lock:
            await self._store.delete(TMDB_API_KEY_NAME)
            self._cached = None

    async def is_configured(self) -> bool:
        if self._cached or self._fallback:
            return True
        return bool(await self._store.get(TMDB_API_KEY_NAME))
