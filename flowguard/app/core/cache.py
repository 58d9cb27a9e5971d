"""Response storage for the response cache.

Provides an in-memory store of named namespaces holding HTTP responses,
modelled on the browser Cache API: a ``CacheStorage`` opens namespaces by
name and each ``CacheNamespace`` maps request URLs to stored responses.
"""

from dataclasses import dataclass
import asyncio
from typing import Mapping

import httpx


# Headers describing the wire encoding of the original body. Stored bodies
# are already decoded, so these must not travel with the copy.
_ENCODING_HEADERS = frozenset({"content-encoding", "content-length", "transfer-encoding"})


@dataclass
class _StoredResponse:
    """Internal copy of a response body, status and headers."""

    status_code: int
    headers: list[tuple[str, str]]
    content: bytes

    @classmethod
    def from_response(
        cls,
        response: httpx.Response,
        extra_headers: Mapping[str, str] | None = None,
    ) -> "_StoredResponse":
        extra = {name.lower(): value for name, value in (extra_headers or {}).items()}
        headers = [
            (name, value)
            for name, value in response.headers.items()
            if name.lower() not in _ENCODING_HEADERS and name.lower() not in extra
        ]
        headers.extend(extra.items())
        return cls(
            status_code=response.status_code,
            headers=headers,
            content=response.content,
        )

    def to_response(self) -> httpx.Response:
        """Build a fresh response object so callers never share state."""
        return httpx.Response(
            status_code=self.status_code,
            headers=self.headers,
            content=self.content,
        )

    @property
    def size(self) -> int:
        return len(self.content)


class CacheNamespace:
    """A single named cache mapping URLs to responses."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._data: dict[str, _StoredResponse] = {}
        self._lock = asyncio.Lock()

    async def match(self, key: str) -> httpx.Response | None:
        """Return a copy of the stored response, or None if not found."""
        async with self._lock:
            entry = self._data.get(key)
            return entry.to_response() if entry is not None else None

    async def put(
        self,
        key: str,
        response: httpx.Response,
        extra_headers: Mapping[str, str] | None = None,
    ) -> None:
        """Store a copy of ``response`` under ``key``, replacing any entry.

        ``extra_headers`` are added to (or replace) the stored headers.
        The response body must already be read.
        """
        stored = _StoredResponse.from_response(response, extra_headers)
        async with self._lock:
            self._data[key] = stored

    async def delete(self, key: str) -> bool:
        """Remove an entry. Returns True if something was removed."""
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def keys(self) -> list[str]:
        async with self._lock:
            return list(self._data)

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()

    async def total_size(self) -> int:
        """Sum of stored body sizes in bytes."""
        async with self._lock:
            return sum(entry.size for entry in self._data.values())

    def __len__(self) -> int:
        return len(self._data)


class CacheStorage:
    """Collection of named cache namespaces.

    Namespaces are created on first ``open``. Deleting a namespace drops
    all of its entries at once, which is how old cache generations are
    invalidated.

    Example:
        >>> storage = CacheStorage()
        >>> api = await storage.open("caresync-api-v1")
        >>> await api.put("https://example.org/x", response)
    """

    def __init__(self) -> None:
        self._namespaces: dict[str, CacheNamespace] = {}
        self._lock = asyncio.Lock()

    async def open(self, name: str) -> CacheNamespace:
        async with self._lock:
            namespace = self._namespaces.get(name)
            if namespace is None:
                namespace = CacheNamespace(name)
                self._namespaces[name] = namespace
            return namespace

    async def has(self, name: str) -> bool:
        async with self._lock:
            return name in self._namespaces

    async def delete(self, name: str) -> bool:
        """Delete a namespace and everything in it."""
        async with self._lock:
            return self._namespaces.pop(name, None) is not None

    async def keys(self) -> list[str]:
        """Names of all existing namespaces."""
        async with self._lock:
            return list(self._namespaces)
