"""TTL-aware response cache with fetch strategies.

Responses are kept in versioned namespaces (``<prefix>-<asset>-<version>``)
so a new version invalidates every older generation at once. Each stored
response carries two metadata headers, the storage time and its TTL, both
integer milliseconds.

Strategies:
- cache-first: serve a fresh cached copy, otherwise fetch and store (an
  expired copy still answers when the network is down)
- network-first: fetch and store, fall back to the cache when offline
- stale-while-revalidate: serve the cached copy and refresh it in the
  background
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional

import httpx

from flowguard.app.core.cache import CacheStorage
from flowguard.app.core.config import settings
from flowguard.app.core.http_client import get_http_client
from flowguard.app.core.logging import get_log_context, get_logger
from flowguard.app.exceptions import CacheUnavailableError, InvalidURLError

logger = get_logger(__name__)

CACHED_TIME_HEADER = "x-cached-time"
CACHE_TTL_HEADER = "x-cache-ttl"

ASSET_CLASSES = ("static", "dynamic", "api", "images", "fonts")

STATIC_DESTINATIONS = frozenset({"style", "script", "document"})

_UNSAFE_CHARS = re.compile(r"[\s\x00-\x1f\x7f]")


def normalize_url(url: object, base_url: Optional[str] = None) -> str:
    """Validate ``url`` and return its normalised absolute form.

    Relative URLs are resolved against ``base_url`` when one is given.

    Raises:
        InvalidURLError: For non-string, empty, whitespace or control
            character laden values, unparsable URLs, non-http(s) schemes
            and URLs without a host.
    """
    if not isinstance(url, (str, httpx.URL)):
        raise InvalidURLError(url, "expected a string")

    raw = str(url).strip()
    if not raw:
        raise InvalidURLError(url, "empty URL")
    if _UNSAFE_CHARS.search(raw):
        raise InvalidURLError(url, "contains whitespace or control characters")

    try:
        parsed = httpx.URL(raw)
        if parsed.is_relative_url:
            if not base_url:
                raise InvalidURLError(url, "relative URL without a base URL")
            parsed = httpx.URL(base_url).join(parsed)
    except httpx.InvalidURL as e:
        raise InvalidURLError(url, str(e)) from e

    if parsed.scheme not in ("http", "https"):
        raise InvalidURLError(url, f"unsupported scheme {parsed.scheme!r}")
    if not parsed.host:
        raise InvalidURLError(url, "missing host")

    return str(parsed)


@dataclass(frozen=True)
class CacheNames:
    """Namespace names of one cache generation."""

    prefix: str
    version: str

    def name_for(self, asset: str) -> str:
        return f"{self.prefix}-{asset}-{self.version}"

    @property
    def static(self) -> str:
        return self.name_for("static")

    @property
    def dynamic(self) -> str:
        return self.name_for("dynamic")

    @property
    def api(self) -> str:
        return self.name_for("api")

    @property
    def images(self) -> str:
        return self.name_for("images")

    @property
    def fonts(self) -> str:
        return self.name_for("fonts")

    def all(self) -> tuple[str, ...]:
        return tuple(self.name_for(asset) for asset in ASSET_CLASSES)


@dataclass
class CacheStats:
    total_caches: int
    total_size: int
    entries: Dict[str, int] = field(default_factory=dict)


def _default_ttls() -> Dict[str, float]:
    return {
        "static": settings.cache_ttl_static,
        "dynamic": settings.cache_ttl_dynamic,
        "api": settings.cache_ttl_api,
        "images": settings.cache_ttl_images,
        "fonts": settings.cache_ttl_fonts,
    }


class ResponseCache:
    """Response cache over a ``CacheStorage`` with fetch strategies.

    Usage:
        cache = ResponseCache(client=http_client, base_url="https://api.example.org")
        response = await cache.network_first("/rest/v1/patients?id=eq.7")

    TTLs are given in seconds and stored in the metadata header as
    milliseconds. An entry is fresh while its age is below its TTL.
    """

    def __init__(
        self,
        storage: Optional[CacheStorage] = None,
        client: Optional[httpx.AsyncClient] = None,
        prefix: Optional[str] = None,
        version: Optional[str] = None,
        ttls: Optional[Dict[str, float]] = None,
        base_url: Optional[str] = None,
        cacheable_api_patterns: Optional[Iterable[str]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage or CacheStorage()
        self.names = CacheNames(
            prefix=prefix or settings.cache_prefix,
            version=version or settings.cache_version,
        )
        self.base_url = base_url if base_url is not None else (settings.cache_base_url or None)

        asset_ttls = _default_ttls()
        asset_ttls.update(ttls or {})
        self._ttl_by_name = {self.names.name_for(a): asset_ttls[a] for a in ASSET_CLASSES}

        patterns = (
            cacheable_api_patterns
            if cacheable_api_patterns is not None
            else settings.cacheable_api_patterns
        )
        self._api_patterns = [re.compile(p) for p in patterns]

        self._client = client
        self._clock = clock
        self._revalidations: set[asyncio.Task] = set()

    # -- metadata -----------------------------------------------------------

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def ttl_for(self, cache_name: str) -> float:
        return self._ttl_by_name.get(cache_name, self._ttl_by_name[self.names.api])

    def _is_fresh(self, response: httpx.Response) -> bool:
        try:
            cached_at = int(response.headers[CACHED_TIME_HEADER])
            ttl_ms = int(response.headers[CACHE_TTL_HEADER])
        except (KeyError, ValueError):
            return False
        return self._now_ms() - cached_at < ttl_ms

    async def _store(
        self, cache_name: str, key: str, response: httpx.Response, ttl: float
    ) -> None:
        namespace = await self.storage.open(cache_name)
        await namespace.put(
            key,
            response,
            extra_headers={
                CACHED_TIME_HEADER: str(self._now_ms()),
                CACHE_TTL_HEADER: str(int(ttl * 1000)),
            },
        )
        logger.debug(
            f"Cached response for {ttl}s",
            extra=get_log_context(url=key, cache_name=cache_name),
        )

    async def _match_fresh(self, cache_name: str, key: str) -> Optional[httpx.Response]:
        """Cached response if fresh; an expired entry is deleted."""
        if not await self.storage.has(cache_name):
            return None
        namespace = await self.storage.open(cache_name)
        cached = await namespace.match(key)
        if cached is None:
            return None
        if not self._is_fresh(cached):
            await self._discard(cache_name, key)
            return None
        return cached

    async def _discard(self, cache_name: str, key: str) -> None:
        namespace = await self.storage.open(cache_name)
        if await namespace.delete(key):
            logger.debug(
                "Expired cache entry removed",
                extra=get_log_context(url=key, cache_name=cache_name),
            )

    async def _match_any(self, cache_name: str, key: str) -> Optional[httpx.Response]:
        if not await self.storage.has(cache_name):
            return None
        namespace = await self.storage.open(cache_name)
        return await namespace.match(key)

    # -- API response cache -------------------------------------------------

    async def cache_api_response(
        self, url: str, response: httpx.Response, ttl: Optional[float] = None
    ) -> None:
        """Store a copy of ``response`` under ``url`` in the API namespace.

        The entry is keyed by the normalised URL, the same key the fetch
        strategies use.
        """
        key, name, ttl = self._resolve(url, self.names.api, ttl)
        await self._store(name, key, response, ttl)

    async def get_cached_api_response(self, url: str) -> Optional[httpx.Response]:
        """Fresh API response for ``url``, or None (expired entries are purged)."""
        key = normalize_url(url, self.base_url)
        return await self._match_fresh(self.names.api, key)

    # -- generations ----------------------------------------------------------

    async def clear_old_caches(self) -> list[str]:
        """Delete every namespace outside the current generation.

        Returns:
            Names of the deleted namespaces.
        """
        current = set(self.names.all())
        deleted = []
        for name in await self.storage.keys():
            if name not in current:
                await self.storage.delete(name)
                deleted.append(name)
        if deleted:
            logger.info(f"Deleted {len(deleted)} old caches: {', '.join(deleted)}")
        return deleted

    async def clear_all_caches(self) -> None:
        """Delete every namespace, current generation included."""
        for name in await self.storage.keys():
            await self.storage.delete(name)
        logger.info("Cleared all caches")

    async def clear_cache(self, cache_name: str) -> bool:
        return await self.storage.delete(cache_name)

    async def get_cache_stats(self) -> CacheStats:
        """Entry counts and body sizes of the current generation."""
        entries: Dict[str, int] = {}
        total_size = 0
        for name in self.names.all():
            if not await self.storage.has(name):
                entries[name] = 0
                continue
            namespace = await self.storage.open(name)
            entries[name] = len(await namespace.keys())
            total_size += await namespace.total_size()
        return CacheStats(
            total_caches=len(await self.storage.keys()),
            total_size=total_size,
            entries=entries,
        )

    # -- network --------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        return self._client if self._client is not None else get_http_client()

    async def _fetch(self, url: str) -> httpx.Response:
        return await self._http().get(url)

    def _resolve(
        self, url: str, cache_name: Optional[str], ttl: Optional[float]
    ) -> tuple[str, str, float]:
        key = normalize_url(url, self.base_url)
        name = cache_name or self.names.api
        return key, name, ttl if ttl is not None else self.ttl_for(name)

    # -- strategies -----------------------------------------------------------

    async def cache_first(
        self,
        url: str,
        *,
        cache_name: Optional[str] = None,
        ttl: Optional[float] = None,
    ) -> httpx.Response:
        """Serve a fresh cached response, otherwise fetch, store and return.

        An expired copy is kept until the network answers; if the fetch
        fails at the transport level the expired copy is served instead.

        Raises:
            InvalidURLError: If ``url`` is malformed
            httpx.HTTPError: If nothing is cached and the fetch fails
        """
        key, name, ttl = self._resolve(url, cache_name, ttl)

        cached = await self._match_any(name, key)
        if cached is not None and self._is_fresh(cached):
            logger.debug("Cache hit", extra=get_log_context(url=key, cache_name=name))
            return cached

        try:
            response = await self._fetch(key)
        except httpx.TransportError as e:
            if cached is None:
                raise
            logger.warning(
                f"Network failed ({type(e).__name__}), serving expired cached response",
                extra=get_log_context(url=key, cache_name=name),
            )
            return cached

        if response.is_success:
            await self._store(name, key, response, ttl)
        elif cached is not None:
            await self._discard(name, key)
        return response

    async def network_first(
        self,
        url: str,
        *,
        cache_name: Optional[str] = None,
        ttl: Optional[float] = None,
    ) -> httpx.Response:
        """Fetch and store; when the network fails serve any cached copy.

        Raises:
            InvalidURLError: If ``url`` is malformed
            CacheUnavailableError: If the network failed and nothing is cached
        """
        key, name, ttl = self._resolve(url, cache_name, ttl)

        try:
            response = await self._fetch(key)
        except httpx.TransportError as e:
            cached = await self._match_any(name, key)
            if cached is not None:
                logger.warning(
                    f"Network failed ({type(e).__name__}), serving cached response",
                    extra=get_log_context(url=key, cache_name=name),
                )
                return cached
            raise CacheUnavailableError(key) from e

        if response.is_success:
            await self._store(name, key, response, ttl)
        return response

    async def stale_while_revalidate(
        self,
        url: str,
        *,
        cache_name: Optional[str] = None,
        ttl: Optional[float] = None,
    ) -> httpx.Response:
        """Serve the cached copy at once and refresh it in the background.

        Without a fresh copy the refresh is awaited; if it fails, a stale
        copy is served when one exists.

        Raises:
            InvalidURLError: If ``url`` is malformed
            CacheUnavailableError: If the refresh failed and nothing is cached
        """
        key, name, ttl = self._resolve(url, cache_name, ttl)

        cached = await self._match_any(name, key)
        task = asyncio.create_task(self._revalidate(name, key, ttl))
        self._revalidations.add(task)
        task.add_done_callback(self._on_revalidation_done)

        if cached is not None and self._is_fresh(cached):
            return cached

        response = await task
        if response is not None:
            return response
        if cached is not None:
            return cached
        raise CacheUnavailableError(key)

    async def _revalidate(
        self, cache_name: str, key: str, ttl: float
    ) -> Optional[httpx.Response]:
        try:
            response = await self._fetch(key)
        except httpx.HTTPError as e:
            logger.warning(
                f"Background refresh failed: {type(e).__name__}: {e}",
                extra=get_log_context(url=key, cache_name=cache_name),
            )
            return None
        if response.is_success:
            await self._store(cache_name, key, response, ttl)
        return response

    def _on_revalidation_done(self, task: asyncio.Task) -> None:
        self._revalidations.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Background refresh crashed: {type(error).__name__}: {error}",
                exc_info=error,
            )

    async def wait_for_revalidations(self) -> None:
        """Wait for background refreshes started by stale-while-revalidate.

        Errors are not re-raised here; they were logged when the refresh ended.
        """
        if self._revalidations:
            await asyncio.gather(*list(self._revalidations), return_exceptions=True)

    # -- routing --------------------------------------------------------------

    def is_cacheable_api(self, url: str) -> bool:
        path = httpx.URL(url).path
        return any(pattern.search(path) for pattern in self._api_patterns)

    async def handle_fetch(
        self, url: str, destination: Optional[str] = None
    ) -> httpx.Response:
        """Fetch ``url`` with the strategy suited to its asset class.

        ``destination`` follows the Fetch API request destinations
        ("style", "script", "document", "image", "font", ...).
        """
        key = normalize_url(url, self.base_url)

        if destination in STATIC_DESTINATIONS:
            return await self.cache_first(key, cache_name=self.names.static)
        if destination == "font":
            return await self.cache_first(key, cache_name=self.names.fonts)
        if destination == "image":
            return await self.stale_while_revalidate(key, cache_name=self.names.images)
        if self.is_cacheable_api(key):
            return await self.network_first(key, cache_name=self.names.api)

        return await self._fetch(key)

    async def precache(self, urls: Iterable[str]) -> int:
        """Fetch ``urls`` into the static namespace.

        Failures are logged and skipped.

        Returns:
            Number of responses cached.
        """
        results = await asyncio.gather(*(self._precache_one(url) for url in urls))
        return sum(results)

    async def _precache_one(self, url: str) -> bool:
        try:
            key = normalize_url(url, self.base_url)
            response = await self._fetch(key)
        except (InvalidURLError, httpx.HTTPError) as e:
            logger.warning(
                f"Failed to precache: {type(e).__name__}: {e}",
                extra=get_log_context(url=str(url), cache_name=self.names.static),
            )
            return False
        if not response.is_success:
            return False
        await self._store(self.names.static, key, response, self.ttl_for(self.names.static))
        return True
