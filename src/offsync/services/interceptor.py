"""
interceptor.py - Background request interceptor

Fronts every outbound request from the surrounding application and picks
a caching strategy per resource class:

- static resources: cache-first
- remote-service calls: network-first, stale cache on failure
- top-level navigation while offline: a cached or built-in fallback shell

It also arms the sync coordinator's reconnect trigger, so queued writes
drain whenever connectivity returns, independent of whichever caller
queued them.
"""

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional
from urllib.parse import urlsplit

import aiohttp

from .cache_store import CacheStore
from .config import SyncConfig
from .errors import TransientNetworkError
from .offline_mode import NetworkMonitor
from .sync_manager import SyncCoordinator

logger = logging.getLogger("Interceptor")

STATIC_NAMESPACE = "static:"
API_NAMESPACE = "api:"
RUNTIME_NAMESPACE = "runtime:"
NAMESPACES = (STATIC_NAMESPACE, API_NAMESPACE, RUNTIME_NAMESPACE)

STATIC_PATTERN = re.compile(r"\.(css|js|png|jpg|jpeg|gif|ico|svg|woff|woff2|ttf)$", re.IGNORECASE)
STATIC_HOSTS = {"fonts.googleapis.com", "unpkg.com"}
API_HOSTS = {"script.google.com"}
API_PATH_PREFIX = "/api/"
SHELL_PATH = "/index.html"

OFFLINE_SHELL = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Offline</title>
</head>
<body>
    <h1>Offline mode</h1>
    <p>You are currently offline. Changes are saved on this device and will sync automatically when the connection returns.</p>
    <button onclick="window.location.reload()">Reload</button>
</body>
</html>
"""


class ResourceClass(str, Enum):
    STATIC = "static"
    API = "api"
    NAVIGATION = "navigation"
    OTHER = "other"


@dataclass
class Request:
    url: str
    method: str = "GET"
    mode: str = "cors"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None

    @property
    def is_navigation(self) -> bool:
        return self.mode == "navigate"


@dataclass
class Response:
    url: str
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def to_cache(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("from_cache")
        return data

    @classmethod
    def restore(cls, data: Dict[str, Any]) -> "Response":
        return cls(from_cache=True, **data)


Fetcher = Callable[[Request], Awaitable[Response]]


class AiohttpFetcher:
    """Performs real requests. Connection failures surface as TransientNetworkError."""

    def __init__(self, timeout_ms: int = 30000):
        self.timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __call__(self, request: Request) -> Response:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        try:
            async with self._session.request(
                request.method, request.url, headers=request.headers, data=request.body
            ) as response:
                return Response(
                    url=request.url,
                    status=response.status,
                    headers={k: v for k, v in response.headers.items()},
                    body=await response.text(),
                )
        except asyncio.TimeoutError:
            raise TransientNetworkError(f"Request to {request.url} timed out") from None
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Connection error: {e}") from e

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()


def classify(request: Request) -> ResourceClass:
    parts = urlsplit(request.url)
    if STATIC_PATTERN.search(parts.path) or parts.hostname in STATIC_HOSTS:
        return ResourceClass.STATIC
    if parts.hostname in API_HOSTS or parts.path.startswith(API_PATH_PREFIX):
        return ResourceClass.API
    if request.is_navigation:
        return ResourceClass.NAVIGATION
    return ResourceClass.OTHER


def cache_key(namespace: str, request: Request) -> str:
    return f"{namespace}{request.method.upper()}:{request.url}"


class BackgroundInterceptor:
    """Applies per-resource caching strategies on top of CacheStore."""

    def __init__(self, cache: CacheStore, monitor: NetworkMonitor, coordinator: SyncCoordinator,
                 fetcher: Optional[Fetcher] = None, config: Optional[SyncConfig] = None):
        self.cache = cache
        self.monitor = monitor
        self.coordinator = coordinator
        self.config = config or cache.config
        self.fetcher = fetcher or AiohttpFetcher(self.config.request_timeout_ms)

        coordinator.arm_reconnect_trigger()

    async def fetch(self, request: Request) -> Response:
        """Serve a request using the strategy for its resource class."""
        if not request.url.startswith("http"):
            return await self.fetcher(request)

        resource = classify(request)
        if request.is_navigation and self.monitor.is_offline():
            return await self._offline_navigation(request)
        if resource == ResourceClass.STATIC:
            return await self.cache_first(request, STATIC_NAMESPACE, self.config.static_cache_ttl_ms)
        if resource == ResourceClass.API:
            return await self.network_first(request, API_NAMESPACE, self.config.cache_default_ttl_ms)
        return await self.network_first(request, RUNTIME_NAMESPACE, self.config.cache_default_ttl_ms)

    async def cache_first(self, request: Request, namespace: str, ttl_ms: int) -> Response:
        key = cache_key(namespace, request)
        cached = await self.cache.get(key)
        if cached is not None:
            logger.debug(f"Serving from cache: {request.url}")
            return Response.restore(cached)

        try:
            response = await self._fetch_with_timeout(request)
        except TransientNetworkError:
            stale = await self.cache.get(key, allow_stale=True)
            if stale is not None:
                return Response.restore(stale)
            if request.is_navigation:
                return await self._offline_navigation(request)
            raise

        if response.ok:
            await self.cache.set(key, response.to_cache(), ttl_ms)
        return response

    async def network_first(self, request: Request, namespace: str, ttl_ms: int) -> Response:
        key = cache_key(namespace, request)
        try:
            response = await self._fetch_with_timeout(request)
        except TransientNetworkError:
            logger.info(f"Network failed, trying cache: {request.url}")
            cached = await self.cache.get(key, allow_stale=True)
            if cached is not None:
                return Response.restore(cached)
            if request.is_navigation:
                return await self._offline_navigation(request)
            raise

        if response.ok and request.method.upper() == "GET":
            await self.cache.set(key, response.to_cache(), ttl_ms)
        return response

    async def _fetch_with_timeout(self, request: Request) -> Response:
        try:
            return await asyncio.wait_for(self.fetcher(request), timeout=self.config.request_timeout)
        except asyncio.TimeoutError:
            raise TransientNetworkError(f"Request to {request.url} timed out") from None

    async def _offline_navigation(self, request: Request) -> Response:
        for namespace in (RUNTIME_NAMESPACE, STATIC_NAMESPACE):
            cached = await self.cache.get(cache_key(namespace, request), allow_stale=True)
            if cached is not None:
                return Response.restore(cached)
        return await self.offline_shell(request.url)

    async def offline_shell(self, url: str = SHELL_PATH) -> Response:
        """The cached application shell, or a minimal built-in page."""
        parts = urlsplit(url)
        shell_url = f"{parts.scheme}://{parts.netloc}{SHELL_PATH}" if parts.netloc else SHELL_PATH
        cached = await self.cache.get(
            cache_key(STATIC_NAMESPACE, Request(url=shell_url)), allow_stale=True
        )
        if cached is not None:
            return Response.restore(cached)
        return Response(
            url=url,
            status=200,
            headers={"Content-Type": "text/html"},
            body=OFFLINE_SHELL,
        )

    # ==================== Cache Management ====================

    async def precache(self, urls: Iterable[str]) -> int:
        """Fetch and store static resources ahead of time. Returns how many were cached."""
        cached = 0
        for url in urls:
            request = Request(url=url)
            try:
                response = await self._fetch_with_timeout(request)
            except TransientNetworkError as e:
                logger.warning(f"Precache failed for {url}: {e}")
                continue
            if response.ok:
                await self.cache.set(
                    cache_key(STATIC_NAMESPACE, request),
                    response.to_cache(),
                    self.config.static_cache_ttl_ms,
                )
                cached += 1
        logger.info(f"Precached {cached} static resources")
        return cached

    async def clear_namespace(self, namespace: str) -> int:
        if namespace not in NAMESPACES:
            raise ValueError(f"Unknown cache namespace: {namespace!r}")
        return await self.cache.clear(namespace)

    async def cache_status(self) -> Dict[str, Any]:
        status = {}
        for namespace in NAMESPACES:
            status[namespace.rstrip(":")] = (await self.cache.status(namespace))["entries"]
        return {"caches": status, "total": sum(status.values())}

    async def close(self):
        close = getattr(self.fetcher, "close", None)
        if close is not None:
            await close()
