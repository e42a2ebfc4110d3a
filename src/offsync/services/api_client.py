"""
api_client.py - Transport to the remote CRUD service

HttpRemoteEndpoint carries queued mutations and health checks over aiohttp.
BeaconSender is the fire-and-forget path used while the process is shutting
down, when nothing can wait for a reply.
"""

import asyncio
import json
import logging
import threading
from typing import Any, Dict, Optional

import aiohttp
import requests

from .errors import PermanentRemoteError, TransientNetworkError

logger = logging.getLogger("ApiClient")

RETRYABLE_STATUSES = {408, 429}


class RemoteEndpoint:
    """
    Interface of the remote service as seen by the sync coordinator.

    send() receives {action, data, timestamp, syncId, source} and returns the
    decoded response, normally {success, data?, error?}. It raises
    TransientNetworkError for timeouts and connection failures and
    PermanentRemoteError for explicit rejections at the transport level.
    """

    async def send(self, endpoint: str, request: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    async def close(self):
        pass


def parse_response(status: int, body: str) -> Dict[str, Any]:
    """
    Classify an HTTP reply.

    5xx, 408 and 429 are transient; any other 4xx is a rejection. A 2xx body
    that is not JSON is treated as a plain success.
    """
    if status >= 500 or status in RETRYABLE_STATUSES:
        raise TransientNetworkError(f"HTTP {status}", status=status)
    if status >= 400:
        raise PermanentRemoteError(f"HTTP {status}: {body[:200]}", status=status)

    try:
        parsed = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return {"success": True, "data": body}

    if not isinstance(parsed, dict):
        return {"success": True, "data": parsed}
    return parsed


class HttpRemoteEndpoint(RemoteEndpoint):
    """POSTs JSON requests to named endpoint URLs."""

    def __init__(self, endpoints: Dict[str, str], timeout_ms: int = 30000,
                 health_endpoint: Optional[str] = None, api_key: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.endpoints = dict(endpoints)
        self.timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
        self.health_endpoint = health_endpoint
        self.headers = {
            # The spreadsheet backend only accepts simple requests
            "Content-Type": "text/plain",
            "Accept": "application/json",
        }
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.headers)
            self._owns_session = True
        return self._session

    def url_for(self, endpoint: str) -> str:
        url = self.endpoints.get(endpoint)
        if not url:
            raise PermanentRemoteError(f"No URL configured for endpoint '{endpoint}'")
        return url

    async def post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.post(
                url,
                data=json.dumps(payload),
                headers=self.headers,
                timeout=self.timeout,
            ) as response:
                body = await response.text()
                status = response.status
        except asyncio.TimeoutError:
            raise TransientNetworkError(f"Request to {url} timed out") from None
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Connection error: {e}") from e

        return parse_response(status, body)

    async def send(self, endpoint: str, request: Dict[str, Any]) -> Dict[str, Any]:
        return await self.post(self.url_for(endpoint), request)

    async def ping(self) -> bool:
        """Health check against the health endpoint (or the first configured one)."""
        url = self.health_endpoint or next(iter(self.endpoints.values()), None)
        if not url:
            return False
        try:
            await self.post(url, {"action": "ping", "data": None})
            return True
        except (TransientNetworkError, PermanentRemoteError) as e:
            logger.debug(f"Ping failed: {e}")
            return False

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


class BeaconSender:
    """
    One-shot transmissions that nobody waits for.

    Each send() runs a blocking requests.post on a daemon thread and returns
    immediately, so it still works from shutdown paths where the event loop
    is about to stop.
    """

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            'Content-Type': 'text/plain',
            'Accept': 'application/json'
        })

    def send(self, payload: Dict[str, Any]) -> threading.Thread:
        thread = threading.Thread(target=self._post, args=(payload,), daemon=True)
        thread.start()
        return thread

    def _post(self, payload: Dict[str, Any]):
        try:
            response = self.session.post(self.url, data=json.dumps(payload), timeout=self.timeout)
            logger.info(f"Beacon delivered: HTTP {response.status_code}")
        except requests.exceptions.RequestException as e:
            logger.warning(f"Beacon failed: {e}")
