"""
Vendor HTTP client for the sync engine
One shared aiohttp session with bounded timeouts; every vendor client goes
through it so timeouts and connection errors surface the same way.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .errors import VendorRequestError

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    """Status code and decoded body of a vendor response"""
    status: int
    body: str
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def raise_for_status(self):
        if not self.ok:
            raise VendorRequestError(
                f"HTTP {self.status} from {self.url}", status=self.status, url=self.url
            )

    def json(self) -> Any:
        """Decode body as JSON; empty or malformed bodies are transient source errors."""
        if not self.body or not self.body.strip():
            raise VendorRequestError(f"Empty response body from {self.url}", status=self.status, url=self.url)
        try:
            return json.loads(self.body)
        except ValueError as e:
            raise VendorRequestError(
                f"Malformed JSON from {self.url}: {e}", status=self.status, url=self.url
            ) from e


class VendorHttpClient:
    """
    Async HTTP client shared by crowd, parking and traffic vendor clients.

    Features:
    - Lazily created session, recreated if closed
    - Total / connect / read timeouts
    - Timeouts, connection errors and undecodable bodies raised as VendorRequestError
    - Request and error counters
    """

    DEFAULT_TIMEOUT = 30

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT, max_connections: int = 20):
        self.timeout_seconds = timeout_seconds
        self.max_connections = max_connections
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()
        self._request_count = 0
        self._error_count = 0
        self._total_latency_ms = 0.0

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                timeout = aiohttp.ClientTimeout(
                    total=self.timeout_seconds,
                    connect=min(10, self.timeout_seconds),
                    sock_read=self.timeout_seconds,
                )
                connector = aiohttp.TCPConnector(limit=self.max_connections, ttl_dns_cache=300)
                self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
            return self._session

    async def close(self):
        """Close the underlying session"""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def get(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        digest_auth: Optional[Tuple[str, str]] = None,
    ) -> HttpResponse:
        """
        GET url.

        Args:
            url: Absolute URL
            headers: Extra request headers
            params: Query string parameters
            digest_auth: (username, password) for HTTP Digest authentication
        """
        kwargs: Dict[str, Any] = {"headers": headers, "params": params}
        if digest_auth is not None:
            kwargs["middlewares"] = (
                aiohttp.DigestAuthMiddleware(login=digest_auth[0], password=digest_auth[1]),
            )
        return await self._request("GET", url, **kwargs)

    async def post(
        self,
        url: str,
        data: Any = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> HttpResponse:
        """POST url with a form dict / raw string (data) or a JSON document (json_body)."""
        return await self._request("POST", url, data=data, json=json_body, headers=headers)

    async def _request(self, method: str, url: str, **kwargs) -> HttpResponse:
        session = await self._get_session()
        self._request_count += 1
        start = time.monotonic()
        try:
            async with session.request(method, url, **kwargs) as response:
                body = await response.text()
                return HttpResponse(status=response.status, body=body, url=url)
        except asyncio.TimeoutError as e:
            self._error_count += 1
            raise VendorRequestError(f"Timeout after {self.timeout_seconds}s: {method} {url}", url=url) from e
        except aiohttp.ClientError as e:
            self._error_count += 1
            raise VendorRequestError(f"{method} {url} failed: {e}", url=url) from e
        except UnicodeDecodeError as e:
            self._error_count += 1
            raise VendorRequestError(f"Undecodable body from {method} {url}: {e}", url=url) from e
        finally:
            self._total_latency_ms += (time.monotonic() - start) * 1000

    def get_stats(self) -> dict:
        return {
            "requests": self._request_count,
            "errors": self._error_count,
            "avg_latency_ms": (self._total_latency_ms / self._request_count) if self._request_count else 0.0,
        }
