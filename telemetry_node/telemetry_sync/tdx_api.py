"""
TDX (Transport Data eXchange) ETag client
One request per city returns every ETag pair of that city.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..telemetry_infrastructure.errors import RateLimitedError, VendorRequestError
from ..telemetry_infrastructure.http_client import VendorHttpClient
from ..telemetry_infrastructure.idempotency_cache import IdempotencyCache

logger = logging.getLogger(__name__)

TOKEN_CACHE_KEY = "tdx_token"
TOKEN_EARLY_EXPIRY_SECONDS = 300
MIN_TOKEN_TTL_SECONDS = 300
DEFAULT_EXPIRES_IN = 3600

DEFAULT_TOKEN_URL = "https://tdx.transportdata.tw/auth/realms/TDXConnect/protocol/openid-connect/token"
DEFAULT_API_BASE_URL = "https://tdx.transportdata.tw/api/basic/v2/Road/Traffic/Live/ETag/City"


def token_ttl(expires_in: Any) -> timedelta:
    """Cache tokens 5 minutes less than their lifetime, but never under 5 minutes."""
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        seconds = 0
    if seconds <= 0:
        seconds = DEFAULT_EXPIRES_IN
    return timedelta(seconds=max(seconds - TOKEN_EARLY_EXPIRY_SECONDS, MIN_TOKEN_TTL_SECONDS))


class TdxClient:
    """OIDC client-credentials token plus the per-city ETag live endpoint"""

    def __init__(
        self,
        http_client: VendorHttpClient,
        cache: IdempotencyCache,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_url: str = DEFAULT_TOKEN_URL,
        api_base_url: str = DEFAULT_API_BASE_URL,
    ):
        self.http_client = http_client
        self.cache = cache
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.api_base_url = api_base_url.rstrip('/')
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, http_client: VendorHttpClient, cache: IdempotencyCache) -> "TdxClient":
        from ..config import Config

        return cls(
            http_client,
            cache,
            client_id=Config.get('tdx.client_id'),
            client_secret=Config.get('tdx.client_secret'),
            token_url=Config.get('tdx.token_url', DEFAULT_TOKEN_URL),
            api_base_url=Config.get('tdx.api_base_url', DEFAULT_API_BASE_URL),
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def get_token(self) -> Optional[str]:
        """
        Bearer token from cache, or a fresh one from the token endpoint.

        Returns None when credentials are not configured.

        Raises:
            VendorRequestError: If the token endpoint fails
        """
        token = await self.cache.get(TOKEN_CACHE_KEY, expected_type=str)
        if token:
            return token

        async with self._token_lock:
            token = await self.cache.get(TOKEN_CACHE_KEY, expected_type=str)
            if token:
                return token
            if not self.configured:
                logger.warning("TDX credentials not configured")
                return None

            response = await self.http_client.post(
                self.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
            response.raise_for_status()
            payload = response.json()
            token = payload.get('access_token') if isinstance(payload, dict) else None
            if not token:
                raise VendorRequestError("TDX token response has no access_token", url=self.token_url)

            ttl = token_ttl(payload.get('expires_in'))
            await self.cache.set(TOKEN_CACHE_KEY, token, ttl=ttl)
            logger.info(f"Obtained TDX token (cached for {int(ttl.total_seconds())}s)")
            return token

    def city_url(self, city: str) -> str:
        return f"{self.api_base_url}/{city}"

    async def fetch_city(self, city: str) -> Optional[List[Dict[str, Any]]]:
        """
        All ETagPairLives entries for one city.

        Returns None when there is no token or the response carries no pairs.

        Raises:
            RateLimitedError: On HTTP 429
            VendorRequestError: On any other non-2xx or unreadable body
        """
        token = await self.get_token()
        if not token:
            return None

        url = self.city_url(city)
        response = await self.http_client.get(
            url,
            headers={"Authorization": f"Bearer {token}"},
            params={"top": 1000, "format": "JSON"},
        )
        if response.status == 429:
            raise RateLimitedError(f"TDX rate limit for city {city}", status=429, url=url)
        response.raise_for_status()

        payload = response.json()
        pairs = payload.get('ETagPairLives') if isinstance(payload, dict) else None
        if not isinstance(pairs, list) or not pairs:
            logger.warning(f"TDX response for city {city} has no ETagPairLives")
            return None
        return pairs
