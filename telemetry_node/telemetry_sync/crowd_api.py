"""
Crowd counter API client
Counters expose GET {api_url}/api/occupancy behind HTTP Digest auth.
"""
import logging
from typing import Any, Optional

from ..telemetry_infrastructure.http_client import VendorHttpClient
from ..telemetry_infrastructure.models import CrowdDevice

logger = logging.getLogger(__name__)

# Only counters of this model line serve the occupancy endpoint
SUPPORTED_PATH_MARKER = "/a3dpc"


def is_supported_crowd_device(device: CrowdDevice) -> bool:
    return bool(device.api_url) and SUPPORTED_PATH_MARKER in device.api_url


class CrowdApiClient:
    """Fetches raw occupancy payloads; normalizing is left to the caller"""

    def __init__(self, http_client: VendorHttpClient, username: str, password: str):
        self.http_client = http_client
        self.username = username
        self.password = password

    @classmethod
    def from_config(cls, http_client: VendorHttpClient) -> "CrowdApiClient":
        from ..config import Config

        return cls(
            http_client,
            username=Config.get('crowd.username', 'user'),
            password=Config.get('crowd.password', ''),
        )

    def occupancy_url(self, device: CrowdDevice) -> str:
        return f"{device.api_url.rstrip('/')}/api/occupancy"

    async def fetch_occupancy(self, device: CrowdDevice) -> Optional[Any]:
        """
        GET the occupancy document for one counter.

        Raises:
            VendorRequestError: On timeout, non-2xx, empty or malformed body
        """
        url = self.occupancy_url(device)
        response = await self.http_client.get(url, digest_auth=(self.username, self.password))
        response.raise_for_status()
        payload = response.json()
        logger.debug(f"Crowd payload for {device.serial}: {payload}")
        return payload
