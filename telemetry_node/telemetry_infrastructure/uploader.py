"""
Forwarding of new readings to the transportation reporting service
"""
import logging
from typing import Any, Dict, Optional

from .http_client import VendorHttpClient
from .models import DeviceFamily
from ..metrics import record_upload

logger = logging.getLogger(__name__)


class TransportationUploader:
    """
    Fire-and-forget uploader.

    upload_reading() never raises; a disabled uploader reports success so
    callers do not need to special-case it.
    """

    def __init__(
        self,
        http_client: VendorHttpClient,
        enabled: bool = False,
        upload_url: Optional[str] = None,
        api_key: Optional[str] = None,
    ):
        self.http_client = http_client
        self.enabled = enabled
        self.upload_url = upload_url
        self.api_key = api_key

    @classmethod
    def from_config(cls, http_client: VendorHttpClient) -> "TransportationUploader":
        from ..config import Config

        return cls(
            http_client,
            enabled=Config.get_bool('upload.enabled', False),
            upload_url=Config.get('upload.upload_url'),
            api_key=Config.get('upload.api_key'),
        )

    async def upload_reading(self, family: DeviceFamily, serial: str, payload: Dict[str, Any]) -> bool:
        if not self.enabled:
            return True
        if not self.upload_url:
            logger.warning(f"Upload enabled but no upload_url configured; dropping {family.value} {serial}")
            record_upload(family.value, False)
            return False

        headers = {"X-API-Key": self.api_key} if self.api_key else None
        body = {"dataType": family.value, "deviceSerial": serial, "data": payload}
        try:
            response = await self.http_client.post(self.upload_url, json_body=body, headers=headers)
            response.raise_for_status()
        except Exception as e:
            logger.warning(f"Upload of {family.value} reading for {serial} failed: {e}")
            record_upload(family.value, False)
            return False

        record_upload(family.value, True)
        logger.debug(f"Uploaded {family.value} reading for {serial}")
        return True
