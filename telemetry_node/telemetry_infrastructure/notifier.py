"""
Station notification sender (LINE Notify)
Failures are logged and reported as False, never raised to the caller.
"""
import logging
from typing import Iterable, Optional

from .errors import VendorRequestError
from .http_client import VendorHttpClient
from .models import OfflineDevice
from ..metrics import record_notification

logger = logging.getLogger(__name__)

DEFAULT_LINE_NOTIFY_URL = "https://notify-api.line.me/api/notify"


def build_offline_message(station_name: str, devices: Iterable[OfflineDevice], threshold_minutes: int) -> str:
    """One message per station listing every device that just went offline."""
    lines = [f"{station_name} - 已離線超過{threshold_minutes}分鐘"]
    for device in devices:
        lines.append(f"{device.name} 裝置編號({device.serial})")
    return "\n".join(lines)


class LineNotifier:
    """Sends text (and optionally an image link) to a station's LINE Notify token"""

    def __init__(self, http_client: VendorHttpClient, url: str = DEFAULT_LINE_NOTIFY_URL):
        self.http_client = http_client
        self.url = url
        self.sent_count = 0
        self.failed_count = 0

    @classmethod
    def from_config(cls, http_client: VendorHttpClient) -> "LineNotifier":
        from ..config import Config

        return cls(http_client, Config.get('notification.line_notify_url', DEFAULT_LINE_NOTIFY_URL))

    async def send(self, target: str, message: str, image_url: Optional[str] = None) -> bool:
        """
        Deliver message to target (a LINE Notify access token).

        Args:
            target: Access token of the station's LINE Notify channel
            message: Text body
            image_url: Optional image shown as thumbnail and full size

        Returns:
            True if LINE accepted the message
        """
        if not target:
            logger.warning("Notification skipped: no delivery target configured")
            return False

        form = {"message": message}
        if image_url:
            form["imageThumbnail"] = image_url
            form["imageFullsize"] = image_url

        try:
            response = await self.http_client.post(
                self.url, data=form, headers={"Authorization": f"Bearer {target}"}
            )
            response.raise_for_status()
        except VendorRequestError as e:
            self.failed_count += 1
            record_notification(False)
            logger.error(f"LINE notification failed: {e}")
            return False
        except Exception as e:
            self.failed_count += 1
            record_notification(False)
            logger.error(f"Unexpected error sending LINE notification: {e}", exc_info=True)
            return False

        self.sent_count += 1
        record_notification(True)
        logger.info(f"LINE notification sent ({len(message)} chars)")
        return True
