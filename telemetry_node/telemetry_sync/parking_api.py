"""
Parking gateway API clients
Five gateway vendors are in the field; the vendor is recognised from the
device's API URL. Each fetch returns vendor-neutral ParkingCounts or None.
"""
import asyncio
import hashlib
import json
import logging
import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from ..telemetry_infrastructure.errors import VendorRequestError
from ..telemetry_infrastructure.http_client import VendorHttpClient
from ..telemetry_infrastructure.idempotency_cache import IdempotencyCache
from ..telemetry_infrastructure.models import ParkingCounts, ParkingDevice
from .normalizers import (
    normalize_parking_mp,
    normalize_parking_nb,
    normalize_parking_nhr,
    normalize_parking_yp,
)

logger = logging.getLogger(__name__)

MP_SID_CACHE_KEY = "mp_sid"
MP_SID_TTL = timedelta(hours=1)
MP_KEY_SALT = "microprogram@parkPLS"

DEFAULT_MP_BASE_URL = "https://www.stables.com.tw/api"
DEFAULT_NHR_URL = "http://20.57.184.214:2520/api/nhr/getCarNumInfo"


class ParkingSystem(Enum):
    MP = "MicroProgram"
    YP = "YouParking"
    NB = "Nobel"
    AP = "AltoB Parking"
    NHR = "NHR System"


def detect_parking_system(api_url: Optional[str]) -> ParkingSystem:
    """Vendor from URL; anything unrecognised is an MP gateway."""
    if not api_url:
        return ParkingSystem.MP
    if "youparking.com.tw" in api_url:
        return ParkingSystem.YP
    if "nobel168.com.tw" in api_url:
        return ParkingSystem.NB
    if "parking/altobParking" in api_url:
        return ParkingSystem.AP
    if "stables.com.tw" in api_url:
        return ParkingSystem.MP
    if "/nhr/" in api_url:
        return ParkingSystem.NHR
    return ParkingSystem.MP


# ---------------------------------------------------------------------------
# YP envelope
# ---------------------------------------------------------------------------

def encode_yp(text: str, now: datetime) -> str:
    """
    Shift every character by the current second and hex-encode it.

    Output: "7B-23-...|2024-05-01 10:20:31:000"; the seconds field of the
    trailing stamp is the shift.
    """
    stamp = now.strftime("%Y-%m-%d %H:%M:%S") + ":000"
    shift = now.second
    encoded = "-".join(format(ord(c) + shift, "X") for c in text)
    return f"{encoded}|{stamp}"


def decode_yp(body: str) -> str:
    """
    Inverse of encode_yp for a vendor response.

    Raises:
        ValueError: If the envelope is malformed
    """
    codes, _, stamp = body.strip().partition("|")
    if not stamp:
        raise ValueError("YP response has no key stamp")
    shift = int(stamp.split(":")[2])
    chars = []
    for code in codes.split("-"):
        cleaned = re.sub(r"[^0-9a-zA-Z]", "", code)
        chars.append(chr(int(cleaned, 16) - shift))
    return "".join(chars)


def mp_key_value(sid: str, serial: str) -> str:
    return hashlib.sha1(f"{MP_KEY_SALT}+{sid}+{serial}".encode("utf-8")).hexdigest()


class ParkingApiClient:
    """
    One client for every parking vendor.

    Transport problems raise VendorRequestError so the caller can count a
    failure; vendor-level refusals (retCode/status flags) give None.
    """

    def __init__(
        self,
        http_client: VendorHttpClient,
        cache: IdempotencyCache,
        mp_account: Optional[str] = None,
        mp_password: Optional[str] = None,
        mp_base_url: str = DEFAULT_MP_BASE_URL,
        nhr_url: str = DEFAULT_NHR_URL,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.http_client = http_client
        self.cache = cache
        self.mp_account = mp_account
        self.mp_password = mp_password
        self.mp_base_url = mp_base_url.rstrip('/')
        self.nhr_url = nhr_url
        self._clock = clock or datetime.now
        self._mp_sid_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, http_client: VendorHttpClient, cache: IdempotencyCache) -> "ParkingApiClient":
        from ..config import Config

        return cls(
            http_client,
            cache,
            mp_account=Config.get('parking.mp_account'),
            mp_password=Config.get('parking.mp_password'),
            mp_base_url=Config.get('parking.mp_base_url', DEFAULT_MP_BASE_URL),
            nhr_url=Config.get('parking.nhr_url', DEFAULT_NHR_URL),
        )

    async def fetch_counts(self, device: ParkingDevice, system: ParkingSystem) -> Optional[ParkingCounts]:
        if system == ParkingSystem.MP:
            return await self._fetch_mp(device)
        if system == ParkingSystem.YP:
            return await self._fetch_yp(device)
        if system == ParkingSystem.NB:
            return await self._fetch_nb(device)
        if system == ParkingSystem.NHR:
            return await self._fetch_nhr(device)
        # AltoB gateways have no pull API
        return None

    # -- MP ---------------------------------------------------------------

    async def get_mp_sid(self) -> Optional[str]:
        """Session id for the MP API, cached for an hour; one login at a time."""
        sid = await self.cache.get(MP_SID_CACHE_KEY, expected_type=str)
        if sid:
            return sid

        async with self._mp_sid_lock:
            sid = await self.cache.get(MP_SID_CACHE_KEY, expected_type=str)
            if sid:
                return sid

            if not self.mp_account or not self.mp_password:
                logger.warning("MP credentials not configured, skipping MP login")
                return None

            response = await self.http_client.post(
                f"{self.mp_base_url}/apiLogin",
                data={"account": self.mp_account, "passwd": self.mp_password},
            )
            response.raise_for_status()
            payload = response.json()
            first = payload[0] if isinstance(payload, list) and payload else None
            sid = first.get('sid') if isinstance(first, dict) else None
            if not sid:
                logger.error("MP login response has no sid")
                return None

            await self.cache.set(MP_SID_CACHE_KEY, sid, ttl=MP_SID_TTL)
            logger.info("Obtained MP session id (valid for 1 hour)")
            return sid

    async def _fetch_mp(self, device: ParkingDevice) -> Optional[ParkingCounts]:
        sid = await self.get_mp_sid()
        if not sid:
            return None
        response = await self.http_client.post(
            f"{self.mp_base_url}/getCarNumInfo",
            data={"sid": sid, "pno": device.serial, "keyVal": mp_key_value(sid, device.serial)},
        )
        response.raise_for_status()
        payload = response.json()
        counts = normalize_parking_mp(payload)
        if counts is None and isinstance(payload, list) and payload and isinstance(payload[0], dict):
            if payload[0].get('retCode') == 0:
                logger.error(f"MP API error for {device.serial}: {payload[0].get('retMsg')}")
        return counts

    # -- YP ---------------------------------------------------------------

    async def _fetch_yp(self, device: ParkingDevice) -> Optional[ParkingCounts]:
        request = json.dumps(
            {"Type": 1, "Target": device.serial, "API": "GetCarSpace"}, separators=(',', ':')
        )
        response = await self.http_client.post(
            device.api_url,
            data=encode_yp(request, self._clock()),
            headers={"Content-Type": "text/plain; charset=utf-8"},
        )
        response.raise_for_status()
        try:
            document = json.loads(decode_yp(response.body))
        except (ValueError, IndexError) as e:
            raise VendorRequestError(f"Undecodable YP response for {device.serial}: {e}", url=device.api_url) from e
        return normalize_parking_yp(document)

    # -- NB ---------------------------------------------------------------

    async def _fetch_nb(self, device: ParkingDevice) -> Optional[ParkingCounts]:
        response = await self.http_client.post(device.api_url)
        response.raise_for_status()
        return normalize_parking_nb(response.json(), device.capacity)

    # -- NHR --------------------------------------------------------------

    async def _fetch_nhr(self, device: ParkingDevice) -> Optional[ParkingCounts]:
        response = await self.http_client.post(self.nhr_url, data={"pno": device.serial})
        response.raise_for_status()
        return normalize_parking_nhr(response.json(), device.capacity)
