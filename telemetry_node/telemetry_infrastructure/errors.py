"""
Exception types shared by the sync engine
"""
from typing import Optional


class TelemetryError(Exception):
    """Base class for telemetry sync errors"""
    pass


class VendorRequestError(TelemetryError):
    """Transient vendor failure: timeout, non-2xx, empty or malformed body"""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class RateLimitedError(VendorRequestError):
    """Vendor answered HTTP 429"""
    pass


class CircuitOpenError(TelemetryError):
    """Raised when a source circuit is open and the call is rejected"""
    pass


class PersistenceError(TelemetryError):
    """Repository failure; aborts the whole sync tick"""
    pass
