"""
Telemetry Sync Infrastructure
"""
from .errors import (
    TelemetryError,
    VendorRequestError,
    RateLimitedError,
    CircuitOpenError,
    PersistenceError,
)
from .idempotency_cache import IdempotencyCache, should_skip
from .rate_controller import RateController, CircuitState
from .http_client import VendorHttpClient, HttpResponse
from .repository import Repository, InMemoryRepository
from .sql_repository import SqlRepository
from .notifier import LineNotifier, build_offline_message
from .uploader import TransportationUploader
from .sqlalchemy_base import init_sqlalchemy, create_tables, close_sqlalchemy, health_check

__all__ = [
    # Errors
    'TelemetryError',
    'VendorRequestError',
    'RateLimitedError',
    'CircuitOpenError',
    'PersistenceError',
    'IdempotencyCache',
    'should_skip',
    'RateController',
    'CircuitState',
    'VendorHttpClient',
    'HttpResponse',
    # Persistence
    'Repository',
    'InMemoryRepository',
    'SqlRepository',
    'init_sqlalchemy',
    'create_tables',
    'close_sqlalchemy',
    'health_check',
    # Collaborators
    'LineNotifier',
    'build_offline_message',
    'TransportationUploader',
]
