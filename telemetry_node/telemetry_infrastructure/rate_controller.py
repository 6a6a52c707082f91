"""
Rate / Circuit Controller
Per-source adaptive request spacing plus a circuit breaker that stops calling
vendor endpoints which keep failing.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import CircuitOpenError
from ..metrics import record_circuit_opened, record_circuit_rejection

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, skip calls
    HALF_OPEN = "half_open"  # One probe allowed


@dataclass
class RateState:
    """Mutable per-source state"""
    current_interval_ms: float
    last_request_time: Optional[float] = None
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    circuit_state: CircuitState = CircuitState.CLOSED
    circuit_opened_at: Optional[float] = None
    probe_in_flight: bool = False
    last_error: Optional[str] = None


class RateController:
    """
    Owns one RateState per source key.

    Interval: shrinks by `decrease_factor` after each success and grows by
    `increase_factor` after each failure, bounded to [min_interval_ms, max_interval_ms].

    Circuit: CLOSED -> OPEN after `failure_threshold` consecutive failures;
    OPEN -> HALF_OPEN once `cooldown_seconds` have passed; a success closes it,
    a failure in HALF_OPEN reopens it with a fresh cooldown.
    """

    def __init__(
        self,
        min_interval_ms: float = 500,
        max_interval_ms: float = 30000,
        initial_interval_ms: float = 2000,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        increase_factor: float = 2.0,
        decrease_factor: float = 0.9,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.min_interval_ms = min_interval_ms
        self.max_interval_ms = max_interval_ms
        self.initial_interval_ms = min(max(initial_interval_ms, min_interval_ms), max_interval_ms)
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.increase_factor = increase_factor
        self.decrease_factor = decrease_factor
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._states: Dict[str, RateState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(cls) -> "RateController":
        return cls(**cls._config_limits())

    @staticmethod
    def _config_limits() -> Dict[str, float]:
        from ..config import Config

        return {
            'min_interval_ms': Config.get_float('rate_limit.min_interval_ms', 500),
            'max_interval_ms': Config.get_float('rate_limit.max_interval_ms', 30000),
            'initial_interval_ms': Config.get_float('rate_limit.initial_interval_ms', 2000),
            'failure_threshold': Config.get_int('rate_limit.failure_threshold', 5),
            'cooldown_seconds': Config.get_float('rate_limit.cooldown_seconds', 60),
        }

    def configure(
        self,
        min_interval_ms: float,
        max_interval_ms: float,
        initial_interval_ms: float,
        failure_threshold: int,
        cooldown_seconds: float,
    ):
        """
        Apply new limits without dropping per-source state.

        Existing adaptive intervals are clamped into the new bounds.
        """
        self.min_interval_ms = min_interval_ms
        self.max_interval_ms = max_interval_ms
        self.initial_interval_ms = min(max(initial_interval_ms, min_interval_ms), max_interval_ms)
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        for state in self._states.values():
            state.current_interval_ms = min(max(state.current_interval_ms, min_interval_ms), max_interval_ms)
        logger.info(
            f"Rate limits updated: {min_interval_ms:.0f}-{max_interval_ms:.0f}ms, "
            f"threshold {failure_threshold}, cooldown {cooldown_seconds:.0f}s"
        )

    def reload_config(self, *_):
        """Re-read rate_limit.* from Config; usable as a SettingsProvider subscriber"""
        self.configure(**self._config_limits())

    def _state(self, key: str) -> RateState:
        state = self._states.get(key)
        if state is None:
            state = RateState(current_interval_ms=self.initial_interval_ms)
            self._states[key] = state
        return state

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def apply_rate_limit(self, key: str):
        """
        Wait until the current adaptive interval has passed since the last
        request for this key, then stamp a new request time.

        Calls for the same key are serialized so two overlapping ticks cannot
        both skip the wait.
        """
        async with self._lock(key):
            state = self._state(key)
            if state.last_request_time is not None:
                elapsed_ms = (self._clock() - state.last_request_time) * 1000
                wait_ms = state.current_interval_ms - elapsed_ms
                if wait_ms > 0:
                    logger.debug(f"[{key}] Rate limit: waiting {wait_ms:.0f}ms")
                    await self._sleep(wait_ms / 1000)
            state.last_request_time = self._clock()
            state.total_requests += 1

    async def record_success(self, key: str):
        state = self._state(key)
        state.consecutive_successes += 1
        state.consecutive_failures = 0
        state.successful_requests += 1
        state.probe_in_flight = False
        state.current_interval_ms = max(
            self.min_interval_ms, state.current_interval_ms * self.decrease_factor
        )
        if state.circuit_state != CircuitState.CLOSED:
            logger.info(f"[{key}] Recovery successful - circuit CLOSED")
            state.circuit_state = CircuitState.CLOSED
            state.circuit_opened_at = None

    async def record_failure(self, key: str, error: Optional[BaseException] = None):
        state = self._state(key)
        state.consecutive_failures += 1
        state.consecutive_successes = 0
        state.failed_requests += 1
        state.probe_in_flight = False
        state.last_error = str(error) if error is not None else None
        state.current_interval_ms = min(
            self.max_interval_ms, state.current_interval_ms * self.increase_factor
        )

        if state.circuit_state == CircuitState.HALF_OPEN:
            logger.warning(f"[{key}] Recovery probe failed - circuit OPEN again")
            self._open(key, state)
        elif state.circuit_state == CircuitState.CLOSED and state.consecutive_failures >= self.failure_threshold:
            logger.error(
                f"[{key}] Failure threshold ({self.failure_threshold}) reached - "
                f"opening circuit. Error: {error}"
            )
            self._open(key, state)

    def _open(self, key: str, state: RateState):
        state.circuit_state = CircuitState.OPEN
        state.circuit_opened_at = self._clock()
        record_circuit_opened(key)

    def is_circuit_open(self, key: str) -> bool:
        """
        True when calls to this source should be skipped.

        An OPEN circuit whose cooldown has elapsed moves to HALF_OPEN and lets
        exactly one caller through; others keep seeing it open until that
        probe reports back.
        """
        state = self._states.get(key)
        if state is None or state.circuit_state == CircuitState.CLOSED:
            return False

        if state.circuit_state == CircuitState.OPEN:
            opened_at = state.circuit_opened_at or 0.0
            if self._clock() - opened_at < self.cooldown_seconds:
                return True
            logger.info(f"[{key}] Cooldown elapsed - circuit HALF_OPEN")
            state.circuit_state = CircuitState.HALF_OPEN
            state.probe_in_flight = False

        # HALF_OPEN
        if state.probe_in_flight:
            return True
        state.probe_in_flight = True
        return False

    @asynccontextmanager
    async def guard(self, key: str):
        """
        Wrap one vendor call: reject when open, apply spacing, then record the outcome.

        Raises:
            CircuitOpenError: If the circuit is open
        """
        if self.is_circuit_open(key):
            record_circuit_rejection(key)
            raise CircuitOpenError(f"Circuit for [{key}] is open")
        try:
            await self.apply_rate_limit(key)
            yield
        except asyncio.CancelledError:
            self._state(key).probe_in_flight = False
            raise
        except Exception as e:
            await self.record_failure(key, e)
            raise
        else:
            await self.record_success(key)

    def get_stats(self, key: str) -> dict:
        """Get statistics for one source key"""
        state = self._states.get(key) or RateState(current_interval_ms=self.initial_interval_ms)
        success_rate = (
            state.successful_requests / state.total_requests * 100 if state.total_requests else 0.0
        )
        return {
            "key": key,
            "state": state.circuit_state.value,
            "total_requests": state.total_requests,
            "successful_requests": state.successful_requests,
            "failed_requests": state.failed_requests,
            "success_rate": success_rate,
            "current_interval_ms": state.current_interval_ms,
            "consecutive_successes": state.consecutive_successes,
            "consecutive_failures": state.consecutive_failures,
            "last_request_time": state.last_request_time,
            "is_circuit_open": state.circuit_state == CircuitState.OPEN,
            "circuit_opened_at": state.circuit_opened_at,
            "last_error": state.last_error,
        }

    def get_all_stats(self) -> Dict[str, dict]:
        return {key: self.get_stats(key) for key in list(self._states)}

    async def reset(self, key: str):
        """Manually reset a source to a fresh CLOSED state"""
        self._states.pop(key, None)
        logger.info(f"[{key}] Rate controller state reset")
