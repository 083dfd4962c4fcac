"""Per-provider circuit breakers."""

import logging
import threading
import time
from collections.abc import Awaitable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, TypeVar

from pydantic import BaseModel

from ai_gateway.core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitStats(BaseModel):
    """Snapshot of one breaker."""

    name: str
    state: CircuitState
    failure_count: int
    failure_threshold: int
    recovery_timeout: float
    last_failure_at: datetime | None = None
    retry_in: float | None = None


class CircuitBreaker:
    """Failure-tracking wrapper around calls to one provider.

    CLOSED lets calls through and counts consecutive failures. Reaching the
    threshold opens the circuit; OPEN rejects calls until the recovery
    timeout elapses, after which exactly one probe call is admitted
    (HALF_OPEN). The probe's outcome closes or re-opens the circuit.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize breaker.

        Args:
            name: Provider the breaker protects
            failure_threshold: Consecutive failures that open the circuit
            recovery_timeout: Seconds to stay OPEN before admitting a probe
            clock: Monotonic clock (injectable for tests)
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._last_failure_at: datetime | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def is_open(self) -> bool:
        """Whether a call made now would be rejected."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                return not self._recovery_elapsed()
            return self._state == CircuitState.HALF_OPEN and self._probe_in_flight

    def allow_request(self) -> bool:
        """Admit or reject one call, moving OPEN to HALF_OPEN when due.

        Returns:
            True if the caller may invoke the provider
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if not self._recovery_elapsed():
                    return False
                logger.info(f"[CircuitBreaker:{self.name}] Attempting reset (OPEN -> HALF_OPEN)")
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = True
                return True
            # HALF_OPEN: only the single probe may pass
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"[CircuitBreaker:{self.name}] Circuit closed ({self._state.value} -> CLOSED)")
            self._reset()

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = datetime.now(UTC)
            logger.warning(
                f"[CircuitBreaker:{self.name}] Failure "
                f"{self._failure_count}/{self.failure_threshold}: {error}"
            )
            if self._state == CircuitState.HALF_OPEN:
                logger.error(f"[CircuitBreaker:{self.name}] Circuit reopened (HALF_OPEN -> OPEN)")
                self._open()
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                logger.error(
                    f"[CircuitBreaker:{self.name}] Circuit opened after "
                    f"{self._failure_count} failures (CLOSED -> OPEN)"
                )
                self._open()

    def release_probe(self) -> None:
        """Give back a HALF_OPEN probe slot whose call ended without a verdict."""
        with self._lock:
            self._probe_in_flight = False

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` under breaker protection.

        Args:
            fn: Async callable performing the provider call
            *args: Positional arguments for fn
            **kwargs: Keyword arguments for fn

        Returns:
            Whatever fn returns

        Raises:
            CircuitOpenError: If the circuit rejects the call
        """
        if not self.allow_request():
            raise CircuitOpenError(self.name, retry_in=self._retry_in())

        try:
            result = await fn(*args, **kwargs)
        except Exception as e:
            if getattr(e, "trips_breaker", True):
                self.record_failure(e)
            else:
                self.release_probe()
            raise
        except BaseException:
            # Cancellation says nothing about provider health
            self.release_probe()
            raise

        self.record_success()
        return result

    def get_stats(self) -> CircuitStats:
        with self._lock:
            return CircuitStats(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
                last_failure_at=self._last_failure_at,
                retry_in=self._retry_in_locked(),
            )

    def force_open(self) -> None:
        """Force open the circuit (manual intervention)."""
        with self._lock:
            logger.warning(f"[CircuitBreaker:{self.name}] Circuit force-opened")
            self._open()

    def force_close(self) -> None:
        """Force close the circuit (manual intervention)."""
        with self._lock:
            logger.warning(f"[CircuitBreaker:{self.name}] Circuit force-closed")
            self._reset()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False

    def _reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._probe_in_flight = False

    def _recovery_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.recovery_timeout

    def _retry_in(self) -> float | None:
        with self._lock:
            return self._retry_in_locked()

    def _retry_in_locked(self) -> float | None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return None
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))


class CircuitBreakerRegistry:
    """One breaker per provider, created on first use."""

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, provider: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(provider)
            if breaker is None:
                breaker = CircuitBreaker(
                    provider,
                    failure_threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                    clock=self._clock,
                )
                self._breakers[provider] = breaker
            return breaker

    async def call(
        self, provider: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Run ``fn`` behind the named provider's breaker."""
        return await self.get(provider).call(fn, *args, **kwargs)

    def snapshot(self) -> dict[str, CircuitStats]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.get_stats() for breaker in breakers}
