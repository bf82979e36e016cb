from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Generic, TypeVar

from arang_chat.infra.metrics import metrics

logger = logging.getLogger("arang_chat.circuit")

T = TypeVar("T")


class CircuitState(str, Enum):
    closed = "closed"
    half_open = "half_open"
    open = "open"


class CircuitBreakerOpenError(RuntimeError):
    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(f"circuit_open:{name}")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker(Generic[T]):
    """Sliding-window breaker for outbound notification calls.

    ``failure_threshold`` failures inside ``window_seconds`` open the circuit.
    Once ``recovery_time`` has passed, up to ``half_open_max_calls`` probes go
    through: a successful probe closes the circuit, a failed one reopens it.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = None if timeout_seconds is None else max(0.01, timeout_seconds)
        self._clock = clock
        self._state = CircuitState.closed
        self._opened_at = 0.0
        self._failures: Deque[float] = deque()
        self._probes = 0
        self._lock = asyncio.Lock()
        self._publish()

    @property
    def state(self) -> CircuitState:
        return self._state

    def retry_after(self) -> float:
        if self._state is not CircuitState.open:
            return 0.0
        return max(0.0, self.recovery_time - (self._clock() - self._opened_at))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "recent_failures": len(self._failures),
            "retry_after_seconds": round(self.retry_after(), 3),
        }

    async def call(self, fn: Callable[..., T | Awaitable[T]], *args, **kwargs) -> T:
        await self._admit()
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self.timeout_seconds)
        except Exception as exc:  # noqa: BLE001
            await self._on_failure()
            logger.warning(
                "circuit_failure",
                extra={"extra": {"name": self.name, "state": self._state.value, "error": type(exc).__name__}},
            )
            raise
        await self._on_success()
        return result  # type: ignore[return-value]

    async def _admit(self) -> None:
        async with self._lock:
            if self._state is CircuitState.open:
                if self.retry_after() > 0:
                    raise CircuitBreakerOpenError(self.name, self.retry_after())
                self._transition(CircuitState.half_open)
            if self._state is CircuitState.half_open:
                if self._probes >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(self.name, 0.0)
                self._probes += 1

    async def _on_failure(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._state is CircuitState.half_open:
                self._trip(now)
                return
            self._failures.append(now)
            while self._failures and self._failures[0] < now - self.window_seconds:
                self._failures.popleft()
            if len(self._failures) >= self.failure_threshold:
                self._trip(now)

    async def _on_success(self) -> None:
        async with self._lock:
            self._failures.clear()
            if self._state is not CircuitState.closed:
                self._transition(CircuitState.closed)
                logger.info("circuit_closed", extra={"extra": {"name": self.name}})

    def _trip(self, now: float) -> None:
        self._opened_at = now
        self._failures.clear()
        self._transition(CircuitState.open)
        logger.warning("circuit_opened", extra={"extra": {"name": self.name, "recovery_time": self.recovery_time}})

    def _transition(self, state: CircuitState) -> None:
        self._state = state
        self._probes = 0
        self._publish()

    def _publish(self) -> None:
        metrics.record_circuit_state(self.name, self._state.value)
