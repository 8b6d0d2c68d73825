"""
Retry with exponential backoff and a per-operation circuit breaker.

RetryManager is the only place that decides whether a failure is retried or
surfaced. Retry state and circuit state are keyed by operation id and are
independent of each other; each execute() call gets its own attempt counter
while the circuit for an id is shared across calls.
"""

import asyncio
import functools
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from config import retry_settings, circuit_settings

from .cancellation import CancellationToken
from .errors import CancellationError, CircuitOpenError, EngineError, OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: bool = True
    # Error codes that may be retried. Empty means "ask the error".
    retryable_errors: List[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_attempts=retry_settings.max_attempts,
            initial_delay=retry_settings.initial_delay,
            max_delay=retry_settings.max_delay,
            backoff_factor=retry_settings.backoff_factor,
            jitter=retry_settings.jitter,
        )


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 60.0  # seconds

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=circuit_settings.failure_threshold,
            recovery_timeout=circuit_settings.recovery_timeout,
        )


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RetryState:
    operation_id: str
    attempts: int = 0
    last_attempt: float = 0.0
    next_delay: float = 0.0
    errors: List[EngineError] = field(default_factory=list)


@dataclass
class CircuitState:
    operation_id: str
    state: CircuitStatus = CircuitStatus.CLOSED
    failures: int = 0
    last_failure: float = 0.0


class RetryManager:
    """Runs async operations with retry/backoff and optional circuit breaking.

    clock, sleep and rng are injectable so tests can drive time explicitly.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.config = config or RetryConfig()
        self.circuit_config = circuit_config
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._retry_states: Dict[str, RetryState] = {}
        self._circuit_states: Dict[str, CircuitState] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: Optional[str] = None,
        *,
        cancellation: Optional[CancellationToken] = None,
    ) -> T:
        """Run operation until it succeeds, fails terminally, or attempts run out."""
        op_id = operation_id or self._generate_operation_id()
        self._check_circuit(op_id)

        state = RetryState(operation_id=op_id)
        self._retry_states[op_id] = state

        while True:
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            try:
                if cancellation is not None:
                    result = await cancellation.run(operation())
                else:
                    result = await operation()
            except asyncio.CancelledError:
                raise
            except CancellationError:
                # Not a failure of the operation itself; no circuit accounting.
                raise
            except Exception as exc:
                error = EngineError.from_exception(exc)
                state.errors.append(error)
                state.attempts += 1
                state.last_attempt = self._clock()

                if not self._should_retry(error, state.attempts):
                    self._record_failure(op_id)
                    if error is exc:
                        raise
                    raise error from exc

                state.next_delay = self.calculate_delay(state.attempts)
                logger.warning(
                    f'Retrying operation "{op_id}" (attempt {state.attempts}/{self.config.max_attempts}) '
                    f"in {state.next_delay:.2f}s: {error.message}"
                )
                if cancellation is not None:
                    cancellation.raise_if_cancelled()
                    await cancellation.run(self._sleep(state.next_delay))
                else:
                    await self._sleep(state.next_delay)
            else:
                self.reset_state(op_id)
                return result

    async def execute_with_timeout(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout: float,
        operation_id: Optional[str] = None,
        *,
        cancellation: Optional[CancellationToken] = None,
    ) -> T:
        """Like execute(), with the whole retried run (attempts and backoff
        sleeps) raced against one deadline. Hitting the deadline counts as a
        circuit failure and surfaces as OperationTimeoutError."""
        op_id = operation_id or self._generate_operation_id()
        try:
            return await asyncio.wait_for(
                self.execute(operation, op_id, cancellation=cancellation), timeout=timeout
            )
        except asyncio.TimeoutError:
            error = OperationTimeoutError(
                f'Operation "{op_id}" timed out after {timeout}s',
                context={"timeout": timeout, "operation_id": op_id},
            )
            state = self._retry_states.get(op_id)
            if state is not None:
                state.errors.append(error)
                state.last_attempt = self._clock()
            self._record_failure(op_id)
            logger.warning(f'Operation "{op_id}" hit its {timeout}s deadline')
            raise error from None

    def calculate_delay(self, attempts: int) -> float:
        """Backoff delay after the given number of failed attempts."""
        cfg = self.config
        delay = cfg.initial_delay * (cfg.backoff_factor ** (attempts - 1))
        delay = min(delay, cfg.max_delay)
        if cfg.jitter:
            delay = delay * (0.5 + self._rng() * 0.5)
        return delay

    def get_retry_state(self, operation_id: str) -> Optional[RetryState]:
        return self._retry_states.get(operation_id)

    def get_circuit_state(self, operation_id: str) -> Optional[CircuitState]:
        if not self.circuit_config:
            return None
        return self._circuit_states.get(operation_id)

    def reset_state(self, operation_id: str) -> None:
        """Clear retry state and close the circuit after a success."""
        self._retry_states.pop(operation_id, None)
        if not self.circuit_config:
            return
        circuit = self._circuit(operation_id)
        if circuit.state != CircuitStatus.CLOSED:
            logger.warning(f'Circuit for "{operation_id}" closed after successful call')
        circuit.state = CircuitStatus.CLOSED
        circuit.failures = 0

    def cleanup(self) -> None:
        """Drop stale retry states and move expired open circuits to half-open."""
        now = self._clock()
        max_age = self.config.max_delay * 10
        for op_id, state in list(self._retry_states.items()):
            if now - state.last_attempt > max_age:
                del self._retry_states[op_id]

        if self.circuit_config:
            for circuit in self._circuit_states.values():
                if (circuit.state == CircuitStatus.OPEN
                        and now - circuit.last_failure > self.circuit_config.recovery_timeout):
                    circuit.state = CircuitStatus.HALF_OPEN

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _should_retry(self, error: EngineError, attempts: int) -> bool:
        if attempts >= self.config.max_attempts:
            return False
        if self.config.retryable_errors:
            return error.code in self.config.retryable_errors
        return error.is_retryable()

    def _circuit(self, operation_id: str) -> CircuitState:
        circuit = self._circuit_states.get(operation_id)
        if circuit is None:
            circuit = CircuitState(operation_id=operation_id)
            self._circuit_states[operation_id] = circuit
        return circuit

    def _check_circuit(self, operation_id: str) -> None:
        if not self.circuit_config:
            return
        circuit = self._circuit(operation_id)
        if circuit.state != CircuitStatus.OPEN:
            return
        if self._clock() - circuit.last_failure > self.circuit_config.recovery_timeout:
            circuit.state = CircuitStatus.HALF_OPEN
            logger.warning(f'Circuit for "{operation_id}" half-open, allowing trial call')
            return
        raise CircuitOpenError(operation_id, context={
            "operation_id": operation_id,
            "circuit_state": circuit.state.value,
            "failures": circuit.failures,
        })

    def _record_failure(self, operation_id: str) -> None:
        if not self.circuit_config:
            return
        circuit = self._circuit(operation_id)
        circuit.failures += 1
        circuit.last_failure = self._clock()
        if (circuit.state == CircuitStatus.HALF_OPEN
                or circuit.failures >= self.circuit_config.failure_threshold):
            if circuit.state != CircuitStatus.OPEN:
                logger.warning(
                    f'Circuit for "{operation_id}" opened after {circuit.failures} failure(s)'
                )
            circuit.state = CircuitStatus.OPEN

    @staticmethod
    def _generate_operation_id() -> str:
        return f"retry_{uuid.uuid4().hex[:12]}"


def retry(config: Optional[RetryConfig] = None, circuit_config: Optional[CircuitBreakerConfig] = None):
    """Decorator running an async function under its own RetryManager.
    The operation id is the function's qualified name."""
    manager = RetryManager(config, circuit_config)

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await manager.execute(lambda: func(*args, **kwargs), func.__qualname__)

        wrapper.retry_manager = manager  # type: ignore[attr-defined]
        return wrapper

    return decorator
