"""
Circuit breaker for blocking ledger RPC calls.

Calls run in the default executor under a hard timeout. Only transport-level
failures (``UpstreamUnavailable`` and timeouts) count towards opening the
breaker; any other exception passes through without changing its state.
"""
import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Type

from common.error_handling import UpstreamUnavailable

logger = logging.getLogger(__name__)

class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5   # consecutive failures before opening
    reset_timeout: float = 30.0  # seconds open before a trial call is let through
    success_threshold: int = 2   # trial successes needed to close again
    timeout: float = 15.0        # per-call bound
    failure_exceptions: Tuple[Type[BaseException], ...] = (UpstreamUnavailable, asyncio.TimeoutError)

class CircuitBreakerException(Exception):
    """Raised instead of calling through while the breaker is open"""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker {name} is open (retry in {retry_after:.1f}s)")

class CircuitBreaker:
    def __init__(self, name: str, config: CircuitBreakerConfig = None, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.clock = clock
        self.reset()

    def reset(self):
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self.total_calls = 0
        self.total_failures = 0
        self.total_rejected = 0

    def _transition(self, state: CircuitState) -> None:
        level = logging.WARNING if state is CircuitState.OPEN else logging.INFO
        logger.log(level, f"Circuit breaker {self.name}: {self.state.value} -> {state.value}")
        self.state = state
        self.success_count = 0
        if state is CircuitState.OPEN:
            self.opened_at = self.clock()
        elif state is CircuitState.CLOSED:
            self.failure_count = 0
            self.opened_at = None

    def retry_after(self) -> float:
        """Seconds until an open breaker lets a trial call through"""
        if self.state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.reset_timeout - (self.clock() - self.opened_at))

    def _before_call(self) -> None:
        if self.state is CircuitState.OPEN:
            remaining = self.retry_after()
            if remaining > 0:
                self.total_rejected += 1
                raise CircuitBreakerException(self.name, remaining)
            self._transition(CircuitState.HALF_OPEN)

    def _record_success(self) -> None:
        if self.state is CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED)
        else:
            self.failure_count = 0

    def _record_failure(self) -> None:
        self.total_failures += 1
        if self.state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return
        self.failure_count += 1
        if self.failure_count >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN)

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Run blocking ``func`` in the default executor under the breaker"""
        self._before_call()
        self.total_calls += 1
        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(func, *args, **kwargs)),
                timeout=self.config.timeout,
            )
        except self.config.failure_exceptions:
            self._record_failure()
            raise
        self._record_success()
        return result

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "retry_after": round(self.retry_after(), 2),
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_rejected": self.total_rejected,
        }

LEDGER_CB_CONFIG = CircuitBreakerConfig(
    failure_threshold=5,
    reset_timeout=30.0,
    success_threshold=2,
    timeout=15.0,
)

ledger_circuit_breaker = CircuitBreaker("ledger_rpc", LEDGER_CB_CONFIG)

def get_all_circuit_breakers() -> Dict[str, Dict[str, Any]]:
    return {ledger_circuit_breaker.name: ledger_circuit_breaker.get_state()}
