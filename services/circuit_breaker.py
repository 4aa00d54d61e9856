"""
Circuit Breaker Pattern for External API Calls
Prevents cascading failures when a provider is down
"""

import time
import logging
from typing import Any, Callable, Dict, Optional
from enum import Enum

from config import Config
from utils.exception_handler import ProviderUnavailable

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls due to failures
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """
    In-process circuit breaker for one provider

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: `failure_threshold` consecutive failures; requests blocked for `recovery_timeout` seconds
    - HALF_OPEN: one trial request; success closes, failure re-opens
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_timeout: int = 300,
        expected_exception: type = ProviderUnavailable,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False
        self.stats = {'total_calls': 0, 'successful_calls': 0, 'failed_calls': 0, 'blocked_calls': 0}

    def _should_attempt_reset(self) -> bool:
        return self.opened_at is not None and (self._clock() - self.opened_at) >= self.recovery_timeout

    def _before_call(self) -> None:
        self.stats['total_calls'] += 1
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
                logger.info(f"Circuit {self.name} entering HALF_OPEN state")
            else:
                self.stats['blocked_calls'] += 1
                raise ProviderUnavailable(f"Circuit breaker {self.name} is OPEN", provider=self.name)

        if self.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                self.stats['blocked_calls'] += 1
                raise ProviderUnavailable(f"Circuit breaker {self.name} is HALF_OPEN", provider=self.name)
            self._trial_in_flight = True

    async def async_call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute async function with circuit breaker protection"""
        self._before_call()
        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        except BaseException:
            # Only provider-availability failures count; release a half-open trial slot
            self._trial_in_flight = False
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self.stats['successful_calls'] += 1
        if self.state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit {self.name} recovered - now CLOSED")
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self._trial_in_flight = False

    def _on_failure(self) -> None:
        self.stats['failed_calls'] += 1
        self.failure_count += 1
        self._trial_in_flight = False
        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()
            logger.warning(f"Circuit {self.name} failed in HALF_OPEN - returning to OPEN")
        elif self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()
            logger.error(f"Circuit {self.name} opened due to {self.failure_count} consecutive failures")

    def reset(self) -> None:
        """Manually reset the circuit breaker"""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self._trial_in_flight = False
        logger.info(f"Circuit {self.name} manually reset")

    def get_state(self) -> Dict:
        return {
            'name': self.name,
            'state': self.state.value,
            'failure_count': self.failure_count,
            'stats': dict(self.stats),
        }


# Global circuit breakers for external providers
circuit_breakers = {
    'rubies': CircuitBreaker(
        'rubies',
        failure_threshold=Config.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        recovery_timeout=Config.CIRCUIT_BREAKER_RECOVERY_SECONDS,
    ),
    'bilal': CircuitBreaker(
        'bilal',
        failure_threshold=Config.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        recovery_timeout=Config.CIRCUIT_BREAKER_RECOVERY_SECONDS,
    ),
}


def get_all_breaker_states() -> Dict:
    return {name: breaker.get_state() for name, breaker in circuit_breakers.items()}
