"""
shared/utils/resilience.py
Circuit breakers and retry policies for downstream services
(gemini, geocoding, razorpay).
"""

import logging
from typing import Dict

from pybreaker import CircuitBreaker, CircuitBreakerListener
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


class _LoggingListener(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        logger.warning(
            f"Circuit breaker '{cb.name}' changed state: "
            f"{old_state.name if old_state else None} -> {new_state.name}"
        )


# ── Circuit Breaker ──────────────────────────────────────────

class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self, fail_max: int = 5, reset_timeout: int = 60):
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout
        self.breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, service_name: str) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=self.fail_max,
                reset_timeout=self.reset_timeout,
                name=service_name,
                listeners=[_LoggingListener()],
            )
        return self.breakers[service_name]

    def states(self) -> Dict[str, str]:
        return {name: breaker.current_state for name, breaker in self.breakers.items()}


circuit_breaker_manager = CircuitBreakerManager()


# ── Retry ────────────────────────────────────────────────────

def transient_retry(*exception_types: type, attempts: int = 3):
    """
    Retry decorator for transient downstream failures:
    exponential backoff, re-raises the last error once attempts run out.
    """
    return retry(
        retry=retry_if_exception_type(exception_types or (Exception,)),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
