"""
Circuit Breaker Pattern Implementation.

This module provides circuit breaker protection for the notification
transports (remote push and transactional email) so a provider outage fails
fast instead of stalling every dispatch behind retries.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Provider is down, requests fail fast without calling it
- HALF_OPEN: Testing if provider recovered, limited requests allowed

Usage:
    from shared.circuit_breaker import push_breaker, call_with_breaker
    import pybreaker

    try:
        result = await call_with_breaker(push_breaker, send_fn, *args)
    except pybreaker.CircuitBreakerError:
        # Circuit is OPEN - provider is down, skip the channel
        ...
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

import pybreaker

logger = logging.getLogger(__name__)


class CircuitBreakerLogger(pybreaker.CircuitBreakerListener):
    """Log circuit breaker state changes and failures."""

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        """Log state transitions."""
        if new_state.name == "open":
            logger.warning(
                f"Circuit breaker '{cb.name}' OPENED - "
                f"provider appears down, failing fast for {cb.reset_timeout}s"
            )
        elif new_state.name == "half-open":
            logger.info(
                f"Circuit breaker '{cb.name}' HALF-OPEN - "
                f"testing if provider recovered"
            )
        elif new_state.name == "closed":
            logger.info(
                f"Circuit breaker '{cb.name}' CLOSED - "
                f"provider recovered, resuming normal operation"
            )
        else:
            logger.info(
                f"Circuit breaker '{cb.name}' state: {old_state.name} -> {new_state.name}"
            )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: Exception) -> None:
        """Log failures that count toward opening the circuit."""
        logger.warning(
            f"Circuit breaker '{cb.name}' recorded failure: {type(exc).__name__}: {exc}"
        )


# Singleton registry of circuit breakers
_breakers: dict[str, pybreaker.CircuitBreaker] = {}
_logger_instance = CircuitBreakerLogger()


def get_circuit_breaker(
    name: str,
    fail_max: int = 5,
    reset_timeout: int = 30,
    exclude: list[type] | None = None,
) -> pybreaker.CircuitBreaker:
    """
    Get or create a circuit breaker for a provider.

    Args:
        name: Unique identifier for the circuit breaker
        fail_max: Number of consecutive failures before opening circuit
        reset_timeout: Seconds before attempting recovery (half-open)
        exclude: Exception types that should NOT count as failures

    Returns:
        CircuitBreaker instance (singleton per name)
    """
    if name not in _breakers:
        _breakers[name] = pybreaker.CircuitBreaker(
            name=name,
            fail_max=fail_max,
            reset_timeout=reset_timeout,
            exclude=exclude or [],
            listeners=[_logger_instance],
        )
        logger.info(
            f"Created circuit breaker '{name}' | "
            f"fail_max={fail_max} | reset_timeout={reset_timeout}s"
        )
    return _breakers[name]


# Expo push API - 5 failures before opening, 30 second reset
push_breaker = get_circuit_breaker(
    name="expo_push",
    fail_max=5,
    reset_timeout=30,
)

# Transactional email API - email is slower to recover, 60 second reset
email_breaker = get_circuit_breaker(
    name="email",
    fail_max=5,
    reset_timeout=60,
)


def _reraise(exc: Exception) -> None:
    raise exc


def _reset_timeout_elapsed(breaker: pybreaker.CircuitBreaker) -> bool:
    """Same check pybreaker's open state makes before allowing a trial call."""
    opened_at = breaker._state_storage.opened_at
    if opened_at is None:
        return True
    return datetime.now(UTC) >= opened_at + timedelta(seconds=breaker.reset_timeout)


async def call_with_breaker(
    breaker: pybreaker.CircuitBreaker,
    func: Callable,
    *args,
    **kwargs,
) -> Any:
    """
    Call async function with circuit breaker protection (native asyncio).

    pybreaker's call_async() requires Tornado which we don't use. The awaited
    call runs outside the breaker; its outcome is then replayed through the
    synchronous ``breaker.call`` so pybreaker keeps its own failure counting
    and state transitions.

    Once ``reset_timeout`` has elapsed on an OPEN breaker, the breaker is moved
    to HALF_OPEN and the real call is the trial: its failure reopens the
    circuit, its success closes it.

    Args:
        breaker: CircuitBreaker instance to use
        func: Async function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result from func

    Raises:
        pybreaker.CircuitBreakerError: If circuit is open (or opens on this failure)
        Exception: Any exception raised by func
    """
    if breaker.current_state == pybreaker.STATE_OPEN:
        if not _reset_timeout_elapsed(breaker):
            logger.warning(f"Circuit breaker '{breaker.name}' is OPEN, failing fast")
            raise pybreaker.CircuitBreakerError(
                f"Circuit breaker '{breaker.name}' is open, reset timeout not elapsed"
            )
        breaker.half_open()

    try:
        result = await func(*args, **kwargs)
    except Exception as e:
        breaker.call(_reraise, e)
        raise

    breaker.call(lambda: None)
    return result


def get_breaker_status() -> dict[str, dict[str, Any]]:
    """
    Get status of all circuit breakers for monitoring/health checks.

    Returns:
        Dict of {name: {state, fail_counter, reset_timeout}}
    """
    return {
        name: {
            "state": breaker.current_state,
            "fail_counter": breaker.fail_counter,
            "reset_timeout": breaker.reset_timeout,
        }
        for name, breaker in _breakers.items()
    }
