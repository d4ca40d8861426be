"""
Circuit breaker for the WhatsApp API.

Stops calling the API after repeated failures and lets a single trial
request through once the cooldown has passed.

States: CLOSED (normal), OPEN (blocking), HALF_OPEN (one trial call).
"""
import enum
import time
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, TypeVar

import structlog

from polytrade.routes.metrics import track_circuit_breaker_state
from polytrade.services.messaging_errors import CircuitBreakerOpenError

logger = structlog.get_logger()

T = TypeVar("T")

MINIMUM_REQUESTS_FOR_RATE = 5


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Counts failures since the last counter reset and opens at the threshold.

    Counters are reset every `counter_reset_after` requests instead of being
    kept in a true sliding window.
    """

    def __init__(
        self,
        failure_threshold: int = 10,
        timeout: float = 300.0,
        counter_reset_after: int = 1000,
        clock=time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout  # seconds
        self.counter_reset_after = counter_reset_after
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failures = 0
        self.successes = 0
        self.requests = 0
        self._last_failure_time: float | None = None
        self._state_changed_at = clock()
        self._trial_in_flight = False

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation` under breaker protection.

        Only the call holding the half-open trial slot decides whether the
        breaker closes or reopens.

        Raises:
            CircuitBreakerOpenError: if the breaker is open, or a half-open
                trial call is already running.
        """
        is_trial = self._before_call()

        try:
            result = await operation()
        except Exception:
            self._on_failure(is_trial)
            raise
        except BaseException:
            # Cancelled mid-call: free the trial slot without counting a failure
            if is_trial:
                self._trial_in_flight = False
            raise

        self._on_success(is_trial)
        return result

    def _before_call(self) -> bool:
        """Admit a call, returning True if it is the half-open trial."""
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self._transition_to(CircuitState.HALF_OPEN)
            else:
                raise CircuitBreakerOpenError(
                    "Circuit breaker is OPEN - WhatsApp service unavailable",
                    self.next_attempt_time(),
                )

        if self.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitBreakerOpenError(
                    "Circuit breaker is HALF_OPEN - trial request in progress",
                    self.next_attempt_time(),
                )
            self._trial_in_flight = True
            return True

        return False

    def _on_success(self, is_trial: bool = False) -> None:
        self.successes += 1
        self.requests += 1

        if is_trial and self.state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            logger.info("circuit_breaker_trial_succeeded")
            self._transition_to(CircuitState.CLOSED)
            self._reset_counters()

        self._clean_old_metrics()

    def _on_failure(self, is_trial: bool = False) -> None:
        self.failures += 1
        self.requests += 1
        self._last_failure_time = self._clock()

        logger.warning(
            "circuit_breaker_failure_recorded",
            failures=self.failures,
            requests=self.requests,
            failure_rate=round(self.failures / self.requests, 2),
        )

        if self.state == CircuitState.HALF_OPEN:
            if not is_trial:
                # Straggler admitted while CLOSED; the trial decides
                self._clean_old_metrics()
                return
            self._trial_in_flight = False
            logger.error("circuit_breaker_trial_failed")
            self._transition_to(CircuitState.OPEN)
        elif self.state == CircuitState.CLOSED and self.failures >= self.failure_threshold:
            logger.error(
                "circuit_breaker_threshold_reached",
                threshold=self.failure_threshold,
                failures=self.failures,
                timeout_seconds=self.timeout,
            )
            self._transition_to(CircuitState.OPEN)

        self._clean_old_metrics()

    def _should_attempt_reset(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time >= self.timeout

    def _seconds_until_attempt(self) -> float:
        if self._last_failure_time is None:
            return 0.0
        return max(0.0, self._last_failure_time + self.timeout - self._clock())

    def next_attempt_time(self) -> datetime:
        """Wall-clock time at which an open breaker lets a trial call through."""
        return datetime.now(timezone.utc) + timedelta(seconds=self._seconds_until_attempt())

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self.state
        self.state = new_state
        self._state_changed_at = self._clock()
        if new_state != CircuitState.HALF_OPEN:
            self._trial_in_flight = False

        track_circuit_breaker_state(new_state.value)
        logger.info(
            "circuit_breaker_state_transition",
            from_state=old_state.value,
            to_state=new_state.value,
        )

    def _reset_counters(self) -> None:
        self.failures = 0
        self.successes = 0
        self.requests = 0

    def _clean_old_metrics(self) -> None:
        # TODO: replace with a time-bucketed failure rate so old failures age out
        if self.requests > self.counter_reset_after:
            logger.debug("circuit_breaker_counters_reset", requests=self.requests)
            self._reset_counters()

    def get_metrics(self) -> dict:
        """Get current breaker state and counters."""
        failure_rate = 0.0
        if self.requests >= MINIMUM_REQUESTS_FOR_RATE:
            failure_rate = round(self.failures / self.requests * 100, 2)

        time_in_state = self._clock() - self._state_changed_at

        return {
            "state": self.state.value,
            "failures": self.failures,
            "successes": self.successes,
            "requests": self.requests,
            "failure_rate": failure_rate,
            "threshold": self.failure_threshold,
            "next_attempt_time": (
                self.next_attempt_time().isoformat() if self.state == CircuitState.OPEN else None
            ),
            "state_changed_at": (
                datetime.now(timezone.utc) - timedelta(seconds=time_in_state)
            ).isoformat(),
            "seconds_in_current_state": round(time_in_state, 3),
        }

    def reset(self) -> None:
        """Force the breaker closed (manual intervention)."""
        logger.info("circuit_breaker_manual_reset")
        self._transition_to(CircuitState.CLOSED)
        self._reset_counters()

    def force_open(self) -> None:
        """Force the breaker open (maintenance)."""
        logger.warning("circuit_breaker_forced_open")
        self._last_failure_time = self._clock()
        self._transition_to(CircuitState.OPEN)
