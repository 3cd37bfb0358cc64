"""Retry with exponential backoff and a circuit breaker for guarded calls.

The same two primitives protect both external boundaries of a job: the
provider call (one breaker per provider) and the SQLite persistence boundary
(``PersistenceGuard``). Retry is stateless per call; the breaker keeps its
state across calls and is shared by every job using that boundary.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(RuntimeError):
    """Raised instead of calling through an open breaker."""

    def __init__(self, breaker_name: str, retry_after_seconds: float) -> None:
        super().__init__(
            f"Circuit {breaker_name!r} is open; retry in {retry_after_seconds:.1f}s",
        )
        self.breaker_name = breaker_name
        self.retry_after_seconds = retry_after_seconds


class JobCancelledError(RuntimeError):
    """Raised when a job's cancellation token is set during a guarded call."""


class Classified(Protocol):
    """Anything a classifier returns: only retryability matters here."""

    @property
    def retryable(self) -> bool: ...


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff schedule; ``max_attempts`` counts the first call."""

    max_attempts: int = 4
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""

        return min(
            self.initial_delay_seconds * (2 ** max(attempt - 1, 0)),
            self.max_delay_seconds,
        )


@dataclass(slots=True)
class RetryOutcome(Generic[T]):
    """Result of ``call_with_retry``; never raises for classified failures."""

    ok: bool
    value: T | None = None
    error: BaseException | None = None
    classification: Classified | None = None
    attempts: int = 0
    delays: list[float] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)


@dataclass(slots=True)
class BreakerSnapshot:
    """Point-in-time view of a breaker."""

    name: str
    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    total_trips: int
    retry_after_seconds: float


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    CLOSED opens after ``failure_threshold`` consecutive failures. OPEN
    rejects calls with ``CircuitOpenError`` until ``cooldown_seconds`` pass,
    then HALF_OPEN lets probes through: ``success_threshold`` consecutive
    successes close it, any failure reopens it.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Callable[[str, CircuitState, CircuitState], None] | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._opened_at: float | None = None
        self._total_trips = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    def before_call(self) -> None:
        """Raise ``CircuitOpenError`` when calls must not go through."""

        with self._lock:
            if self._current_state() == CircuitState.OPEN:
                raise CircuitOpenError(self.name, self._retry_after())

    def record_success(self) -> None:
        with self._lock:
            state = self._current_state()
            self._consecutive_failures = 0
            if state == CircuitState.HALF_OPEN:
                self._consecutive_successes += 1
                if self._consecutive_successes >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            state = self._current_state()
            self._consecutive_successes = 0
            if state == CircuitState.HALF_OPEN:
                self._trip()
                return
            self._consecutive_failures += 1
            if state == CircuitState.CLOSED and (
                self._consecutive_failures >= self.failure_threshold
            ):
                self._trip()

    def call(self, func: Callable[[], T]) -> T:
        """Invoke ``func`` through the breaker, recording the outcome."""

        self.before_call()
        try:
            value = func()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return value

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            state = self._current_state()
            return BreakerSnapshot(
                name=self.name,
                state=state,
                consecutive_failures=self._consecutive_failures,
                consecutive_successes=self._consecutive_successes,
                total_trips=self._total_trips,
                retry_after_seconds=self._retry_after() if state == CircuitState.OPEN else 0.0,
            )

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""

        with self._lock:
            self._consecutive_failures = 0
            self._consecutive_successes = 0
            self._opened_at = None
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def _current_state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.cooldown_seconds
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))

    def _trip(self) -> None:
        self._opened_at = self._clock()
        self._total_trips += 1
        self._consecutive_failures = 0
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        previous = self._state
        self._state = new_state
        if new_state != CircuitState.HALF_OPEN:
            self._consecutive_successes = 0
        if new_state == CircuitState.CLOSED:
            self._opened_at = None
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log("Circuit %s: %s -> %s", self.name, previous.value, new_state.value)
        if self._on_state_change is not None:
            try:
                self._on_state_change(self.name, previous, new_state)
            except Exception:  # noqa: BLE001
                logger.debug("Circuit state listener failed for %s", self.name, exc_info=True)


def call_with_retry(  # noqa: PLR0913
    func: Callable[[], T],
    *,
    policy: RetryPolicy,
    classify: Callable[[BaseException], Classified],
    sleep: Callable[[float], None] = time.sleep,
    breaker: CircuitBreaker | None = None,
    on_retry: Callable[[int, float, Classified], None] | None = None,
) -> RetryOutcome[T]:
    """Call ``func`` with exponential backoff on retryable failures.

    Fatal classifications return after the first failure. An open breaker
    short-circuits without invoking ``func``. ``JobCancelledError`` (usually
    raised by a cancellable ``sleep``) propagates to the caller.
    """

    delays: list[float] = []
    attempts = 0
    for attempt in range(1, max(1, policy.max_attempts) + 1):
        try:
            if breaker is not None:
                breaker.before_call()
            attempts += 1
            value = func()
        except JobCancelledError:
            raise
        except CircuitOpenError as error:
            return RetryOutcome(
                ok=False,
                error=error,
                classification=classify(error),
                attempts=attempts,
                delays=delays,
            )
        except Exception as error:  # noqa: BLE001
            if breaker is not None:
                breaker.record_failure()
            classification = classify(error)
            if not classification.retryable or attempt >= policy.max_attempts:
                return RetryOutcome(
                    ok=False,
                    error=error,
                    classification=classification,
                    attempts=attempts,
                    delays=delays,
                )
            delay = policy.delay(attempt)
            delays.append(delay)
            logger.info(
                "Retryable failure on attempt %d/%d, retrying in %.1fs: %s",
                attempt,
                policy.max_attempts,
                delay,
                error,
            )
            if on_retry is not None:
                on_retry(attempt, delay, classification)
            sleep(delay)
            continue

        if breaker is not None:
            breaker.record_success()
        return RetryOutcome(ok=True, value=value, attempts=attempts, delays=delays)

    raise RuntimeError("call_with_retry: unexpected state")  # pragma: no cover


def cancellable_sleep(cancel_event: threading.Event) -> Callable[[float], None]:
    """Sleep that wakes up early and raises once ``cancel_event`` is set."""

    def _sleep(seconds: float) -> None:
        if cancel_event.wait(timeout=max(0.0, seconds)):
            raise JobCancelledError("Job cancelled during backoff")

    return _sleep


class PersistenceGuard:
    """Retries transient SQLite contention around repository writes."""

    def __init__(
        self,
        *,
        classify: Callable[[BaseException], Classified],
        policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.classify = classify
        self.policy = policy or RetryPolicy(
            max_attempts=4,
            initial_delay_seconds=0.1,
            max_delay_seconds=2.0,
        )
        self.breaker = breaker or CircuitBreaker("persistence")
        self.sleep = sleep

    def run(self, func: Callable[[], T], *, operation: str) -> T:
        """Run ``func``; re-raise its last error when retries are exhausted."""

        outcome = call_with_retry(
            func,
            policy=self.policy,
            classify=self.classify,
            sleep=self.sleep,
            breaker=self.breaker,
        )
        if outcome.ok:
            return outcome.value  # type: ignore[return-value]
        logger.error(
            "Persistence operation %s failed after %d attempt(s): %s",
            operation,
            outcome.attempts,
            outcome.error,
        )
        if outcome.error is None:  # pragma: no cover
            raise RuntimeError(f"Persistence operation {operation} failed")
        raise outcome.error
