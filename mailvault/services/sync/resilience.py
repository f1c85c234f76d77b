"""
Retry with exponential backoff and a circuit breaker around mailbox calls.

Features:
- Authentication failures are raised immediately, never retried
- Every other failure is transient and retried with capped exponential backoff
- A circuit breaker stops hammering a server that keeps failing
- Sleeps observe a cancellation event so Ctrl-C is honoured during backoff
"""

import threading
import time
from datetime import date
from enum import Enum
from typing import BinaryIO, Callable, Optional, TypeVar

import structlog

from ...telemetry.stats import SyncStats
from .mailbox_source import (
    MailboxAuthenticationError,
    MailboxSource,
    MailboxSourceError,
    MessageSummary,
    SyncCancelledError,
)

T = TypeVar("T")
log = structlog.get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states for mailbox calls."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, calls refused
    HALF_OPEN = "half_open"  # Cool-down elapsed, one trial call allowed


class CircuitOpenError(MailboxSourceError):
    """Raised when the circuit breaker is open and the call was not made."""

    def __init__(self, retry_after: float):
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker open, retry in {retry_after:.1f}s")


class CircuitBreaker:
    """
    Trips after ``failure_threshold`` consecutive failures.

    While open every call is refused. Once ``reset_timeout`` seconds have
    passed the breaker is half-open: the next call goes through, and its
    outcome closes or re-opens the circuit.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        stats: Optional[SyncStats] = None,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.clock = clock
        self.stats = stats or SyncStats()
        self.failures = 0

        self._lock = threading.Lock()
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state()

    def retry_after(self) -> float:
        """Seconds until the breaker lets a trial call through."""
        with self._lock:
            if self._opened_at is None:
                return 0.0
            return max(0.0, self._opened_at + self.reset_timeout - self.clock())

    def before_call(self) -> None:
        """
        Raises:
            CircuitOpenError: If the circuit is open
        """
        with self._lock:
            if self._state() is CircuitState.OPEN:
                remaining = self._opened_at + self.reset_timeout - self.clock()
                raise CircuitOpenError(max(0.0, remaining))

    def record_success(self) -> None:
        with self._lock:
            if self._opened_at is not None:
                log.info("circuit_closed", failures=self.failures)
                self.stats.increment("source.circuit_closed")
            self.failures = 0
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            self.failures += 1
            half_open = self._state() is CircuitState.HALF_OPEN
            if half_open or (self._opened_at is None and self.failures >= self.failure_threshold):
                self._opened_at = self.clock()
                log.warning(
                    "circuit_opened",
                    failures=self.failures,
                    reset_timeout=self.reset_timeout,
                )
                self.stats.increment("source.circuit_opened")

    def _state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self.clock() - self._opened_at >= self.reset_timeout:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN


class RetryPolicy:
    """
    Runs callables until they succeed, backing off between attempts.

    Delay after the n-th consecutive failure (n starting at 0) is
    ``min(base_delay * 2**n, max_delay)``.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        breaker: Optional[CircuitBreaker] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
        stats: Optional[SyncStats] = None,
    ):
        """
        Args:
            base_delay: First backoff delay in seconds
            max_delay: Backoff cap in seconds
            breaker: Circuit breaker shared by all calls
            cancel_event: Set to abort waits with SyncCancelledError
            sleep: Replacement for the cancellable wait (tests)
            stats: Stats collector for retry counters
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.stats = stats or SyncStats()
        self.breaker = breaker or CircuitBreaker(stats=self.stats)
        self.cancel_event = cancel_event or threading.Event()
        self._sleep_fn = sleep

    def backoff(self, attempt: int) -> float:
        """
        Examples:
            >>> RetryPolicy().backoff(0), RetryPolicy().backoff(3), RetryPolicy().backoff(20)
            (1.0, 8.0, 300.0)
        """
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def call(
        self,
        operation: Callable[[], T],
        description: str = "mailbox_call",
        max_attempts: Optional[int] = None,
    ) -> T:
        """
        Run operation until it succeeds.

        Args:
            operation: Zero-argument callable
            description: Name used in log events
            max_attempts: Give up after this many failures (None = never)

        Returns:
            Whatever operation returns

        Raises:
            MailboxAuthenticationError: Immediately, on bad credentials
            SyncCancelledError: If cancelled while waiting
            Exception: The last failure once max_attempts is exhausted
        """
        attempt = 0
        while True:
            self.check_cancelled()

            try:
                self.breaker.before_call()
            except CircuitOpenError as e:
                log.info("circuit_wait", operation=description, retry_after=round(e.retry_after, 1))
                self.wait(e.retry_after)
                continue

            try:
                result = operation()
            except (MailboxAuthenticationError, SyncCancelledError):
                raise
            except Exception as e:
                self.breaker.record_failure()
                attempt += 1
                self.stats.increment("source.failures")
                if max_attempts is not None and attempt >= max_attempts:
                    log.error(
                        "mailbox_call_failed",
                        operation=description,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise

                delay = self.backoff(attempt - 1)
                log.warning(
                    "mailbox_call_retry",
                    operation=description,
                    attempt=attempt,
                    delay=delay,
                    error=f"{type(e).__name__}: {e}",
                )
                self.stats.increment("source.retries")
                self.wait(delay)
                continue

            self.breaker.record_success()
            return result

    def wait(self, seconds: float) -> None:
        """
        Sleep, waking early if cancelled.

        Raises:
            SyncCancelledError: If the cancellation event is set
        """
        if self._sleep_fn is not None:
            self._sleep_fn(seconds)
        else:
            self.cancel_event.wait(seconds)
        self.check_cancelled()

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise SyncCancelledError("Synchronization cancelled")


class ResilientMailboxSource(MailboxSource):
    """
    Wraps another MailboxSource so every call goes through a RetryPolicy.

    After a transient failure the connection is assumed dead and the next
    attempt reconnects first. Message downloads use a bounded number of
    attempts so one unfetchable message cannot stall a folder.
    """

    def __init__(self, inner: MailboxSource, policy: RetryPolicy, per_message_attempts: int = 3):
        self.inner = inner
        self.policy = policy
        self.per_message_attempts = per_message_attempts
        self._needs_reconnect = False

    def connect(self) -> None:
        self.policy.call(self.inner.connect, description="connect")
        self._needs_reconnect = False

    def close(self) -> None:
        self.inner.close()

    def list_folders(self) -> list[str]:
        return self._call("list_folders", self.inner.list_folders)

    def get_cursor_epoch(self, folder: str) -> int:
        return self._call("get_cursor_epoch", lambda: self.inner.get_cursor_epoch(folder))

    def get_folder_cursor_range(
        self,
        folder: str,
        since_cursor: int,
        since: Optional[date] = None,
        before: Optional[date] = None,
    ) -> list[int]:
        return self._call(
            "get_folder_cursor_range",
            lambda: self.inner.get_folder_cursor_range(folder, since_cursor, since, before),
        )

    def fetch_summaries(self, folder: str, cursors: list[int]) -> list[MessageSummary]:
        return self._call("fetch_summaries", lambda: self.inner.fetch_summaries(folder, cursors))

    def open_message_stream(self, folder: str, cursor: int) -> BinaryIO:
        return self._call(
            "open_message_stream",
            lambda: self.inner.open_message_stream(folder, cursor),
            max_attempts=self.per_message_attempts,
        )

    def _call(
        self,
        description: str,
        operation: Callable[[], T],
        max_attempts: Optional[int] = None,
    ) -> T:
        def attempt() -> T:
            if self._needs_reconnect:
                self._reconnect()
            try:
                return operation()
            except (MailboxAuthenticationError, SyncCancelledError):
                raise
            except Exception:
                self._needs_reconnect = True
                raise

        return self.policy.call(attempt, description=description, max_attempts=max_attempts)

    def _reconnect(self) -> None:
        try:
            self.inner.close()
        except Exception as e:
            log.debug("close_before_reconnect_failed", error=str(e))
        self.inner.connect()
        self._needs_reconnect = False
        log.info("mailbox_reconnected")
