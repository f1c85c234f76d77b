"""Stats collection and JSONL export for sync runs."""

import json
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog

log = structlog.get_logger(__name__)


class SyncStats:
    """
    Thread-safe counters and latency samples.

    One instance is created per run and handed to each component, so tests
    can inspect exactly what a component recorded.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._latencies: dict[str, list[float]] = {}

    def increment(self, name: str, value: int = 1) -> None:
        """Add value to a named counter."""
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def observe(self, name: str, value: float) -> None:
        """Record one latency sample (milliseconds)."""
        with self._lock:
            self._latencies.setdefault(name, []).append(value)

    def get(self, name: str) -> int:
        """Return a counter's current value (0 if never incremented)."""
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> dict[str, Any]:
        """
        Return a copy of all counters plus count/avg/max per latency series.
        """
        with self._lock:
            latencies = {
                name: {
                    "count": len(samples),
                    "avg_ms": round(sum(samples) / len(samples), 3),
                    "max_ms": round(max(samples), 3),
                }
                for name, samples in self._latencies.items()
                if samples
            }
            return {"counters": dict(self._counters), "latencies": latencies}


class StatsWriter:
    """
    Buffers stats events and appends them to a daily JSONL file on flush().

    A failed flush keeps the buffer and records the error in a bounded deque.
    After ``max_consecutive_failures`` failures in a row the buffer is dropped
    so a broken disk cannot grow memory without bound.
    """

    def __init__(
        self,
        directory: Path,
        prefix: str = "stats",
        max_buffered_events: int = 10_000,
        max_consecutive_failures: int = 5,
        max_errors: int = 20,
    ):
        """
        Args:
            directory: Directory for the JSONL files
            prefix: File name prefix (<prefix>_<YYYY-MM-DD>.jsonl)
            max_buffered_events: Oldest events are discarded beyond this
            max_consecutive_failures: Failed flushes tolerated before dropping
            max_errors: Size of the error deque
        """
        self.directory = directory
        self.prefix = prefix
        self.max_consecutive_failures = max_consecutive_failures
        self.errors: deque[str] = deque(maxlen=max_errors)
        self.consecutive_failures = 0
        self.dropped_events = 0

        self._lock = threading.Lock()
        self._buffer: deque[dict] = deque(maxlen=max_buffered_events)

    def record(self, event_type: str, **fields: Any) -> None:
        """
        Buffer one event.

        Args:
            event_type: Event name (e.g., "folder_synced")
            **fields: Additional JSON-serializable event fields
        """
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            **fields,
        }
        with self._lock:
            self._buffer.append(event)

    def record_snapshot(self, stats: SyncStats) -> None:
        """Buffer the current state of a stats collector."""
        self.record("stats_snapshot", **stats.snapshot())

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def current_path(self) -> Path:
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.directory / f"{self.prefix}_{today}.jsonl"

    def flush(self) -> bool:
        """
        Append buffered events to today's file.

        Returns:
            True if the buffer was written (or empty), False on failure
        """
        with self._lock:
            if not self._buffer:
                return True
            events = list(self._buffer)

            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                lines = "".join(json.dumps(e, ensure_ascii=False, default=str) + "\n" for e in events)
                with open(self.current_path(), "a", encoding="utf-8") as f:
                    f.write(lines)
            except (OSError, TypeError, ValueError) as e:
                return self._flush_failed(e)

            self._buffer.clear()
            self.consecutive_failures = 0
            return True

    def _flush_failed(self, error: Exception) -> bool:
        self.consecutive_failures += 1
        self.errors.append(f"{type(error).__name__}: {error}")
        log.warning(
            "stats_flush_failed",
            error=str(error),
            consecutive_failures=self.consecutive_failures,
        )

        if self.consecutive_failures >= self.max_consecutive_failures:
            self.dropped_events += len(self._buffer)
            log.error(
                "stats_buffer_dropped",
                dropped=len(self._buffer),
                consecutive_failures=self.consecutive_failures,
            )
            self._buffer.clear()
            self.consecutive_failures = 0
        return False


class PeriodicFlusher:
    """Calls StatsWriter.flush() on a background thread every interval."""

    def __init__(self, writer: StatsWriter, interval: float = 30.0, stats: Optional[SyncStats] = None):
        self.writer = writer
        self.interval = interval
        self.stats = stats
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="stats-flusher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the thread and perform a final flush."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self._tick()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self._tick()

    def _tick(self) -> None:
        if self.stats is not None:
            self.writer.record_snapshot(self.stats)
        self.writer.flush()

    def __enter__(self) -> "PeriodicFlusher":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
