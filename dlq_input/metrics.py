"""Thread-safe consumption metrics."""

import threading
import time


class ConsumerMetrics:
    """Counters updated from the consumption loop and the reader's callbacks."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events_consumed = 0
        self._segments_completed = 0
        self._segments_deleted = 0
        self._events_deleted = 0
        self._checkpoint_flushes = 0
        self._start_time = time.monotonic()

    def record_event(self):
        with self._lock:
            self._events_consumed += 1

    def record_segment_completed(self):
        with self._lock:
            self._segments_completed += 1

    def record_segments_deleted(self, count: int, events: int):
        with self._lock:
            self._segments_deleted += count
            self._events_deleted += events

    def record_checkpoint_flush(self):
        with self._lock:
            self._checkpoint_flushes += 1

    def snapshot(self) -> dict:
        with self._lock:
            elapsed = time.monotonic() - self._start_time
            return {
                "events_consumed": self._events_consumed,
                "segments_completed": self._segments_completed,
                "segments_deleted": self._segments_deleted,
                "events_deleted": self._events_deleted,
                "checkpoint_flushes": self._checkpoint_flushes,
                "elapsed_seconds": round(elapsed, 1),
                "throughput_events_per_sec": (
                    round(self._events_consumed / elapsed, 1) if elapsed > 0 else 0
                ),
            }
