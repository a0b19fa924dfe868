"""DeadLetterQueueInput: checkpoint-resumable consumer of a dead letter queue.

Lifecycle:
  register()  resolve the start position (sincedb, timestamp, or beginning)
  run(sink)   hand every entry to sink until close() is called
  close()     stop the loop, close the reader, persist the last position

The read position is persisted when the reader completes a segment and on
close. The queue is read at-least-once across restarts.
"""

import logging
import os
import threading
from datetime import datetime
from typing import Callable

from dlq_input import sincedb
from dlq_input.config import Config, resolve_sincedb_path, validate_config
from dlq_input.errors import PositionUnavailableError
from dlq_input.metrics import ConsumerMetrics
from dlq_input.reader import DeadLetterQueueReader, SegmentListener
from dlq_input.segment import DLQEntry

logger = logging.getLogger(__name__)

POLL_TIMEOUT_MS = 100
CLEANUP_BATCH_SIZE = 100


class DeadLetterQueueInput(SegmentListener):
    def __init__(
        self,
        queue_path: str,
        commit_offsets: bool = True,
        sincedb_path: str | None = None,
        target_timestamp: datetime | None = None,
        clean_consumed: bool = False,
        metrics: ConsumerMetrics | None = None,
        poll_timeout_ms: int = POLL_TIMEOUT_MS,
        cleanup_batch_size: int = CLEANUP_BATCH_SIZE,
    ):
        self._queue_path = queue_path
        self._commit_offsets = commit_offsets
        self._sincedb_path = sincedb_path
        self._target_timestamp = target_timestamp
        self._clean_consumed = clean_consumed
        self._metrics = metrics or ConsumerMetrics()
        self._poll_timeout_ms = poll_timeout_ms
        self._cleanup_batch_size = cleanup_batch_size

        self._open = threading.Event()
        self._open.set()
        self._reader_has_state = threading.Event()
        self._reader_lock = threading.Lock()
        self._queue_reader: DeadLetterQueueReader | None = None
        self._sincedb = sincedb.SinceDB(sincedb_path) if sincedb_path else None
        self._consumed_since_cleanup = 0

    @classmethod
    def from_config(cls, config: Config, metrics: ConsumerMetrics | None = None) -> "DeadLetterQueueInput":
        validate_config(config)
        return cls(
            queue_path=config.queue_dir,
            commit_offsets=config.commit_offsets,
            sincedb_path=resolve_sincedb_path(config),
            target_timestamp=config.target_timestamp,
            clean_consumed=config.clean_consumed,
            metrics=metrics,
            poll_timeout_ms=config.poll_timeout_ms,
            cleanup_batch_size=config.cleanup_batch_size,
        )

    @property
    def metrics(self) -> ConsumerMetrics:
        return self._metrics

    @property
    def is_open(self) -> bool:
        return self._open.is_set()

    @property
    def _checkpointing(self) -> bool:
        return self._commit_offsets and self._sincedb is not None

    # ── startup ───────────────────────────────────────────────────

    def _get_queue_reader(self) -> DeadLetterQueueReader | None:
        """Return the reader, building and positioning it on first use.

        Returns None once close() has been called and no reader was built.
        """
        with self._reader_lock:
            if self._queue_reader is None:
                if not self._open.is_set():
                    return None
                # The reader starts a directory observer, so check the path first.
                if not os.path.exists(self._queue_path):
                    logger.warning("DLQ sub-path %s does not exist", self._queue_path)
                    raise FileNotFoundError(f"DLQ sub-path {self._queue_path} does not exist")
                if not os.path.isdir(self._queue_path):
                    logger.warning("DLQ sub-path %s is not a directory", self._queue_path)
                    raise NotADirectoryError(f"DLQ sub-path {self._queue_path} is not a directory")
                reader = DeadLetterQueueReader(self._queue_path, self._clean_consumed, listener=self)
                try:
                    self._set_initial_reader_state(reader)
                except Exception:
                    reader.close()
                    raise
                self._queue_reader = reader
            return self._queue_reader

    def _set_initial_reader_state(self, reader: DeadLetterQueueReader) -> None:
        if (self._sincedb is not None and os.path.exists(self._sincedb.path)
                and self._target_timestamp is None):
            self._sincedb = sincedb.SinceDB.load(self._sincedb.path)
            if self._sincedb.is_assigned:
                logger.info("Resuming DLQ from %s (position %d)",
                            self._sincedb.current_segment, self._sincedb.offset)
                reader.set_current_reader_and_position(self._sincedb.current_segment,
                                                       self._sincedb.offset)
                self._reader_has_state.set()
        elif self._target_timestamp is not None:
            logger.info("Seeking DLQ to first entry at or after %s", self._target_timestamp.isoformat())
            reader.seek_to_next_event(self._target_timestamp)
            self._reader_has_state.clear()

    def register(self) -> None:
        """Resolve the start position early if the queue directory already exists."""
        if os.path.isdir(self._queue_path):
            self._get_queue_reader()

    # ── consumption ───────────────────────────────────────────────

    def run(self, sink: Callable[[DLQEntry], None]) -> None:
        """Deliver entries to *sink* until close() is called.

        Raises:
            FileNotFoundError: If the queue directory does not exist.
            NotADirectoryError: If the queue path is not a directory.
            OSError: If reading a segment fails.
        """
        reader = self._get_queue_reader()
        if reader is None:
            return

        while self._open.is_set():
            entry = reader.poll_entry(self._poll_timeout_ms)
            if entry is None:
                continue
            self._reader_has_state.set()
            sink(entry)
            self._metrics.record_event()
            if self._clean_consumed:
                self._consumed_since_cleanup += 1
                if self._consumed_since_cleanup >= self._cleanup_batch_size:
                    reader.mark_for_delete()
                    self._consumed_since_cleanup = 0

    # ── reader callbacks ──────────────────────────────────────────

    def segment_completed(self) -> None:
        self._metrics.record_segment_completed()
        if not self._checkpointing:
            return
        reader = self._queue_reader
        if reader is None:
            logger.debug("No DLQ position to checkpoint yet: reader is still being positioned")
            self._sincedb.reset()
        else:
            try:
                self._sincedb.update_position(reader)
            except PositionUnavailableError as e:
                logger.debug("No DLQ position to checkpoint yet: %s", e)
                self._sincedb.reset()
        if self._sincedb.flush():
            self._metrics.record_checkpoint_flush()

    def segments_deleted(self, count: int, events: int) -> None:
        logger.debug("Deleted %d consumed DLQ segment(s) holding %d event(s)", count, events)
        self._metrics.record_segments_deleted(count, events)

    # ── shutdown ──────────────────────────────────────────────────

    def close(self) -> None:
        self._open.clear()
        # No reader can be built once the open flag is clear.
        with self._reader_lock:
            reader = self._queue_reader

        if self._checkpointing and self._reader_has_state.is_set() and reader is not None:
            logger.debug("Retrieving current DLQ segment and position")
            try:
                self._sincedb.update_position(reader)
            except Exception as e:
                logger.error("Failed to retrieve current DLQ segment and position: %s", e)

        try:
            logger.debug("Closing DLQ reader")
            if reader is not None:
                reader.close()
        except Exception as e:
            logger.warning("Error closing DLQ reader: %s", e)
        finally:
            if self._checkpointing and self._sincedb.flush():
                self._metrics.record_checkpoint_flush()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
