"""DeadLetterQueueReader: sequential, tail-following reader over queue segments.

The reader keeps one segment open and reads records from its current byte
offset. When the segment is exhausted and a newer segment exists, it moves on
and notifies its SegmentListener. A watchdog observer on the queue directory
wakes a blocked ``poll_entry`` as soon as segments are created or appended to.
"""

import logging
import os
import struct
import threading
import time
from datetime import datetime

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from dlq_input.errors import PositionUnavailableError, ReaderError
from dlq_input.segment import (
    RECORD_HEADER_FORMAT,
    RECORD_HEADER_SIZE,
    SEGMENT_HEADER_SIZE,
    SEGMENT_VERSION,
    DLQEntry,
    count_records,
    decode_payload,
    is_segment,
    list_segments,
    segment_id,
)

logger = logging.getLogger(__name__)

# Upper bound on a single wait, in case a filesystem event is missed.
RESCAN_INTERVAL = 0.05


class SegmentListener:
    """Callbacks a reader fires on segment lifecycle events. Defaults do nothing."""

    def segment_completed(self) -> None:
        """The reader finished a segment and moved on to the next one."""

    def segments_deleted(self, count: int, events: int) -> None:
        """``count`` consumed segments holding ``events`` entries were removed."""


class _QueueChangeHandler(FileSystemEventHandler):
    def __init__(self, wakeup: threading.Event):
        super().__init__()
        self._wakeup = wakeup

    def _notify(self, path: str):
        if is_segment(path):
            self._wakeup.set()

    def on_created(self, event):
        if not event.is_directory:
            self._notify(event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self._notify(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._notify(event.dest_path)


class DeadLetterQueueReader:
    def __init__(self, queue_dir: str, clean_consumed: bool = False,
                 listener: SegmentListener | None = None):
        self._queue_dir = os.path.abspath(queue_dir)
        self._clean_consumed = clean_consumed
        self._listener = listener or SegmentListener()
        self._lock = threading.RLock()
        self._wakeup = threading.Event()
        self._segment: str | None = None
        self._file = None
        self._position = 0
        self._min_segment_id = 0
        self._closed = False

        self._observer = Observer()
        self._observer.schedule(_QueueChangeHandler(self._wakeup), self._queue_dir, recursive=False)
        self._observer.start()
        logger.debug("Watching DLQ directory %s", self._queue_dir)

    # ── position ──────────────────────────────────────────────────

    def get_current_segment(self) -> str:
        with self._lock:
            if self._segment is None:
                raise PositionUnavailableError(f"No DLQ segment opened yet in {self._queue_dir}")
            return self._segment

    def get_current_position(self) -> int:
        with self._lock:
            if self._segment is None:
                raise PositionUnavailableError(f"No DLQ segment opened yet in {self._queue_dir}")
            return self._position

    def set_current_reader_and_position(self, segment: str, offset: int) -> None:
        """Resume at byte *offset* of *segment*.

        If the segment was deleted in the meantime, reading resumes at the
        first segment after it.
        """
        with self._lock:
            self._close_segment()
            if os.path.exists(segment):
                self._open_segment(segment, offset)
                return
            floor = segment_id(segment)
            following = self._segment_after(floor)
            if following is not None:
                logger.info("DLQ segment %s no longer exists, resuming at %s", segment, following)
                self._open_segment(following, SEGMENT_HEADER_SIZE)
            else:
                logger.info("DLQ segment %s no longer exists, waiting for newer segments", segment)
                self._min_segment_id = floor + 1

    def seek_to_next_event(self, timestamp: datetime) -> None:
        """Position on the first entry whose entry_time is at or after *timestamp*.

        If no such entry exists yet, the reader ends up after the last entry.
        """
        with self._lock:
            for segment in list_segments(self._queue_dir):
                self._close_segment()
                self._open_segment(segment, SEGMENT_HEADER_SIZE)
                while True:
                    start = self._position
                    entry = self._read_record()
                    if entry is None:
                        break
                    if entry.entry_time >= timestamp:
                        self._position = start
                        logger.debug("Seeked to %s (position %d) for %s",
                                     segment, start, timestamp.isoformat())
                        return

    # ── reading ───────────────────────────────────────────────────

    def poll_entry(self, timeout_ms: int) -> DLQEntry | None:
        """Return the next entry, or None if none arrives within *timeout_ms*.

        A closed reader returns None immediately.
        """
        deadline = time.monotonic() + timeout_ms / 1000.0
        while not self._closed:
            self._wakeup.clear()
            entry = self._next_entry()
            if entry is not None:
                return entry
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            self._wakeup.wait(min(remaining, RESCAN_INTERVAL))
        return None

    def _next_entry(self) -> DLQEntry | None:
        with self._lock:
            if self._closed:
                return None
            if self._file is None:
                following = self._segment_after(self._min_segment_id - 1)
                if following is None:
                    return None
                self._open_segment(following, SEGMENT_HEADER_SIZE)

            while True:
                entry = self._read_record()
                if entry is not None:
                    return entry
                following = self._segment_after(segment_id(self._segment))
                if following is None:
                    return None
                # A newer segment exists, so the current one will not grow any more.
                entry = self._read_record()
                if entry is not None:
                    return entry
                self._close_segment()
                self._open_segment(following, SEGMENT_HEADER_SIZE)
                self._listener.segment_completed()

    def _segment_after(self, floor: int) -> str | None:
        for segment in list_segments(self._queue_dir):
            if segment_id(segment) > floor:
                return segment
        return None

    def _open_segment(self, segment: str, offset: int) -> None:
        f = open(segment, "rb")
        version = f.read(SEGMENT_HEADER_SIZE)
        if version and version != SEGMENT_VERSION:
            f.close()
            raise ReaderError(f"Unsupported DLQ segment version {version!r} in {segment}")
        self._file = f
        self._segment = segment
        self._position = max(offset, SEGMENT_HEADER_SIZE)
        logger.debug("Opened DLQ segment %s at position %d", segment, self._position)

    def _close_segment(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _read_record(self) -> DLQEntry | None:
        """Read the record at the current position; None if it is not complete yet."""
        self._file.seek(self._position)
        header = self._file.read(RECORD_HEADER_SIZE)
        if len(header) < RECORD_HEADER_SIZE:
            return None
        (length,) = struct.unpack(RECORD_HEADER_FORMAT, header)
        payload = self._file.read(length)
        if len(payload) < length:
            return None
        try:
            entry = decode_payload(payload)
        except ValueError as e:
            raise ReaderError(
                f"Corrupt DLQ record in {self._segment} at position {self._position}: {e}"
            ) from e
        self._position += RECORD_HEADER_SIZE + length
        return entry

    # ── cleanup ───────────────────────────────────────────────────

    def mark_for_delete(self) -> None:
        """Delete segments older than the current one (only with clean_consumed)."""
        if not self._clean_consumed:
            return
        with self._lock:
            if self._segment is None:
                return
            current = segment_id(self._segment)
            deleted = 0
            events = 0
            for segment in list_segments(self._queue_dir):
                if segment_id(segment) >= current:
                    break
                try:
                    n = count_records(segment)
                    os.remove(segment)
                except FileNotFoundError:
                    continue
                deleted += 1
                events += n
                logger.debug("Deleted consumed DLQ segment %s (%d events)", segment, n)
        if deleted:
            self._listener.segments_deleted(deleted, events)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._close_segment()
        self._observer.stop()
        self._observer.join(timeout=5)
        logger.debug("Closed DLQ reader for %s", self._queue_dir)
