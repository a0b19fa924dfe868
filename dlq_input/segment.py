"""Segment files of the dead letter queue.

A queue directory holds segments named ``<n>.log`` (n = 1, 2, ...), read in
ascending order of n. Each segment is:

    [version:1 byte b"1"] [record] [record] ...

and each record is a 4-byte big-endian payload length followed by the payload,
the JSON encoding of a DLQEntry. Offsets into a segment are byte offsets; the
first record starts at SEGMENT_HEADER_SIZE.
"""

import json
import os
import re
import struct
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

SEGMENT_VERSION = b"1"
SEGMENT_HEADER_SIZE = len(SEGMENT_VERSION)
SEGMENT_SUFFIX = ".log"
RECORD_HEADER_FORMAT = "!I"
RECORD_HEADER_SIZE = struct.calcsize(RECORD_HEADER_FORMAT)

_SEGMENT_NAME = re.compile(r"^(\d+)\.log$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing ``Z``. Naive values are UTC."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DLQEntry:
    """An event that a pipeline plugin could not process, plus why."""

    event: dict = field(default_factory=dict)
    plugin_type: str = ""
    plugin_id: str = ""
    reason: str = ""
    entry_time: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "plugin_type": self.plugin_type,
            "plugin_id": self.plugin_id,
            "reason": self.reason,
            "entry_time": format_timestamp(self.entry_time),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "DLQEntry":
        return cls(
            event=dict(d.get("event") or {}),
            plugin_type=d.get("plugin_type", ""),
            plugin_id=d.get("plugin_id", ""),
            reason=d.get("reason", ""),
            entry_time=parse_timestamp(d["entry_time"]),
        )


def encode_record(entry: DLQEntry) -> bytes:
    payload = json.dumps(entry.to_dict(), separators=(",", ":")).encode("utf-8")
    return struct.pack(RECORD_HEADER_FORMAT, len(payload)) + payload


def decode_payload(payload: bytes) -> DLQEntry:
    """Decode a record payload.

    Raises:
        ValueError: If the payload is not a valid entry.
    """
    try:
        return DLQEntry.from_dict(json.loads(payload.decode("utf-8")))
    except (UnicodeDecodeError, KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Invalid DLQ record payload: {e}") from e


def segment_id(path: str) -> int:
    """Return n for a segment named ``<n>.log``, raising ValueError otherwise."""
    match = _SEGMENT_NAME.match(os.path.basename(path))
    if not match:
        raise ValueError(f"Not a segment file: {path}")
    return int(match.group(1))


def is_segment(path: str) -> bool:
    return _SEGMENT_NAME.match(os.path.basename(path)) is not None


def segment_path(queue_dir: str, n: int) -> str:
    return os.path.join(os.path.abspath(queue_dir), f"{n}{SEGMENT_SUFFIX}")


def list_segments(queue_dir: str) -> list[str]:
    """Absolute paths of all segments in *queue_dir*, oldest first."""
    try:
        names = os.listdir(queue_dir)
    except FileNotFoundError:
        return []
    segments = [os.path.join(os.path.abspath(queue_dir), name)
                for name in names if _SEGMENT_NAME.match(name)]
    segments.sort(key=segment_id)
    return segments


class SegmentWriter:
    """Append-only segment writer with size-based rotation.

    Appends to the highest numbered segment already present (or ``1.log``)
    and starts a new segment once the current one reaches
    ``max_segment_size`` bytes.
    """

    def __init__(self, queue_dir: str, max_segment_size: int = 10 * 1024 * 1024):
        self._queue_dir = os.path.abspath(queue_dir)
        self._max_segment_size = max_segment_size
        self._lock = threading.Lock()
        self._file = None
        os.makedirs(self._queue_dir, exist_ok=True)
        existing = list_segments(self._queue_dir)
        self._current_id = segment_id(existing[-1]) if existing else 1
        self._open()

    @property
    def current_segment(self) -> str:
        return segment_path(self._queue_dir, self._current_id)

    def _open(self):
        path = self.current_segment
        self._file = open(path, "ab")
        if self._file.tell() == 0:
            self._file.write(SEGMENT_VERSION)
            self._file.flush()

    def _close(self):
        if self._file and not self._file.closed:
            self._file.close()

    def _rotate(self) -> str:
        """Finish the current segment and open the next. Returns the finished path."""
        finished = self.current_segment
        self._close()
        self._current_id += 1
        self._open()
        return finished

    def write_entry(self, entry: DLQEntry) -> str | None:
        """Append an entry. Returns the finished segment path if rotation occurred."""
        with self._lock:
            self._file.write(encode_record(entry))
            self._file.flush()
            if self._file.tell() >= self._max_segment_size:
                return self._rotate()
            return None

    def close(self):
        with self._lock:
            self._close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def count_records(path: str) -> int:
    """Number of complete records in the segment at *path*."""
    count = 0
    with open(path, "rb") as f:
        f.seek(SEGMENT_HEADER_SIZE)
        while True:
            header = f.read(RECORD_HEADER_SIZE)
            if len(header) < RECORD_HEADER_SIZE:
                return count
            (length,) = struct.unpack(RECORD_HEADER_FORMAT, header)
            if len(f.read(length)) < length:
                return count
            count += 1
