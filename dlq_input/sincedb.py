"""SinceDB: the persisted read position of a dead letter queue consumer.

File layout (big-endian, single record, rewritten in full on every flush):

    [version:2][path_length:4][path_bytes:path_length][offset:8]

``version`` is the UTF-16 code unit of ``"1"``. A zero-byte file is a valid
"unassigned" sincedb (no position recorded yet). Bytes after the offset are
ignored; older writers padded the record.
"""

import logging
import os
import struct
import tempfile
import threading
from dataclasses import dataclass

from dlq_input.errors import PositionUnavailableError, SinceDBFormatError

logger = logging.getLogger(__name__)

VERSION = ord("1")
HEADER_FORMAT = "!HI"  # 2-byte version + 4-byte path length
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
OFFSET_FORMAT = "!Q"
OFFSET_SIZE = struct.calcsize(OFFSET_FORMAT)


@dataclass(frozen=True)
class Unassigned:
    """No read position recorded yet."""

    @property
    def is_assigned(self) -> bool:
        return False


@dataclass(frozen=True)
class Assigned:
    """A concrete resumable position: byte ``offset`` inside ``segment``."""

    segment: str
    offset: int

    def __post_init__(self):
        if not self.segment:
            raise ValueError("Assigned position requires a segment path")
        if self.offset < 0:
            raise ValueError(f"Offset must be non-negative, got {self.offset}")

    @property
    def is_assigned(self) -> bool:
        return True


UNASSIGNED = Unassigned()


def encode(record: Assigned) -> bytes:
    """Serialize an assigned position into the on-disk record."""
    path_bytes = os.path.abspath(record.segment).encode("utf-8")
    buffer = bytearray(HEADER_SIZE + len(path_bytes) + OFFSET_SIZE)
    struct.pack_into(HEADER_FORMAT, buffer, 0, VERSION, len(path_bytes))
    buffer[HEADER_SIZE:HEADER_SIZE + len(path_bytes)] = path_bytes
    struct.pack_into(OFFSET_FORMAT, buffer, HEADER_SIZE + len(path_bytes), record.offset)
    return bytes(buffer)


def decode(data: bytes) -> Assigned | Unassigned:
    """Parse an on-disk record. Empty input is Unassigned.

    Raises:
        SinceDBFormatError: On a version mismatch, a truncated record, or an
            empty or undecodable segment path.
    """
    if not data:
        return UNASSIGNED
    if len(data) < HEADER_SIZE:
        raise SinceDBFormatError(f"Sincedb record too short: {len(data)} bytes")

    version, path_length = struct.unpack_from(HEADER_FORMAT, data, 0)
    if version != VERSION:
        raise SinceDBFormatError(
            f"Sincedb version: {chr(version)!r} does not match: {chr(VERSION)!r}"
        )

    end_of_path = HEADER_SIZE + path_length
    if len(data) < end_of_path + OFFSET_SIZE:
        raise SinceDBFormatError(
            f"Sincedb record truncated: expected {end_of_path + OFFSET_SIZE} bytes, got {len(data)}"
        )
    (offset,) = struct.unpack_from(OFFSET_FORMAT, data, end_of_path)
    try:
        segment = data[HEADER_SIZE:end_of_path].decode("utf-8")
        return Assigned(segment=segment, offset=offset)
    except ValueError as e:
        raise SinceDBFormatError(f"Sincedb record has an invalid segment path: {e}") from e


def load(path: str) -> Assigned | Unassigned:
    """Read the sincedb at *path*. A missing or empty file is Unassigned."""
    if not os.path.exists(path):
        return UNASSIGNED
    with open(path, "rb") as f:
        data = f.read()
    return decode(data)


def flush(path: str, record: Assigned | Unassigned) -> bool:
    """Atomically replace the sincedb at *path* with *record*.

    Unassigned records are not written. Write failures are logged and
    swallowed. Returns True if the file was written.
    """
    if not record.is_assigned:
        return False

    logger.debug("Flushing DLQ last read position: %s (offset %d)",
                 record.segment, record.offset)
    data = encode(record)
    directory = os.path.dirname(os.path.abspath(path))
    tmp = None
    try:
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".sincedb.", suffix=".tmp")
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
        return True
    except OSError as e:
        logger.error("Failed to write DLQ offset state to %s: %s", path, e)
        if tmp and os.path.exists(tmp):
            os.unlink(tmp)
        return False


class SinceDB:
    """Position tracker bound to a sincedb file.

    Holds the current position in memory and writes it out on ``flush()``.
    Updates and flushes are serialized so a flush triggered by the reader's
    segment callback never interleaves with the one issued on close.
    """

    def __init__(self, path: str, record: Assigned | Unassigned = UNASSIGNED):
        self._path = path
        self._record = record
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: str) -> "SinceDB":
        return cls(path, load(path))

    @property
    def path(self) -> str:
        return self._path

    @property
    def record(self) -> Assigned | Unassigned:
        with self._lock:
            return self._record

    @property
    def is_assigned(self) -> bool:
        return self.record.is_assigned

    @property
    def current_segment(self) -> str:
        record = self.record
        if not record.is_assigned:
            raise PositionUnavailableError("Unassigned sincedb doesn't have a current segment")
        return record.segment

    @property
    def offset(self) -> int:
        record = self.record
        if not record.is_assigned:
            raise PositionUnavailableError("Unassigned sincedb doesn't have an offset")
        return record.offset

    def update_position(self, reader) -> Assigned:
        """Capture the reader's current segment and offset.

        Raises:
            PositionUnavailableError: If the reader has no current segment.
        """
        record = Assigned(segment=reader.get_current_segment(),
                          offset=reader.get_current_position())
        with self._lock:
            self._record = record
        return record

    def reset(self) -> None:
        with self._lock:
            self._record = UNASSIGNED

    def flush(self) -> bool:
        with self._lock:
            return flush(self._path, self._record)
