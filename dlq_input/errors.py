"""Exception types raised by the dead letter queue consumer.

Missing or invalid queue directories use the built-in FileNotFoundError and
NotADirectoryError.
"""


class DLQError(Exception):
    """Base class for dead letter queue consumer errors."""


class SinceDBFormatError(DLQError, ValueError):
    """The sincedb file has an unsupported version or a truncated record."""


class PositionUnavailableError(DLQError, RuntimeError):
    """No segment/offset is known yet (unassigned sincedb or idle reader)."""


class ReaderError(DLQError, OSError):
    """The queue reader failed while reading a segment."""
