"""Tests for dlq_input/reader.py"""

import os
from datetime import datetime, timedelta, timezone

import pytest

from dlq_input.errors import PositionUnavailableError, ReaderError
from dlq_input.reader import DeadLetterQueueReader, SegmentListener
from dlq_input.segment import (
    SEGMENT_HEADER_SIZE,
    SEGMENT_VERSION,
    DLQEntry,
    SegmentWriter,
    encode_record,
    list_segments,
)

EPOCH = datetime(2017, 3, 28, tzinfo=timezone.utc)


class RecordingListener(SegmentListener):
    def __init__(self):
        self.completed = 0
        self.deleted: list[tuple[int, int]] = []

    def segment_completed(self):
        self.completed += 1

    def segments_deleted(self, count, events):
        self.deleted.append((count, events))


def _entry(i: int) -> DLQEntry:
    return DLQEntry(event={"n": i}, plugin_type="test", plugin_id="test", reason="test",
                    entry_time=EPOCH + timedelta(seconds=i))


def _record_size() -> int:
    return len(encode_record(_entry(0)))


def _write(queue_dir, count, start=0, per_segment=None) -> None:
    size = 10 * 1024 * 1024
    if per_segment:
        size = SEGMENT_HEADER_SIZE + per_segment * _record_size()
    with SegmentWriter(str(queue_dir), max_segment_size=size) as writer:
        for i in range(start, start + count):
            writer.write_entry(_entry(i))


def _drain(reader, timeout_ms=100) -> list[int]:
    seen = []
    while True:
        entry = reader.poll_entry(timeout_ms)
        if entry is None:
            return seen
        seen.append(entry.event["n"])


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def open_reader(tmp_path, listener):
    readers = []

    def _open(clean_consumed=False):
        reader = DeadLetterQueueReader(str(tmp_path), clean_consumed=clean_consumed, listener=listener)
        readers.append(reader)
        return reader

    yield _open
    for reader in readers:
        reader.close()


# ── polling ───────────────────────────────────────────────────────


class TestPoll:
    def test_reads_entries_in_order(self, tmp_path, open_reader):
        _write(tmp_path, 10)
        reader = open_reader()
        assert _drain(reader) == list(range(10))

    def test_empty_queue_times_out(self, open_reader):
        reader = open_reader()
        assert reader.poll_entry(50) is None

    def test_follows_new_entries(self, tmp_path, open_reader):
        _write(tmp_path, 3)
        reader = open_reader()
        assert _drain(reader) == [0, 1, 2]
        _write(tmp_path, 2, start=3)
        assert _drain(reader, timeout_ms=500) == [3, 4]

    def test_picks_up_first_segment_created_later(self, tmp_path, open_reader):
        reader = open_reader()
        assert reader.poll_entry(20) is None
        _write(tmp_path, 2)
        assert _drain(reader, timeout_ms=500) == [0, 1]

    def test_partial_record_is_not_delivered(self, tmp_path, open_reader):
        record = encode_record(_entry(0))
        path = tmp_path / "1.log"
        path.write_bytes(SEGMENT_VERSION + record[:-5])
        reader = open_reader()
        assert reader.poll_entry(50) is None
        with open(path, "ab") as f:
            f.write(record[-5:])
        assert reader.poll_entry(500).event == {"n": 0}

    def test_corrupt_record_raises_reader_error(self, tmp_path, open_reader):
        payload = b"not-a-record"
        (tmp_path / "1.log").write_bytes(SEGMENT_VERSION + len(payload).to_bytes(4, "big") + payload)
        reader = open_reader()
        with pytest.raises(ReaderError, match="Corrupt DLQ record"):
            reader.poll_entry(50)

    def test_unsupported_segment_version_raises(self, tmp_path, open_reader):
        (tmp_path / "1.log").write_bytes(b"9")
        reader = open_reader()
        with pytest.raises(ReaderError, match="Unsupported DLQ segment version"):
            reader.poll_entry(50)

    def test_closed_reader_returns_none(self, tmp_path, open_reader):
        _write(tmp_path, 3)
        reader = open_reader()
        reader.close()
        assert reader.poll_entry(50) is None

    def test_close_is_idempotent(self, open_reader):
        reader = open_reader()
        reader.close()
        reader.close()


# ── position ──────────────────────────────────────────────────────


class TestPosition:
    def test_no_position_before_first_segment(self, open_reader):
        reader = open_reader()
        with pytest.raises(PositionUnavailableError):
            reader.get_current_segment()
        with pytest.raises(PositionUnavailableError):
            reader.get_current_position()

    def test_position_advances_by_record_size(self, tmp_path, open_reader):
        _write(tmp_path, 2)
        reader = open_reader()
        reader.poll_entry(50)
        assert reader.get_current_segment() == str(tmp_path / "1.log")
        assert reader.get_current_position() == SEGMENT_HEADER_SIZE + _record_size()

    def test_resume_from_position(self, tmp_path, open_reader):
        _write(tmp_path, 5)
        first = open_reader()
        _drain_count = [first.poll_entry(50) for _ in range(3)]
        assert len(_drain_count) == 3
        segment, offset = first.get_current_segment(), first.get_current_position()

        second = open_reader()
        second.set_current_reader_and_position(segment, offset)
        assert _drain(second) == [3, 4]

    def test_resume_at_deleted_segment_moves_to_next(self, tmp_path, open_reader):
        _write(tmp_path, 6, per_segment=2)
        os.remove(tmp_path / "1.log")
        reader = open_reader()
        reader.set_current_reader_and_position(str(tmp_path / "1.log"), 50)
        assert reader.get_current_segment() == str(tmp_path / "2.log")
        assert _drain(reader) == [2, 3, 4, 5]


# ── segment transitions ───────────────────────────────────────────


class TestSegmentCompletion:
    def test_listener_fires_per_segment_transition(self, tmp_path, open_reader, listener):
        _write(tmp_path, 10, per_segment=3)
        segments = list_segments(str(tmp_path))
        reader = open_reader()
        assert _drain(reader) == list(range(10))
        assert listener.completed == len(segments) - 1
        assert reader.get_current_segment() == segments[-1]

    def test_position_after_completion_is_next_segment_start(self, tmp_path, listener):
        _write(tmp_path, 4, per_segment=2)
        positions = []

        class CapturingListener(SegmentListener):
            def segment_completed(self_inner):
                positions.append((reader.get_current_segment(), reader.get_current_position()))

        reader = DeadLetterQueueReader(str(tmp_path), listener=CapturingListener())
        try:
            _drain(reader)
        finally:
            reader.close()
        assert positions[0] == (str(tmp_path / "2.log"), SEGMENT_HEADER_SIZE)


# ── timestamp seek ────────────────────────────────────────────────


class TestSeekToNextEvent:
    def test_seeks_to_first_entry_at_or_after(self, tmp_path, open_reader):
        _write(tmp_path, 20, per_segment=4)
        reader = open_reader()
        reader.seek_to_next_event(EPOCH + timedelta(seconds=9))
        assert _drain(reader) == list(range(9, 20))

    def test_timestamp_between_entries(self, tmp_path, open_reader):
        _write(tmp_path, 5)
        reader = open_reader()
        reader.seek_to_next_event(EPOCH + timedelta(seconds=2, milliseconds=500))
        assert _drain(reader) == [3, 4]

    def test_timestamp_after_all_entries_waits_for_new(self, tmp_path, open_reader):
        _write(tmp_path, 5)
        reader = open_reader()
        reader.seek_to_next_event(EPOCH + timedelta(days=1))
        assert reader.poll_entry(50) is None
        _write(tmp_path, 1, start=100)
        assert _drain(reader, timeout_ms=500) == [100]

    def test_seek_does_not_fire_listener(self, tmp_path, open_reader, listener):
        _write(tmp_path, 12, per_segment=3)
        reader = open_reader()
        reader.seek_to_next_event(EPOCH + timedelta(seconds=10))
        assert listener.completed == 0


# ── cleanup ───────────────────────────────────────────────────────


class TestMarkForDelete:
    def test_deletes_consumed_segments(self, tmp_path, open_reader, listener):
        _write(tmp_path, 9, per_segment=3)
        reader = open_reader(clean_consumed=True)
        for _ in range(7):
            reader.poll_entry(50)
        reader.mark_for_delete()
        remaining = [os.path.basename(s) for s in list_segments(str(tmp_path))]
        assert "1.log" not in remaining and "2.log" not in remaining
        assert listener.deleted == [(2, 6)]
        assert _drain(reader) == [7, 8]

    def test_noop_without_clean_consumed(self, tmp_path, open_reader, listener):
        _write(tmp_path, 9, per_segment=3)
        reader = open_reader()
        _drain(reader)
        reader.mark_for_delete()
        assert len(list_segments(str(tmp_path))) == 4
        assert listener.deleted == []

    def test_noop_before_any_read(self, tmp_path, open_reader, listener):
        _write(tmp_path, 3)
        reader = open_reader(clean_consumed=True)
        reader.mark_for_delete()
        assert listener.deleted == []
