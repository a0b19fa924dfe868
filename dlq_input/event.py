"""Turns DLQ entries into events carrying dead letter queue metadata."""

import copy

from dlq_input.segment import DLQEntry, format_timestamp

METADATA_KEY = "@metadata"
DLQ_METADATA_KEY = "dead_letter_queue"


def to_event(entry: DLQEntry) -> dict:
    """Copy the entry's event and record why it was dead-lettered.

    The original event is left untouched. Sets
    ``@metadata.dead_letter_queue.{plugin_type, plugin_id, reason, entry_time}``.
    """
    event = copy.deepcopy(entry.event)
    metadata = event.setdefault(METADATA_KEY, {})
    metadata[DLQ_METADATA_KEY] = {
        "plugin_type": entry.plugin_type,
        "plugin_id": entry.plugin_id,
        "reason": entry.reason,
        "entry_time": format_timestamp(entry.entry_time),
    }
    return event
