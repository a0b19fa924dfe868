"""Dead letter queue consumer: prints each dead-lettered event as a JSON line."""

import json
import logging
import signal
import sys
import threading

from dlq_input.config import load_config
from dlq_input.event import to_event
from dlq_input.metrics import ConsumerMetrics
from dlq_input.plugin import DeadLetterQueueInput

logger = logging.getLogger(__name__)


def _write_event(entry) -> None:
    sys.stdout.write(json.dumps(to_event(entry), separators=(",", ":")) + "\n")
    sys.stdout.flush()


def main(argv=None) -> int:
    config = load_config(argv)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [dlq-input] %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    logger.info(
        "Config: queue_dir=%s, sincedb=%s, commit_offsets=%s, start_timestamp=%s, clean_consumed=%s",
        config.queue_dir, config.sincedb_path or "<default>", config.commit_offsets,
        config.start_timestamp, config.clean_consumed,
    )

    metrics = ConsumerMetrics()
    plugin = DeadLetterQueueInput.from_config(config, metrics)
    stop_requested = threading.Event()

    def _signal_handler(signum, _frame):
        logger.info("Received signal %d, shutting down...", signum)
        stop_requested.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        plugin.register()
    except Exception as e:
        logger.error("DLQ startup failed: %s", e)
        plugin.close()
        return 1
    errors: list[BaseException] = []

    def _consume():
        try:
            plugin.run(_write_event)
        except Exception as e:
            logger.error("DLQ consumption failed: %s", e)
            errors.append(e)
            stop_requested.set()

    worker = threading.Thread(target=_consume, name="dlq-consumer", daemon=True)
    worker.start()

    while not stop_requested.is_set():
        stop_requested.wait(0.5)

    plugin.close()
    worker.join(timeout=5)
    logger.info("Stats: %s", metrics.snapshot())
    return 1 if errors else 0


if __name__ == "__main__":
    sys.exit(main())
