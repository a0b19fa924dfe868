"""Configuration: frozen dataclass built from YAML, env vars, and CLI args.

Precedence, lowest first: dataclass defaults, YAML file (``--config``),
environment variables, command line flags.
"""

import argparse
import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime

import yaml

from dlq_input.segment import parse_timestamp

logger = logging.getLogger(__name__)

YAML_SECTION = "dead_letter_queue"


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Config:
    path: str = "./data/dead_letter_queue"
    pipeline_id: str = "main"
    sincedb_path: str | None = None
    commit_offsets: bool = True
    start_timestamp: str | None = None
    clean_consumed: bool = False
    data_path: str = "./data"
    poll_timeout_ms: int = 100
    cleanup_batch_size: int = 100
    log_level: str = "INFO"

    @property
    def queue_dir(self) -> str:
        """Directory holding this pipeline's segments."""
        return os.path.join(self.path, self.pipeline_id)

    @property
    def target_timestamp(self) -> datetime | None:
        if not self.start_timestamp:
            return None
        return parse_timestamp(self.start_timestamp)


def load_yaml_config(path: str | None) -> dict:
    """Load settings from a YAML file. Returns empty dict if no path.

    Settings may sit at the top level or under a ``dead_letter_queue`` key.
    """
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.info("Loaded YAML config from %s", path)
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    if YAML_SECTION in data:
        return data[YAML_SECTION] or {}
    return data


def validate_config(config: Config) -> None:
    """Reject inconsistent settings.

    Raises:
        ValueError: On an invalid combination or value.
    """
    if config.clean_consumed and not config.commit_offsets:
        raise ValueError("clean_consumed can be enabled only when commit_offsets is enabled")
    if config.sincedb_path and os.path.isdir(config.sincedb_path):
        raise ValueError(
            f'The "sincedb_path" argument must point to a file, received a directory: "{config.sincedb_path}"'
        )
    if config.poll_timeout_ms <= 0:
        raise ValueError(f"poll_timeout_ms must be positive, got {config.poll_timeout_ms}")
    if config.cleanup_batch_size <= 0:
        raise ValueError(f"cleanup_batch_size must be positive, got {config.cleanup_batch_size}")
    if config.start_timestamp:
        try:
            config.target_timestamp
        except ValueError as e:
            raise ValueError(f"Invalid start_timestamp {config.start_timestamp!r}: {e}") from e


def default_sincedb_path(config: Config) -> str:
    """Sincedb location used when none is configured, unique per queue directory."""
    digest = hashlib.md5(os.path.abspath(config.queue_dir).encode("utf-8")).hexdigest()
    return os.path.join(config.data_path, "plugins", "inputs", "dead_letter_queue",
                        config.pipeline_id, f".sincedb_{digest}")


def resolve_sincedb_path(config: Config) -> str:
    """Return the configured sincedb path, or the default one with its directory created."""
    if config.sincedb_path:
        return config.sincedb_path
    path = default_sincedb_path(config)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    logger.info("Using default sincedb path %s", path)
    return path


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dead letter queue consumer")
    parser.add_argument("--config", default=None, help="Path to YAML config file")
    parser.add_argument("--path", default=None, help="Dead letter queue root directory")
    parser.add_argument("--pipeline-id", default=None, help="Pipeline whose queue to read")
    parser.add_argument("--sincedb-path", default=None, help="File holding the last read position")
    parser.add_argument("--no-commit-offsets", action="store_true", default=False,
                        help="Do not persist the read position")
    parser.add_argument("--start-timestamp", default=None,
                        help="ISO-8601 time of the first entry to read (ignores sincedb)")
    parser.add_argument("--clean-consumed", action="store_true", default=False,
                        help="Delete segments once fully consumed")
    parser.add_argument("--data-path", default=None, help="Root for the default sincedb location")
    parser.add_argument("--poll-timeout-ms", type=int, default=None)
    parser.add_argument("--cleanup-batch-size", type=int, default=None)
    parser.add_argument("--log-level", default=None)
    return parser


def load_config(argv=None) -> Config:
    """Build Config from YAML, env vars, then CLI args."""
    args = build_cli_parser().parse_args(argv)
    file_data = load_yaml_config(args.config)

    def pick(cli_value, env_var: str, key: str, cast=str):
        if cli_value is not None:
            return cli_value
        if env_var in os.environ:
            return cast(os.environ[env_var])
        if file_data.get(key) is not None:
            return cast(file_data[key])
        return getattr(Config, key)

    return Config(
        path=pick(args.path, "DLQ_PATH", "path"),
        pipeline_id=pick(args.pipeline_id, "PIPELINE_ID", "pipeline_id"),
        sincedb_path=pick(args.sincedb_path, "SINCEDB_PATH", "sincedb_path"),
        commit_offsets=pick(False if args.no_commit_offsets else None,
                            "COMMIT_OFFSETS", "commit_offsets", _parse_bool),
        start_timestamp=pick(args.start_timestamp, "START_TIMESTAMP", "start_timestamp"),
        clean_consumed=pick(True if args.clean_consumed else None,
                            "CLEAN_CONSUMED", "clean_consumed", _parse_bool),
        data_path=pick(args.data_path, "DATA_PATH", "data_path"),
        poll_timeout_ms=pick(args.poll_timeout_ms, "POLL_TIMEOUT_MS", "poll_timeout_ms", int),
        cleanup_batch_size=pick(args.cleanup_batch_size, "CLEANUP_BATCH_SIZE",
                                "cleanup_batch_size", int),
        log_level=pick(args.log_level, "LOG_LEVEL", "log_level"),
    )
