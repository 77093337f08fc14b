"""Logging setup: colored console lines plus a JSON-lines run log."""

import logging
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


# Structured fields copied from log records into JSON output
STRUCTURED_FIELDS = ('run_id', 'target', 'descriptor', 'stage_state', 'duration')

# Client libraries that are chatty at INFO
NOISY_LOGGERS = ('kubernetes', 'urllib3', 'websocket')


class JSONFormatter(logging.Formatter):
    """One JSON object per record, including run and stage fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        entry.update({
            name: getattr(record, name)
            for name in STRUCTURED_FIELDS
            if hasattr(record, name)
        })
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Short colored lines prefixed with the descriptor being worked on."""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        level = f"{self.COLORS.get(record.levelname, '')}{record.levelname:8}{self.RESET}"

        text = record.getMessage()
        descriptor = getattr(record, 'descriptor', None)
        if descriptor:
            text = f"[{descriptor}] {text}"
        if record.exc_info and record.levelno >= logging.ERROR:
            text = f"{text}\n{self.formatException(record.exc_info)}"

        return f"{clock} {level} {text}"


def setup_logging(log_level: str = 'info', log_dir: Optional[str] = '.phased/logs') -> None:
    """Configure the root logger for one CLI invocation.

    Console output goes to stderr at ``log_level`` so ``--json`` output on
    stdout stays parseable. The run log under ``log_dir`` always gets DEBUG.

    Args:
        log_level: Console level (debug, info, warning, error)
        log_dir: Directory for the JSON-lines run log, or None to skip it
    """
    console_level = getattr(logging, log_level.upper())

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if log_dir else console_level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    if log_dir:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        run_log = logging.FileHandler(
            directory / f"phased-{datetime.now(timezone.utc):%Y%m%d}.jsonl"
        )
        run_log.setLevel(logging.DEBUG)
        run_log.setFormatter(JSONFormatter())
        root.addHandler(run_log)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """Attach run and stage fields to every record created inside a ``with`` block.

    Contexts nest: an inner context adds its fields on top of the outer
    ones and restores them on exit.
    """

    def __init__(self, logger: logging.Logger, **fields: Any):
        self.logger = logger
        self.fields = fields
        self._previous = None

    def __enter__(self):
        previous = logging.getLogRecordFactory()
        fields = self.fields

        def factory(*args, **kwargs):
            record = previous(*args, **kwargs)
            for key, value in fields.items():
                setattr(record, key, value)
            return record

        self._previous = previous
        logging.setLogRecordFactory(factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._previous is not None:
            logging.setLogRecordFactory(self._previous)
            self._previous = None
