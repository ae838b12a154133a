"""Structured event logging for the ``taskpilot`` logger tree.

Every event is one ``event=<name> key=value ...`` line. Verbosity 1 keeps
warnings and the events in ``_SUMMARY_EVENTS``; verbosity 2 keeps everything.
"""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import sys
from typing import Final


_LOGGER_NAME: Final[str] = "taskpilot"
_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"
_MAX_VALUE_LEN: Final[int] = 160
_SUMMARY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "poll_cycle_completed",
        "item_dispatched",
        "item_dispatch_skipped",
        "item_dispatch_failed",
        "item_reprocessing",
        "item_duplicate_skipped",
        "source_fetch_failed",
        "ledger_cleanup",
        "worktree_created",
        "session_created",
    }
)


def configure_logging(verbosity: int, *, state_dir: Path | None = None) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if verbosity <= 0:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(DailyLogFileHandler(state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_FORMAT))
        if verbosity == 1:
            handler.addFilter(_SummaryFilter())
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(format_event(event, fields), extra={"event": event})


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(format_event(event, fields), extra={"event": event})


def format_event(event: str, fields: dict[str, object]) -> str:
    parts = [f"event={event}"]
    parts.extend(f"{key}={_render(fields[key])}" for key in sorted(fields))
    return " ".join(parts)


def _render(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, os.PathLike):
        text = os.fspath(value)
    elif isinstance(value, str):
        text = " ".join(value.split())
    elif isinstance(value, list | tuple | frozenset | set):
        text = ",".join(_render(entry) for entry in value)
    else:
        return f"<{type(value).__name__}>"

    if len(text) > _MAX_VALUE_LEN:
        text = f"{text[:_MAX_VALUE_LEN]}..."
    if not text or "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


class _SummaryFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return getattr(record, "event", None) in _SUMMARY_EVENTS


class DailyLogFileHandler(logging.FileHandler):
    """Appends to ``<logs_dir>/taskpilot-YYYY-MM-DD.log``, switching files at UTC midnight."""

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = logs_dir
        super().__init__(self._path_for_today(), mode="a", encoding="utf-8", delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        path = os.path.abspath(self._path_for_today())
        try:
            if path != self.baseFilename:
                with self.lock:  # type: ignore[union-attr]
                    if self.stream is not None:
                        self.stream.close()
                        self.stream = None  # type: ignore[assignment]
                    self.baseFilename = path
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self.handleError(record)
            return
        super().emit(record)

    def _path_for_today(self) -> Path:
        date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._logs_dir / f"taskpilot-{date_key}.log"
