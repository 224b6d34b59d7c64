"""Run narrative logging for storesync.

Every decision is logged as one ``event=<name> key=value ...`` line.  Lines are
stamped ``YYYY-MM-DD HH:MM:SS - `` in UTC so output from scheduled runs lines up
across hosts; under dry-run each line also carries a ``[DRY RUN]`` marker.

stderr shows warnings only unless ``--verbose`` is given.  When a state
directory is known, the complete narrative of the run is appended to
``<state_dir>/logs/storesync-YYYY-MM-DD.log``.
"""

from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
import time
from typing import Final


_LOGGER_NAME: Final[str] = "storesync"
_MAX_VALUE_LEN: Final[int] = 160
_DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"
DRY_RUN_MARKER: Final[str] = "[DRY RUN] "


class RunFormatter(logging.Formatter):
    """UTC timestamped narrative line, marked for warnings and dry-run."""

    converter = time.gmtime

    def __init__(self, *, dry_run: bool = False) -> None:
        super().__init__(datefmt=_DATE_FORMAT)
        self.dry_run = dry_run

    def format(self, record: logging.LogRecord) -> str:
        marker = DRY_RUN_MARKER if self.dry_run else ""
        if record.levelno >= logging.WARNING:
            marker += f"{record.levelname}: "
        line = f"{self.formatTime(record, self.datefmt)} - {marker}{record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(
    verbose: bool = False,
    *,
    state_dir: Path | None = None,
    dry_run: bool = False,
) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.INFO)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    console.setFormatter(RunFormatter(dry_run=dry_run))
    logger.addHandler(console)

    if state_dir is not None:
        run_log = logging.FileHandler(run_log_path(state_dir), encoding="utf-8", delay=True)
        run_log.setLevel(logging.INFO)
        run_log.setFormatter(RunFormatter(dry_run=dry_run))
        logger.addHandler(run_log)


def run_log_path(state_dir: Path, *, now: datetime | None = None) -> Path:
    day = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    logs_dir = state_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir / f"storesync-{day}.log"


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(format_event(event, fields))


def log_warning(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(format_event(event, fields))


def format_event(event: str, fields: dict[str, object]) -> str:
    pairs = [f"{key}={_render(value)}" for key, value in sorted(fields.items())]
    return " ".join([f"event={event}", *pairs])


def _render(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, Path):
        value = str(value)
    if not isinstance(value, str):
        return f"<{type(value).__name__}>"
    text = " ".join(value.split())
    if len(text) > _MAX_VALUE_LEN:
        text = text[: _MAX_VALUE_LEN - 3] + "..."
    if not text or " " in text or "=" in text:
        # Quoted so the line still splits cleanly on spaces.
        return json.dumps(text)
    return text
