from __future__ import annotations

import datetime
import logging
import os
from pathlib import Path
from typing import Optional

DEFAULT_LOG_KEEP = 10
LATEST_LINK = "latest"


def log_file_name(now: Optional[datetime.datetime] = None) -> str:
    now = now or datetime.datetime.now()
    return now.strftime("%Y-%m-%dT%H-%M-%S") + ".log"


def rotate_logs(log_dir: str | Path, keep: int = DEFAULT_LOG_KEEP) -> int:
    """Delete all but the newest ``keep`` logs. Returns how many went."""

    d = Path(log_dir)
    if not d.is_dir():
        return 0
    logs = sorted(p for p in d.glob("*.log") if p.is_file() and not p.is_symlink())
    stale = logs[: max(len(logs) - keep, 0)]
    for p in stale:
        p.unlink()
    return len(stale)


def configure_logging(
    log_dir: str | Path,
    level: int = logging.INFO,
    also_console: bool = True,
    keep: int = DEFAULT_LOG_KEEP,
    console_level: Optional[int] = None,
) -> str:
    """Configure logging for one build.

    - Every run writes ``<log_dir>/<timestamp>.log`` with DEBUG detail,
      including streamed output of external commands.
    - ``<log_dir>/latest`` points at the current run's log.
    - Only the newest ``keep`` logs are kept.

    If the log directory is not writable the log goes to the current working
    directory instead. Returns the actual file path being used.
    """

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # Avoid duplicate handlers if configure_logging() is called multiple times.
    if getattr(logger, "_imagesmith_configured", False):
        return getattr(logger, "_imagesmith_log_path")

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    d = Path(log_dir)
    name = log_file_name()
    handlers: list[logging.Handler] = []
    try:
        d.mkdir(parents=True, exist_ok=True)
        rotate_logs(d, keep=max(keep - 1, 0))
        chosen_path = str(d / name)
        file_handler = logging.FileHandler(chosen_path)
        latest = d / LATEST_LINK
        if latest.is_symlink() or latest.exists():
            latest.unlink()
        os.symlink(name, latest)
    except OSError:
        chosen_path = str(Path.cwd() / f"imagesmith-{name}")
        file_handler = logging.FileHandler(chosen_path)
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.DEBUG)
    handlers.append(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter("%(message)s"))
        console.setLevel(console_level if console_level is not None else level)
        handlers.append(console)

    for h in handlers:
        logger.addHandler(h)

    setattr(logger, "_imagesmith_configured", True)
    setattr(logger, "_imagesmith_log_path", chosen_path)

    logging.getLogger(__name__).debug("Logging initialized (dir=%s, actual=%s)", log_dir, chosen_path)
    return chosen_path
