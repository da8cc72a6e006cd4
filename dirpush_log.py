# /dirpush_log.py
"""
Shared logging for the dirpush client and server.

- Console output is colored by action when stdout is a TTY:
  - UPLOAD / RECEIVE green
  - QUEUE / EVENT / WATCH light brown
  - SKIP / REJECT orange
  - errors red
  - file paths white, folder paths light brown
- Optional log file per day, always plain (no color codes).
"""

from __future__ import annotations

import datetime as dt
import logging
import sys
from pathlib import Path
from typing import Optional

from colorama import init as colorama_init


class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "UPLOAD": Ansi.GREEN,
    "RECEIVE": Ansi.GREEN,
    "QUEUE": Ansi.LIGHT_BROWN,
    "EVENT": Ansi.LIGHT_BROWN,
    "WATCH": Ansi.LIGHT_BROWN,
    "SKIP": Ansi.ORANGE,
    "REJECT": Ansi.ORANGE,
}

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except (AttributeError, ValueError):
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        if action and action in base:
            action_color = ACTION_COLORS.get(action, "")
            base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        path_text = getattr(record, "path_text", None)
        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if getattr(record, "is_dir", False) else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str) -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(name: str, log_dir: Optional[Path] = None, level: int = logging.INFO) -> logging.Logger:
    """Configure the named logger with a console handler and, if *log_dir* is
    given, a dated plain-text log file. Safe to call more than once."""
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name(name.replace(".", "_"))
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        fh.setLevel(level)
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir)
    logger.log(level, "%s | %s", action, message, extra=extra)
