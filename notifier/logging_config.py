"""Root logger setup for notifier processes (worker, promoter, CLI commands)."""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Client libraries that log every round trip at DEBUG
_CHATTY_LOGGERS = ("aiosqlite", "redis")


def _rotating_file(path: Path, cfg: dict[str, Any]) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        path,
        maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(cfg.get("backup_count", 3)),
        encoding="utf-8",
    )


def _build_handlers(project_root: Path, cfg: dict[str, Any]) -> list[logging.Handler]:
    """File handler when logging.file is set; console unless disabled and a file exists."""
    handlers: list[logging.Handler] = []
    if cfg.get("file"):
        handlers.append(_rotating_file(project_root / cfg["file"], cfg))
    if cfg.get("log_to_console", True) or not handlers:
        handlers.append(logging.StreamHandler())
    return handlers


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Replace the root logger's handlers according to the `logging` settings section.

    Relative log file paths resolve against project_root. Store client
    libraries stay at WARNING or above so DEBUG output is the pipeline's own.
    """
    cfg = settings.get("logging") or {}
    level = logging.getLevelName(str(cfg.get("level", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger()
    for old in root.handlers[:]:
        root.removeHandler(old)
    for handler in _build_handlers(project_root, cfg):
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
