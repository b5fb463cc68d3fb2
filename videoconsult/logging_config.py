"""
Logging setup for the video consultation service.

Each process writes its own categories to separate files, and every
ERROR from any category also lands in errors.log:

    logs/
    ├── server.log          # HTTP API requests
    ├── session.log         # Session lifecycle (create, join, admit, share, record, reap)
    ├── storage.log         # Session store (SQLite, Redis)
    ├── livekit.log         # LiveKit tokens and rooms
    ├── notifications.log   # Webhooks
    ├── auth.log            # Bearer token resolution
    ├── client.log          # Client cache, rate limiter, poller
    └── errors.log          # ERROR+ from every category

Usage:
    from videoconsult.logging_config import setup_logging
    setup_logging("server")
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog

LOGS_DIR = Path(__file__).parent.parent / "logs"

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Categories each process writes, one file per category
PROCESS_CATEGORIES = {
    "server": ["server", "session", "storage", "livekit", "notifications", "auth"],
    "client": ["client"],
    "scripts": ["session", "storage", "livekit"],
}

_initialized = False


def _file_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.FileHandler(str(path), encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(component: str, level: str = "DEBUG", logs_dir: Optional[Path] = None) -> List[str]:
    """Route stdlib and structlog output to the console and per-category files.

    Args:
        component: "server", "client" or "scripts"
        level: Minimum level name
        logs_dir: Directory for the log files (``logs/`` by default)

    Returns:
        The categories that were given a file.

    Raises:
        ValueError: Unknown component
    """
    global _initialized

    categories = PROCESS_CATEGORIES.get(component)
    if categories is None:
        raise ValueError(f"Unknown logging component: {component!r}")
    if _initialized:
        return categories
    _initialized = True

    target_dir = Path(logs_dir) if logs_dir else LOGS_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    log_level = getattr(logging, level.upper(), logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(log_level)
    console.setFormatter(formatter)
    root.addHandler(console)
    root.addHandler(_file_handler(target_dir / "errors.log", logging.ERROR, formatter))

    # Category loggers keep propagating so the console and errors.log see them
    for category in categories:
        category_logger = logging.getLogger(category)
        category_logger.setLevel(log_level)
        if not category_logger.handlers:
            category_logger.addHandler(_file_handler(target_dir / f"{category}.log", log_level, formatter))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.get_logger(component).info("logging_initialized", categories=categories, level=level)
    return categories
