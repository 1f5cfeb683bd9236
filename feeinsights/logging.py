"""Logging setup for the fee insights service."""

import logging
import logging.handlers
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict

if TYPE_CHECKING:
    from .config import Config

FILE_FORMAT = '%(asctime)s [%(levelname)-8s] [%(name)s] [%(threadName)s] %(message)s'
CONSOLE_FORMAT = '[%(levelname)-8s] [%(name)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

MAIN_LOG = "feeinsights.log"
ERROR_LOG = "feeinsights-error.log"


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def _main_handler(log_dir: Path, rotation: Dict[str, Any]) -> logging.Handler:
    """Main log: daily rotation into archive/, or size rotation beside it."""
    path = log_dir / MAIN_LOG
    if rotation.get("when") != "midnight":
        return logging.handlers.RotatingFileHandler(
            path,
            maxBytes=rotation["max_bytes"],
            backupCount=rotation["backup_count"],
            encoding="utf-8",
        )

    archive_dir = log_dir / "archive"
    archive_dir.mkdir(exist_ok=True)
    handler = logging.handlers.TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=rotation["backup_count"],
        encoding="utf-8",
    )
    handler.namer = lambda name: str(archive_dir / Path(name).name)
    return handler


def _error_handler(log_dir: Path, rotation: Dict[str, Any]) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        log_dir / ERROR_LOG,
        maxBytes=rotation["max_bytes"],
        backupCount=rotation["backup_count"],
        encoding="utf-8",
    )
    handler.setLevel(logging.ERROR)
    return handler


def setup_logging(config: "Config") -> None:
    """
    Route engine, provider and store logs to files and the console.

    Files get every record at ``logging.level`` or above, with the thread
    name so loop-thread records can be told apart from the CLI thread.
    ERROR and above are also copied to a separate error log.

    Args:
        config: Configuration instance with logging settings
    """
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    file_level = _level(config.log_level)
    console_level = _level(config.console_level)
    rotation = config.log_rotation

    root_logger = logging.getLogger()
    root_logger.setLevel(min(file_level, console_level))
    root_logger.handlers.clear()

    file_formatter = logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT)
    main_handler = _main_handler(log_dir, rotation)
    main_handler.setLevel(file_level)
    for handler in (main_handler, _error_handler(log_dir, rotation)):
        handler.setFormatter(file_formatter)
        root_logger.addHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    # requests logs every Horizon poll through urllib3 at DEBUG
    logging.getLogger("urllib3").setLevel(max(file_level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Module logger; handlers come from ``setup_logging``."""
    return logging.getLogger(name)
