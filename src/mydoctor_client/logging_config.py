# src/mydoctor_client/logging_config.py

import logging
import sys
from pathlib import Path
from typing import Optional, Union

import colorlog

from .utils.paths import get_logs_dir


class LibraryDebugFilter(logging.Filter):
    """Only let DEBUG records from the client library through."""

    def filter(self, record):
        return record.levelno == logging.DEBUG and record.name.startswith(
            "mydoctor_client"
        )


def configure_logging(
    level: int = logging.INFO,
    logs_dir: Optional[Union[Path, str]] = None,
    log_to_file: bool = True,
) -> logging.Logger:
    """
    Attach a colored console handler, plus info/debug log files, to the
    root logger.

    Args:
        level: Console level.
        logs_dir: Directory for log files. Defaults to get_logs_dir().
        log_to_file: Disable to only log to the console.

    Returns:
        The library logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Re-configuring replaces the handlers added by a previous call
    for handler in list(root_logger.handlers):
        if getattr(handler, "_mydoctor_client", False):
            root_logger.removeHandler(handler)
            handler.close()

    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler._mydoctor_client = True
    console_handler.setLevel(level)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    root_logger.addHandler(console_handler)

    if log_to_file:
        try:
            target = Path(logs_dir) if logs_dir else get_logs_dir()
            target.mkdir(parents=True, exist_ok=True)

            info_file_handler = logging.FileHandler(target / "client.log", encoding="utf-8")
            info_file_handler.setLevel(logging.INFO)
            info_file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
            )

            debug_file_handler = logging.FileHandler(target / "debug.log", encoding="utf-8")
            debug_file_handler.setLevel(logging.DEBUG)
            debug_file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
            debug_file_handler.addFilter(LibraryDebugFilter())

            info_file_handler._mydoctor_client = True
            debug_file_handler._mydoctor_client = True
            root_logger.addHandler(info_file_handler)
            root_logger.addHandler(debug_file_handler)
        except (OSError, PermissionError) as e:
            logging.warning(f"Cannot create log file handlers: {e}")

    # Silence noisy transport loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return logging.getLogger("mydoctor_client")
