# ==================================================
# ================ Logger Utilities ================
# ==================================================
from __future__ import annotations

import logging
import os
from logging.handlers import TimedRotatingFileHandler
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

# Public API
__all__ = ["DEFAULT_LOG_DIR", "LOG_FORMAT", "make_file_handler", "get_logger", "get_error_logger", "get_debug_logger"]

# ====[ Global logging configuration ]====
DEFAULT_LOG_DIR: Path = Path(os.environ.get("GRADORIENT_LOG_DIR", Path.cwd() / "logs"))
LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _sync_handler_levels(logger: logging.Logger, level: int) -> None:
    """
    Ensure that all existing handlers attached to a logger use the specified log level.

    Parameters
    ----------
    logger : logging.Logger
        Logger instance whose handlers will be updated.
    level : int
        Logging level to apply to all handlers (e.g., logging.INFO, logging.DEBUG).
    """
    for h in logger.handlers:
        h.setLevel(level)


# ====[ Shared rotating file handler generator ]====
def make_file_handler(
    log_path: Union[str, Path],
    level: int,
    when: str = "midnight",
    backupCount: int = 7,
    encoding: str = "utf-8",
    interval: int = 1,
) -> TimedRotatingFileHandler:
    """
    Create a TimedRotatingFileHandler with the standard formatter.

    Parameters
    ----------
    log_path : str | Path
        Output log file path. Parent directories are created.
    level : int
        Logging level (e.g., logging.INFO).
    when : str, default 'midnight'
        Rotation interval basis per logging.handlers.TimedRotatingFileHandler.
    backupCount : int, default 7
        Number of backup files to keep.
    encoding : str, default 'utf-8'
        File encoding.
    interval : int, default 1
        Rotation interval multiplier.

    Returns
    -------
    TimedRotatingFileHandler
    """
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = TimedRotatingFileHandler(
        filename=str(path),
        when=when,
        interval=interval,
        backupCount=backupCount,
        encoding=encoding,
        delay=True,  # open file on first emit
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def _file_logger(
    name: str,
    file_stem: str,
    log_dir: Optional[Union[str, Path]],
    level: int,
    backupCount: int,
    console: bool,
    when: str = "midnight",
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False

    if not logger.handlers:
        base_dir = Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR
        today = datetime.now().strftime("%Y-%m-%d")
        log_path = base_dir / f"{file_stem}_{today}.log"
        logger.addHandler(make_file_handler(log_path, level, when=when, backupCount=backupCount))

        if console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(level)
            console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(console_handler)
    else:
        _sync_handler_levels(logger, level)

    return logger


# ==================================================
# ================ Logger Factory ==================
# ==================================================

# ====[ Main logger: console + file ]====
def get_logger(
    name: str = "gradorient",
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    when: str = "midnight",
    backupCount: int = 7,
) -> logging.Logger:
    """
    Create and configure a logger with both console and file handlers (daily rotation).

    The logger is idempotent: repeated calls with the same `name` do not add duplicate handlers.
    Log propagation is disabled to avoid duplicate messages from the root logger.

    Parameters
    ----------
    name : str, optional
        Name of the logger instance. Default is "gradorient".
    log_dir : str or Path, optional
        Directory where log files will be stored. If None, use DEFAULT_LOG_DIR.
    level : int, optional
        Logging level. Default is logging.INFO.
    when : str, optional
        Time interval for log file rotation. Default is "midnight".
    backupCount : int, optional
        Number of backup log files to keep. Default is 7.

    Returns
    -------
    logging.Logger
        Configured logger instance.
    """
    return _file_logger(name, name, log_dir, level, backupCount, console=True, when=when)


# ====[ Error logger: file only ]====
def get_error_logger(
    name: str = "error_logger",
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.ERROR,
    backupCount: int = 30,
) -> logging.Logger:
    """
    Create and configure a dedicated error logger with daily rotating file output.

    Unlike the main logger, this logger does not write to the console.

    Parameters
    ----------
    name : str, optional
        Name of the logger instance. Default is "error_logger".
    log_dir : str or Path, optional
        Directory where error logs will be stored. If None, use DEFAULT_LOG_DIR.
    level : int, optional
        Logging level to capture. Default is logging.ERROR.
    backupCount : int, optional
        Number of daily log files to retain. Default is 30.

    Returns
    -------
    logging.Logger
    """
    return _file_logger(name, "errors", log_dir, level, backupCount, console=False)


# ====[ Debug logger: file only ]====
def get_debug_logger(
    name: str = "debug_logger",
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.DEBUG,
    backupCount: int = 7,
) -> logging.Logger:
    """
    Create and configure a dedicated debug logger with daily rotating file output.

    Records shape derivations and per-call traces without printing to the console.

    Returns
    -------
    logging.Logger
    """
    return _file_logger(name, "debug", log_dir, level, backupCount, console=False)
