# utils/logger.py
import os
import logging
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _env_flag(name: str, default: bool = True) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off", "")


def setup_logger(
    logger_name: str,
    log_file: Optional[str] = None,
    level: Optional[int] = None,
    log_dir: Optional[str] = None
) -> logging.Logger:
    """
    Set up and return a logger with console and (optionally) file handlers.

    Args:
        logger_name: Name of the logger. Child loggers such as
            ``warehouse.silver`` inherit its handlers.
        log_file: Optional specific log filename (default: {logger_name}.log)
        level: Logging level (default: LOG_LEVEL env var, else INFO)
        log_dir: Directory for log files (default: LOG_DIR env var, else logs).
            An empty string, or LOG_TO_FILE=0, disables the file handler.

    Returns:
        Configured logger instance
    """
    if level is None:
        level = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO").upper())
        if not isinstance(level, int):
            level = logging.INFO

    if log_dir is None:
        log_dir = os.environ.get("LOG_DIR", "logs")
    write_file = bool(log_dir) and _env_flag("LOG_TO_FILE")

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    # Clear existing handlers to avoid duplicates if logger already exists
    if logger.handlers:
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if write_file:
        os.makedirs(log_dir, exist_ok=True)
        if log_file is None:
            log_file = f"{logger_name.lower().replace(' ', '_').replace('.', '_')}.log"
        log_path = os.path.join(log_dir, log_file)

        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        logger.info(f"Log file is being saved to: {os.path.abspath(log_path)}")

    return logger
