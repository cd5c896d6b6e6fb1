"""
Logging configuration for the mail sync engine.

Sets up a rotating log file plus console output. Library modules only ever
call ``logging.getLogger(__name__)``; configuration happens once, at the
entry point.
"""
import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from mailsync import config


# Maximum log file size (10 MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Number of backup log files to keep
BACKUP_COUNT = 5

LOG_FILE_NAME = "mailsync.log"


def setup_logging(debug: bool = False, log_dir: Optional[Path] = None) -> Path:
    """
    Configure root logging.

    Sets up:
    - Rotating file handler under ``log_dir`` (defaults to ``config.LOG_DIR``)
    - Console handler showing WARNING and above (everything when debug)

    Args:
        debug: If True, sets log level to DEBUG. Otherwise, uses INFO.
        log_dir: Directory for the log file.

    Returns:
        Path of the active log file.
    """
    log_dir = Path(log_dir or config.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    log_level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    simple_formatter = logging.Formatter(fmt='%(levelname)s - %(message)s')

    file_handler = logging.handlers.RotatingFileHandler(
        filename=str(log_file),
        maxBytes=MAX_LOG_SIZE,
        backupCount=BACKUP_COUNT,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    console_handler.setFormatter(simple_formatter)
    root_logger.addHandler(console_handler)

    _suppress_noisy_loggers()

    logging.getLogger(__name__).info(
        "Logging initialised (level=%s, file=%s)", logging.getLevelName(log_level), log_file
    )
    return log_file


def _suppress_noisy_loggers() -> None:
    """Quiet third-party libraries that are chatty at DEBUG/INFO."""
    for name in ("urllib3", "requests", "imaplib", "smtplib", "cryptography"):
        logging.getLogger(name).setLevel(logging.WARNING)
