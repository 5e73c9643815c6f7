import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "STOREMASTER_LOG_DIR"
LOG_LEVEL_ENV = "STOREMASTER_LOG_LEVEL"


def resolve_log_dir(environ: Mapping[str, str] = os.environ) -> Path:
    """Return the log directory, honouring ``STOREMASTER_LOG_DIR``.

    Installed copies of the package would otherwise log into site-packages.
    """

    override = environ.get(LOG_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return PROJECT_ROOT / ".logs"


def resolve_log_level(environ: Mapping[str, str] = os.environ) -> int:
    """Map ``STOREMASTER_LOG_LEVEL`` (``DEBUG``, ``WARNING``...) to a level."""

    name = environ.get(LOG_LEVEL_ENV, "").strip().upper()
    level = logging.getLevelName(name) if name else logging.INFO
    return level if isinstance(level, int) else logging.INFO


LOG_DIR = resolve_log_dir()
LOG_FILE = LOG_DIR / "storemaster.log"


def _configure_logging() -> logging.Logger:
    """Configure package-wide logging with file and console handlers."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = resolve_log_level()
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.info("Logger initialized for the 'storemaster' package.")
