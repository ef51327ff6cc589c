"""Process-wide logging configuration.

Both planes log to a daily-rotating file under the configured log directory;
outside production the same records are echoed to the console. Modules obtain
their logger with ``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler

from bookocr.core.config import Settings


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %I:%M:%S %p"

_HANDLER_MARK = "_bookocr_handler"


def configure_logging(settings: Settings, *, force: bool = False) -> logging.Logger:
    root = logging.getLogger()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    existing = [handler for handler in root.handlers if getattr(handler, _HANDLER_MARK, False)]
    if existing and not force:
        root.setLevel(level)
        return root
    for handler in existing:
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    log_dir = settings.log_path
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = TimedRotatingFileHandler(
        log_dir / "bookocr.log",
        when="midnight",
        backupCount=settings.log_retention_days,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    setattr(file_handler, _HANDLER_MARK, True)
    root.addHandler(file_handler)

    if not settings.production:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        setattr(console, _HANDLER_MARK, True)
        root.addHandler(console)

    root.setLevel(level)
    for noisy in ("boto3", "botocore", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return root
