from __future__ import annotations

"""Process-wide log configuration with credential redaction."""

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Pattern, Tuple

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_FILE_NAME = "securevision.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# httpx logs full request URLs, which include the bot token.
NOISY_LOGGERS = ("httpx", "httpcore")


class SensitiveDataFilter(logging.Filter):
    """Redact Telegram bot tokens and camera stream credentials."""

    _RULES: List[Tuple[Pattern[str], str]] = [
        (re.compile(r"(https://api\.telegram\.org/bot)[^/\s]+"), r"\1<redacted>"),
        (re.compile(r"((?:rtsp|rtsps|http|https)://)[^/@\s]+@"), r"\1<redacted>@"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern, replacement in self._RULES:
            redacted = pattern.sub(replacement, redacted)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def configure_logging(log_dir: Path = Path("logs"), level: int = logging.INFO) -> Path:
    """Send records to the console and a rotating file; returns the file path."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    handlers: List[logging.Handler] = [
        logging.StreamHandler(),
        RotatingFileHandler(
            filename=str(log_file),
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        ),
    ]

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    redactor = SensitiveDataFilter()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(redactor)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_file
