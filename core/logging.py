import logging
import os
import sys
import json
from logging.handlers import RotatingFileHandler
from pathlib import Path

# --- Constants ---
LOG_DIR = Path(os.environ.get("CODEBRIDGE_LOG_DIR", Path(__file__).resolve().parent.parent / 'logs'))
LOG_FILE = LOG_DIR / 'codebridge.log'
MAX_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "websockets")

# Attributes every LogRecord has; anything else came in through ``extra=``
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

class JsonFormatter(logging.Formatter):
    """
    One JSON object per line. Values passed with ``extra={...}`` (request ids,
    actions, provider names) are copied into the object.
    """
    def format(self, record):
        log_object = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "module": record.module,
            "line": record.lineno,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED and not key.startswith("_"):
                log_object[key] = value
        if record.exc_info:
            log_object['exc_info'] = self.formatException(record.exc_info)

        return json.dumps(log_object, default=str)

def setup_logging(log_level=logging.INFO, log_file=LOG_FILE):
    """
    Configures the root logger.
    - Console: plain text on stderr. stdout carries the native-messaging
      channel when running as a host process, so nothing else may write there.
    - File: JSON lines with rotation. Pass ``log_file=None`` to skip it.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))

    # Clear existing handlers to avoid duplicates
    if root_logger.hasHandlers():
        root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding='utf-8')
        file_handler.setLevel(log_level)
        file_handler.setFormatter(JsonFormatter())
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger

# --- Initial Setup ---
# CODEBRIDGE_LOG_FILE=off keeps logs on stderr only (e.g. read-only installs)
logger = setup_logging(
    os.environ.get("LOG_LEVEL", "INFO").upper(),
    None if os.environ.get("CODEBRIDGE_LOG_FILE", "").lower() == "off" else LOG_FILE,
)
