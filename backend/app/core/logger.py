# backend/app/core/logger.py

import logging
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path

from app.core.config_loader import settings


# -------------------------------------------------------------------
# REQUEST CONTEXT
# -------------------------------------------------------------------
# Set by RelayRun; every record emitted while serving that request carries it.
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


# -------------------------------------------------------------------
# LOG DIRECTORY + FILE SETUP
# -------------------------------------------------------------------
if settings.LOG_DIR:
    LOG_DIR = Path(settings.LOG_DIR)
else:
    LOG_DIR = Path(__file__).resolve().parents[2] / "logs"
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOG_DIR / "app.log"


# -------------------------------------------------------------------
# FORMATTER
# -------------------------------------------------------------------
LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(name)s | req=%(request_id)s | %(funcName)s:%(lineno)d | %(message)s"
)

formatter = logging.Formatter(LOG_FORMAT)
request_filter = RequestIdFilter()


# -------------------------------------------------------------------
# HANDLERS: rotating file + console
# -------------------------------------------------------------------
file_handler = RotatingFileHandler(
    LOG_FILE,
    maxBytes=5 * 1024 * 1024,   # 5 MB
    backupCount=5,
    encoding="utf-8"
)
file_handler.setLevel(settings.log_level.upper())

console_handler = logging.StreamHandler()
console_handler.setLevel(logging.DEBUG if settings.environment == "development" else logging.INFO)

for handler in (file_handler, console_handler):
    handler.setFormatter(formatter)
    # handler-level, so records from child loggers are stamped too
    handler.addFilter(request_filter)


# -------------------------------------------------------------------
# APP LOGGER
# -------------------------------------------------------------------
logger = logging.getLogger("wallet_chat")
logger.setLevel(logging.DEBUG)

if not logger.handlers:
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)


def get_logger(name: str) -> logging.Logger:
    """Child logger under the app logger, e.g. ``wallet_chat.relay``."""
    return logger.getChild(name)
