import json
import logging
import os
import sys
from typing import Optional


EXTRA_KEYS = (
    "account_id",
    "amount",
    "source",
    "order_id",
    "referrer_id",
    "error_code",
    "available_credits",
)


def setup_logger(name: str = "credit_ledger", level: Optional[str] = None) -> logging.Logger:
    """Configure the package logger with a JSON stdout handler.

    Level defaults to the LOG_LEVEL environment variable, then INFO.
    """
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")

    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    # avoid duplicate output when called twice
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)

    return logger


class JsonFormatter(logging.Formatter):
    """Single-line JSON records for log collectors.

    Always carries datetime, level, logger and message; ledger fields passed
    through ``extra`` are copied when present.
    """

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        log_record: dict[str, object] = {
            "datetime": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in EXTRA_KEYS:
            if hasattr(record, key):
                log_record[key] = getattr(record, key)

        service_name = getattr(record, "service_name", None) or os.getenv("SERVICE_NAME")
        if service_name:
            log_record["service_name"] = service_name

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_record, ensure_ascii=False, default=str)
