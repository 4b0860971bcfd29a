"""
Logging configuration

Application logs go to stdout in a pipe-separated format. Structured failure
context passed as ``extra={"error_context": exc.to_dict()}`` is appended to
the line. Orphan deletions are written to a dedicated audit logger.
"""

import json
import logging
import sys
from core.config import settings

AUDIT_LOGGER_NAME = "gallery_sync.audit"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
AUDIT_FORMAT = "%(asctime)s | AUDIT    | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ContextFormatter(logging.Formatter):
    """Appends error_context (when present) as compact JSON"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "error_context", None)
        if context:
            line = f"{line} | context={json.dumps(context, default=str, sort_keys=True)}"
        return line


def setup_logging():
    """Configure application and audit logging"""

    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ContextFormatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logging.basicConfig(level=log_level, handlers=[handler])

    # Quiet library loggers
    for name in ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "apscheduler"):
        logging.getLogger(name).setLevel(logging.WARNING)

    # Audit lines are kept at any LOG_LEVEL and are not repeated by the root handler
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(logging.INFO)
    if not audit_logger.handlers:
        audit_handler = logging.StreamHandler(sys.stdout)
        audit_handler.setFormatter(logging.Formatter(AUDIT_FORMAT, datefmt=DATE_FORMAT))
        audit_logger.addHandler(audit_handler)
    audit_logger.propagate = False

    logging.getLogger(__name__).info(f"Logging configured at {settings.LOG_LEVEL} level")


def get_audit_logger() -> logging.Logger:
    """Logger that receives one line per orphan deletion"""
    return logging.getLogger(AUDIT_LOGGER_NAME)
