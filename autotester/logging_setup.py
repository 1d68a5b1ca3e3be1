"""Logging configuration and the audit-event log handler."""
from __future__ import annotations

import logging
from typing import Optional

from .config import LoggingConfig
from .storage.database import AuditEvent, Database

LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"
ROOT_LOGGER = "autotester"


class AuditLogHandler(logging.Handler):
    """Persist log records as audit events so the API can serve them."""

    def __init__(self, database: Database, level: int = logging.WARNING) -> None:
        super().__init__(level)
        self._database = database

    def emit(self, record: logging.LogRecord) -> None:
        try:
            payload = {'logger': record.name, 'thread': record.threadName}
            if record.exc_info and record.exc_info[1] is not None:
                payload['exception'] = repr(record.exc_info[1])
            category = record.name.rsplit('.', 1)[-1]
            self._database.append_audit_event(
                AuditEvent(
                    level=record.levelname.lower(),
                    category=category,
                    message=record.getMessage(),
                    payload=payload,
                )
            )
        except Exception:  # pylint: disable=broad-except
            self.handleError(record)


def configure_logging(config: LoggingConfig, database: Optional[Database] = None) -> logging.Logger:
    """Install console/file handlers and, with *database*, the audit handler."""

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.file, encoding='utf-8'))
    logging.basicConfig(level=config.level, format=LOG_FORMAT, handlers=handlers, force=True)

    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if isinstance(handler, AuditLogHandler):
            logger.removeHandler(handler)
    if database is not None:
        logger.addHandler(AuditLogHandler(database, logging.getLevelName(config.audit_level)))
    return logger
