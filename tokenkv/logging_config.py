"""
Logging configuration for TokenKV.

Provides structured JSON logging and an audit logger for token lifecycle
events (creation, consolidation, relinquishment, rejected lineage entries).
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import List, Optional

from .config import LOG_JSON, LOG_LEVEL
from .util import mask_sensitive

# Context variable for operation ID tracking
operation_id_var: ContextVar[str] = ContextVar('operation_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        operation_id = operation_id_var.get()
        if operation_id:
            log_data["operation_id"] = operation_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for token lifecycle events.

    Keys are masked; values are never logged.
    """

    def __init__(self, name: str = "tokenkv.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "event_type": event_type,
            "operation_id": operation_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def token_created(self, basket: str, key: str, outpoint: str) -> None:
        self._log(
            logging.INFO,
            "TOKEN_CREATED",
            basket=basket,
            key=mask_sensitive(key),
            outpoint=outpoint,
            message=f"Created token {outpoint}"
        )

    def token_consolidated(
        self,
        basket: str,
        key: str,
        consumed: List[str],
        outpoint: Optional[str]
    ) -> None:
        self._log(
            logging.INFO,
            "TOKEN_REMOVED" if outpoint is None else "TOKEN_CONSOLIDATED",
            basket=basket,
            key=mask_sensitive(key),
            consumed=consumed,
            outpoint=outpoint,
            message=f"Consumed {len(consumed)} token(s)"
        )

    def consolidation_failed(
        self,
        basket: str,
        key: str,
        attempted: List[str],
        reason: str
    ) -> None:
        self._log(
            logging.WARNING,
            "CONSOLIDATION_FAILED",
            basket=basket,
            key=mask_sensitive(key),
            attempted=attempted,
            reason=reason,
            message=f"Consolidation of {len(attempted)} token(s) failed: {reason}"
        )

    def token_relinquished(self, basket: str, outpoint: str, released: bool) -> None:
        self._log(
            logging.INFO,
            "TOKEN_RELINQUISHED",
            basket=basket,
            outpoint=outpoint,
            released=released,
            message=f"Relinquished {outpoint}"
        )

    def ambiguous_state(self, basket: str, key: str, outpoints: List[str]) -> None:
        self._log(
            logging.WARNING,
            "AMBIGUOUS_STATE",
            basket=basket,
            key=mask_sensitive(key),
            outpoints=outpoints,
            message=f"{len(outpoints)} live tokens for one key"
        )

    def corrupt_token(self, basket: str, outpoint: str, reason: str) -> None:
        self._log(
            logging.ERROR,
            "CORRUPT_TOKEN",
            basket=basket,
            outpoint=outpoint,
            reason=reason,
            message=f"Token {outpoint} failed to decode"
        )

    def lineage_entry_rejected(self, txid: str, depth: int, reason: str) -> None:
        self._log(
            logging.DEBUG,
            "LINEAGE_ENTRY_REJECTED",
            txid=txid,
            depth=depth,
            reason=reason,
            message=f"Skipped ancestry entry {txid}"
        )


def configure_logging(
    level: str = LOG_LEVEL,
    json_format: bool = LOG_JSON,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_operation_id(operation_id: Optional[str] = None) -> str:
    """
    Set the operation ID for the current context.

    Args:
        operation_id: Operation ID to set, or None to generate one

    Returns:
        The operation ID that was set
    """
    if operation_id is None:
        operation_id = str(uuid.uuid4())
    operation_id_var.set(operation_id)
    return operation_id


def get_operation_id() -> str:
    """Get the current operation ID."""
    return operation_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
