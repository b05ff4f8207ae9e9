"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def __init__(self, *args: Any, service_name: str = "writeoff-gateway", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.service_name = service_name

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = self.service_name


def setup_logging(level: str = "INFO", service_name: str = "writeoff-gateway") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        service_name=service_name,
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_sync_page(
    user_id: str,
    page: int,
    upserted: int,
    removed: int,
    cursor_advanced: bool,
) -> None:
    """Log one committed aggregator page"""
    logging.info(
        "Sync page committed",
        extra={
            "user_id": user_id,
            "step": "sync_page",
            "page": page,
            "upserted": upserted,
            "removed": removed,
            "cursor_advanced": cursor_advanced,
        },
    )


def log_sync_complete(
    user_id: str,
    accounts_processed: int,
    transactions_saved: int,
    pages: int,
    duration_ms: float,
) -> None:
    """Log structured sync outcome for analysis"""
    logging.info(
        "Sync completed",
        extra={
            "user_id": user_id,
            "step": "sync_complete",
            "accounts_processed": accounts_processed,
            "transactions_saved": transactions_saved,
            "pages": pages,
            "duration_ms": duration_ms,
        },
    )


def log_classification(
    user_id: str,
    trans_id: str,
    result: str,
    review_state: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log the outcome of classifying one transaction"""
    level = logging.INFO if result == "analyzed" else logging.WARNING
    logging.log(
        level,
        "Transaction classification",
        extra={
            "user_id": user_id,
            "trans_id": trans_id,
            "step": "classification",
            "result": result,
            "review_state": review_state,
            "error": error,
        },
    )
