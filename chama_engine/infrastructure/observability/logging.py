"""Structured JSON logging for production observability"""

import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from chama_engine.config import settings

# Set per HTTP request by RequestIDMiddleware; job runs set their own
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp, service and request metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name
        request_id = request_id_var.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_loan_transition(loan_id: str, from_status: Optional[str], to_status: str, actor: Optional[str] = None, reason: Optional[str] = None) -> None:
    """Log a loan status change"""
    logging.info(
        "Loan status changed",
        extra={
            "loan_id": loan_id,
            "step": "loan_transition",
            "from_status": from_status,
            "to_status": to_status,
            "actor": actor,
            "reason": reason,
        },
    )


def log_repayment(
    loan_id: str,
    idempotency_key: str,
    amount_cents: int,
    penalty_cents: int,
    interest_cents: int,
    principal_cents: int,
    replayed: bool,
) -> None:
    """Log the breakdown of an applied (or replayed) repayment"""
    logging.info(
        "Repayment replayed" if replayed else "Repayment applied",
        extra={
            "loan_id": loan_id,
            "step": "repayment",
            "idempotency_key": idempotency_key,
            "amount_cents": amount_cents,
            "penalty_cents": penalty_cents,
            "interest_cents": interest_cents,
            "principal_cents": principal_cents,
            "replayed": replayed,
        },
    )


def log_payout(cycle_id: str, recipient_member_id: str, position: int, amount_cents: int, replayed: bool) -> None:
    logging.info(
        "Payout replayed" if replayed else "Payout processed",
        extra={
            "cycle_id": cycle_id,
            "step": "payout",
            "recipient_member_id": recipient_member_id,
            "position": position,
            "amount_cents": amount_cents,
            "replayed": replayed,
        },
    )
