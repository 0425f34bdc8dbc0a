"""
Structured logging for record lifecycle operations.
Wraps the standard library logger with domain-specific helpers.
"""

import logging
from typing import Any, Dict, List

from ..core.config import debug_enabled


class StructuredLogger:
    """Structured logger for store, audit, workflow and validation operations."""

    def __init__(self, name: str = "slabtrack"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG if debug_enabled() else logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "rejected"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_record_operation(self, operation: str, record_id: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a record store operation."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation(f"record.{operation}", status, log_details)

    def log_bulk_operation(self, operation: str, processed: int, failed: int, batch_id: str = None, cancelled: bool = False):
        """Log the outcome of a bulk operation."""
        log_details = {
            "processed_count": processed,
            "failed_count": failed,
            "cancelled": cancelled
        }
        if batch_id:
            log_details["batch_id"] = batch_id

        status = "success" if failed == 0 and not cancelled else "partial"
        self.log_operation(f"bulk.{operation}", status, log_details)

    def log_transition(self, record_id: str, from_status: str, to_status: str, status: str = "success", reason: str = ""):
        """Log a workflow transition attempt."""
        log_details = {
            "record_id": record_id,
            "from": from_status,
            "to": to_status
        }
        if reason:
            log_details["reason"] = reason[:100]

        self.log_operation("workflow.transition", status, log_details)

    def log_audit_entry(self, entry_id: str, record_id: str, action: str, change_count: int):
        """Log creation of an audit entry."""
        log_details = {
            "entry_id": entry_id,
            "record_id": record_id,
            "action": action,
            "change_count": change_count
        }
        self.logger.debug(f"Operation: audit.append, Status: success, Details: {log_details}")

    def log_validation_error(self, operation: str, errors: List[Any], target_identifier: str = None):
        """Log validation failures with sanitized details."""
        sanitized_errors = []
        for error in errors:
            if isinstance(error, dict):
                sanitized_errors.append(sanitize_payload(error))
            else:
                sanitized_errors.append(str(error)[:100])

        log_details = {
            "operation": operation,
            "errors": sanitized_errors,
            "error_count": len(sanitized_errors)
        }
        if target_identifier:
            log_details["target_identifier"] = target_identifier

        self.log_operation("validation.error", "rejected", log_details)

    def log_flush(self, key: str, record_count: int, status: str = "success", details: Dict[str, Any] = None):
        """Log a durable flush of the record set."""
        log_details = {"key": key, "record_count": record_count}
        if details:
            log_details.update(details)

        self.log_operation("storage.flush", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def sanitize_payload(payload: Any, max_length: int = 100) -> Any:
    """Truncate long free-text values before they reach the log."""
    if isinstance(payload, dict):
        return {k: sanitize_payload(v, max_length) for k, v in payload.items()}
    elif isinstance(payload, str):
        return payload[:max_length] + "..." if len(payload) > max_length else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, max_length) for item in payload]
    else:
        return payload
