"""
Structured JSON logging for sync operations.
Provides consistent logging format with required fields:
- service, action, status, run_id, entity_type, entity_id
- error_type, error_message (in case of failure)
- Masks sensitive data (partial email addresses found on grants)
"""

import logging
import json
from datetime import datetime
from typing import Optional
import re


def mask_email(email: Optional[str]) -> Optional[str]:
    """
    Partially mask an email address for privacy.
    Example: john.doe@example.com -> j***@example.com
    """
    if not email or '@' not in email:
        return email

    local, domain = email.split('@', 1)
    return f"{local[:1]}***@{domain}"


def mask_emails_in_text(text: str) -> str:
    """
    Find and mask all email addresses in a text string.
    """
    email_pattern = r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b'

    def replacer(match):
        return mask_email(match.group(0))

    return re.sub(email_pattern, replacer, text)


class StructuredLogger:
    """
    Structured logger for sync operations.
    Outputs JSON-formatted logs with consistent fields.
    """

    def __init__(self, service: str = "sync", logger_name: str = "drive_mirror.sync"):
        self.service = service
        self.logger = logging.getLogger(logger_name)

    def _log(
        self,
        level: int,
        action: str,
        status: str,
        message: str,
        run_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
        mask_sensitive: bool = True,
        **extra_fields
    ):
        if not self.logger.isEnabledFor(level):
            return

        log_data = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "service": self.service,
            "action": action,
            "status": status,
            "message": mask_emails_in_text(message) if mask_sensitive else message,
        }

        if run_id:
            log_data["run_id"] = run_id
        if entity_type:
            log_data["entity_type"] = entity_type
        if entity_id:
            log_data["entity_id"] = entity_id
        if error_type:
            log_data["error_type"] = error_type
        if error_message:
            log_data["error_message"] = mask_emails_in_text(error_message) if mask_sensitive else error_message

        for key, value in extra_fields.items():
            if isinstance(value, str) and mask_sensitive:
                log_data[key] = mask_emails_in_text(value)
            else:
                log_data[key] = value

        self.logger.log(level, json.dumps(log_data, default=str))

    def debug(self, action: str, status: str = "success", message: str = "", **fields):
        self._log(logging.DEBUG, action=action, status=status, message=message, **fields)

    def info(
        self,
        action: str,
        status: str = "success",
        message: str = "",
        run_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        **extra_fields
    ):
        """
        Log informational message.

        Args:
            action: The operation being performed (e.g., "fetch_page", "commit_batch", "prune")
            status: Status of the operation (default: "success")
            message: Human-readable message
            run_id: Sync run identifier
            entity_type: Type of record ("entry" or "grant")
            entity_id: Drive id of the record
            **extra_fields: Additional fields to include in the log
        """
        self._log(
            logging.INFO,
            action=action,
            status=status,
            message=message,
            run_id=run_id,
            entity_type=entity_type,
            entity_id=entity_id,
            **extra_fields
        )

    def warning(
        self,
        action: str,
        status: str = "warning",
        message: str = "",
        run_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        **extra_fields
    ):
        """Log warning message."""
        self._log(
            logging.WARNING,
            action=action,
            status=status,
            message=message,
            run_id=run_id,
            entity_type=entity_type,
            entity_id=entity_id,
            **extra_fields
        )

    def error(
        self,
        action: str,
        message: str,
        error: Optional[Exception] = None,
        run_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        **extra_fields
    ):
        """
        Log error message.

        Args:
            action: The operation that failed
            message: Human-readable error message
            error: Exception object (if available)
            run_id: Sync run identifier
            entity_type: Type of record
            entity_id: Drive id of the record
            **extra_fields: Additional fields
        """
        error_type = None
        error_message = None

        if error:
            error_type = type(error).__name__
            error_message = str(error)

        self._log(
            logging.ERROR,
            action=action,
            status="error",
            message=message,
            run_id=run_id,
            entity_type=entity_type,
            entity_id=entity_id,
            error_type=error_type,
            error_message=error_message,
            **extra_fields
        )


# Shared instance for the sync engine
sync_logger = StructuredLogger(service="sync")
