"""
Security audit logging for the OAuth authorization proxy.

This module provides an audit logging system built on Python's logging
infrastructure (Logger, Handler, Formatter, Filter).

Features:
- Logs security-relevant OAuth events to stdout as structured JSON
- Never logs tokens, codes, capsules or secrets (fingerprints and ids only)
- Provides severity-based filtering via standard logging levels
- Picks up request correlation data from context variables set by middleware

Configuration via environment variables:
- AUDIT_LOG_ENABLED: Enable/disable audit logging (default: true)
- AUDIT_LOG_LEVEL: Minimum severity to log - CRITICAL, HIGH, MEDIUM, LOW (default: MEDIUM)
- AUDIT_LOG_INCLUDE_LOW: Include LOW severity events (default: false)
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

# Request metadata (set by RequestContextMiddleware in server.py)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
source_ip_var: ContextVar[Optional[str]] = ContextVar("source_ip", default=None)
user_agent_var: ContextVar[Optional[str]] = ContextVar("user_agent", default=None)


class AuditSeverity(Enum):
    """Severity levels for audit events mapped to Python logging levels."""
    CRITICAL = logging.CRITICAL  # Probable attacks: CSRF mismatch, grant replay
    HIGH = logging.ERROR         # Rejected capsules, failed exchanges
    MEDIUM = logging.WARNING     # Issued/refreshed/rejected tokens, registrations
    LOW = logging.INFO           # Flow starts, health checks


class AuditEvent(Enum):
    """Security events emitted by the proxy, with their default severity."""
    AUTHORIZATION_STARTED = ("authorization_started", AuditSeverity.LOW)
    AUTHORIZATION_COMPLETED = ("authorization_completed", AuditSeverity.MEDIUM)
    CAPSULE_REJECTED = ("capsule_rejected", AuditSeverity.HIGH)
    CSRF_MISMATCH = ("csrf_mismatch", AuditSeverity.CRITICAL)
    CODE_EXCHANGE_FAILED = ("code_exchange_failed", AuditSeverity.HIGH)
    TOKEN_ISSUED = ("token_issued", AuditSeverity.MEDIUM)
    TOKEN_REFRESHED = ("token_refreshed", AuditSeverity.MEDIUM)
    TOKEN_REFRESH_FAILED = ("token_refresh_failed", AuditSeverity.HIGH)
    GRANT_REPLAYED = ("grant_replayed", AuditSeverity.CRITICAL)
    TOKEN_REJECTED = ("token_rejected", AuditSeverity.MEDIUM)
    UPSTREAM_UNAVAILABLE = ("upstream_unavailable", AuditSeverity.HIGH)
    CLIENT_REGISTERED = ("client_registered", AuditSeverity.MEDIUM)
    RATE_LIMIT_EXCEEDED = ("rate_limit_exceeded", AuditSeverity.MEDIUM)

    def __init__(self, event_type: str, severity: AuditSeverity):
        self.event_type = event_type
        self.severity = severity


class AuditLogFilter(logging.Filter):
    """
    Filter for audit log records based on severity configuration.

    Implements the AUDIT_LOG_INCLUDE_LOW logic and the minimum severity.
    """

    def __init__(self, min_severity: AuditSeverity, include_low: bool = False):
        super().__init__()
        self.min_severity = min_severity
        self.include_low = include_low

    def filter(self, record: logging.LogRecord) -> bool:
        # Pass through non-audit logs
        if not hasattr(record, 'audit_event'):
            return True

        severity = getattr(record, 'audit_severity', None)
        if severity is None:
            return True

        if severity == AuditSeverity.LOW:
            return self.include_low

        return severity.value >= self.min_severity.value


class AuditLogFormatter(logging.Formatter):
    """Formats audit records as `AUDIT: {json}` lines with safe fields only."""

    # Substrings that indicate an error message may carry credentials
    SENSITIVE_PATTERNS = (
        "api_key=",
        "secret=",
        "client_secret",
        "password=",
        "token=",
        "access_token",
        "refresh_token",
        "code=",
        "code_verifier",
        "bearer ",
        "authorization:",
    )

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, 'audit_event'):
            return super().format(record)

        event = dict(record.audit_event)

        if event.get('error_message'):
            event['error_message'] = self._sanitize_error_message(event['error_message'])

        try:
            return f"AUDIT: {json.dumps(event, ensure_ascii=False)}"
        except (TypeError, ValueError) as e:
            return f"AUDIT: {{\"error\": \"Failed to serialize audit event: {type(e).__name__}\"}}"

    @classmethod
    def _sanitize_error_message(cls, error_message: str) -> str:
        """
        Sanitize error messages to remove potentially sensitive information.

        Args:
            error_message: The raw error message

        Returns:
            A sanitized error message safe for logging
        """
        if len(error_message) > 500:
            error_message = error_message[:497] + "..."

        lower_msg = error_message.lower()
        for pattern in cls.SENSITIVE_PATTERNS:
            if pattern in lower_msg:
                return "Error occurred (details redacted for security)"

        return error_message


class AuditLogHandler(logging.StreamHandler):
    """Writes audit logs to stdout, flushing after every record."""

    def __init__(self):
        super().__init__(stream=sys.stdout)
        self.setFormatter(AuditLogFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            super().emit(record)
            self.flush()
        except Exception:
            self.handleError(record)


class AuditLogger:
    """
    Audit logger using Python's logging infrastructure.

    Provides a small interface for security events while leaving filtering,
    formatting and output to the logging system.
    """

    LOGGER_NAME = "oauth_proxy.audit"

    def __init__(self):
        """Initialize the audit logger with configuration from environment."""
        self.enabled = os.getenv("AUDIT_LOG_ENABLED", "true").lower() in ("true", "1", "yes")

        level_str = os.getenv("AUDIT_LOG_LEVEL", "MEDIUM").upper()
        try:
            self.min_severity = AuditSeverity[level_str]
        except KeyError:
            logging.warning(f"Invalid AUDIT_LOG_LEVEL '{level_str}', defaulting to MEDIUM")
            self.min_severity = AuditSeverity.MEDIUM

        self.include_low = os.getenv("AUDIT_LOG_INCLUDE_LOW", "false").lower() in ("true", "1", "yes")

        self.logger = logging.getLogger(self.LOGGER_NAME)
        self.logger.setLevel(logging.DEBUG)  # Let filter handle actual filtering
        self.logger.propagate = False

        # Replace handlers left by an earlier instance
        for existing in [h for h in self.logger.handlers if isinstance(h, AuditLogHandler)]:
            self.logger.removeHandler(existing)

        handler = AuditLogHandler()
        handler.addFilter(AuditLogFilter(self.min_severity, self.include_low))
        self.logger.addHandler(handler)

    def should_log(self, severity: AuditSeverity) -> bool:
        if not self.enabled:
            return False

        if severity == AuditSeverity.LOW:
            return self.include_low

        return severity.value >= self.min_severity.value

    def log_event(
        self,
        event: AuditEvent,
        status: str,
        client_id: Optional[str] = None,
        subject: Optional[str] = None,
        token_fingerprint: Optional[str] = None,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        error_message: Optional[str] = None,
        severity: Optional[AuditSeverity] = None,
        additional_safe_fields: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log a security event with safe fields only.

        Request id, source IP and user agent are taken from the request
        context variables.

        Args:
            event: The security event
            status: "success" or "failure"
            client_id: Client platform identifier
            subject: Provider user identifier
            token_fingerprint: Truncated SHA-256 fingerprint of a token (never the token)
            status_code: HTTP status code returned to the caller
            reason: Classified failure reason
            error_message: Generic error message (no sensitive details)
            severity: Override of the event's default severity
            additional_safe_fields: Additional known-safe fields to include
        """
        severity = severity or event.severity
        if not self.should_log(severity):
            return

        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event.event_type,
            "severity": severity.name,
            "status": status,
        }

        optional = {
            "client_id": client_id,
            "subject": subject,
            "token_fingerprint": token_fingerprint,
            "status_code": status_code,
            "reason": reason,
            "error_message": error_message,
            "request_id": request_id_var.get(),
            "source_ip": source_ip_var.get(),
            "user_agent": user_agent_var.get(),
        }
        record.update({k: v for k, v in optional.items() if v is not None})

        if additional_safe_fields:
            record.update(additional_safe_fields)

        extra = {
            'audit_event': record,
            'audit_severity': severity
        }
        self.logger.log(severity.value, "Audit event", extra=extra)


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """
    Get the global audit logger instance.

    Returns:
        The global AuditLogger instance
    """
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def audit(event: AuditEvent, status: str, **fields) -> None:
    """Shorthand for get_audit_logger().log_event(...)."""
    get_audit_logger().log_event(event, status, **fields)
