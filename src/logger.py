"""
Logging configuration for the discipline clustering dashboard.

Provides:
- Human-readable console logging
- Structured JSON logging for log shipping
- Masking of passwords, tokens and keys
- An audit trail for account provisioning, session restoration and notifications
"""

import logging
import json
import os
import re
import sys
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
import traceback


class SensitiveDataFilter(logging.Filter):
    """Filter that masks sensitive information in logs."""

    SENSITIVE_KEYS = {
        'password', 'token', 'key', 'secret', 'credential',
        'api_key', 'authorization', 'bearer'
    }

    SENSITIVE_PATTERNS = [
        r'(?<=password[=:]\s)[^,\s}]+',
        r'(?<=token[=:]\s)[^,\s}]+',
        r'(?<=key[=:]\s)[^,\s}]+',
        r'(?<=Bearer\s)[A-Za-z0-9\-_.]+',
    ]

    def filter(self, record):
        """Mask sensitive data in log records."""
        if isinstance(record.msg, dict):
            record.msg = self._mask_dict(record.msg)
        elif isinstance(record.msg, str):
            record.msg = self._mask_string(record.msg)

        if isinstance(record.args, dict):
            record.args = self._mask_dict(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(
                self._mask_value(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )

        return True

    def _mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive values in a dictionary."""
        masked = {}
        for key, value in data.items():
            if any(sensitive in str(key).lower() for sensitive in self.SENSITIVE_KEYS):
                masked[key] = '***MASKED***'
            elif isinstance(value, dict):
                masked[key] = self._mask_dict(value)
            elif isinstance(value, str):
                masked[key] = self._mask_string(value)
            else:
                masked[key] = value
        return masked

    def _mask_string(self, value: str) -> str:
        """Mask sensitive patterns in a string."""
        for pattern in self.SENSITIVE_PATTERNS:
            value = re.sub(pattern, '***MASKED***', value, flags=re.IGNORECASE)
        return value

    def _mask_value(self, value: str) -> str:
        """Mask a single value if it looks like a JWT or API key."""
        if len(value) > 40 and value.count('.') >= 2:
            return '***MASKED***'
        return self._mask_string(value)


class StructuredFormatter(logging.Formatter):
    """Formatter that outputs structured logs."""

    def format(self, record):
        """Format log record as structured JSON."""
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': ''.join(traceback.format_exception(*record.exc_info))
            }

        event = getattr(record, 'event', None)
        if event:
            log_data['event'] = event

        return json.dumps(log_data, default=str)


class SimpleFormatter(logging.Formatter):
    """Formatter for human-readable logs."""

    FORMAT_MAP = {
        logging.DEBUG: '🔍 %(asctime)s [%(name)s] %(message)s',
        logging.INFO: '✓ %(asctime)s [%(name)s] %(message)s',
        logging.WARNING: '⚠️  %(asctime)s [%(name)s] %(message)s',
        logging.ERROR: '✗ %(asctime)s [%(name)s] %(message)s',
        logging.CRITICAL: '🚨 %(asctime)s [%(name)s] %(message)s'
    }

    def format(self, record):
        """Format log record for human consumption."""
        format_str = self.FORMAT_MAP.get(record.levelno, '%(asctime)s [%(name)s] %(message)s')
        formatter = logging.Formatter(format_str, datefmt='%Y-%m-%d %H:%M:%S')
        return formatter.format(record)


class AuditLogger:
    """Specialized logger for audit trail events."""

    def __init__(self, log_file: Optional[str] = 'logs/audit.log'):
        """Initialize audit logger."""
        self.logger = logging.getLogger('audit')
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        self.logger.handlers.clear()

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=10
            )
        else:
            handler = logging.StreamHandler(sys.stdout)

        handler.setFormatter(StructuredFormatter())
        handler.addFilter(SensitiveDataFilter())
        self.logger.addHandler(handler)

    def log_account_provisioning(self, id_number: str, outcome: str, detail: Optional[str] = None):
        """Log the outcome of provisioning one student account."""
        self.logger.info(
            "account_provisioning",
            extra={'event': {
                'event_type': 'account_provisioning',
                'id_number': id_number,
                'outcome': outcome,
                'detail': detail,
            }}
        )

    def log_session_restored(self, admin_account_id: Optional[str], drifted: bool):
        """Log a session restoration after a privileged step."""
        self.logger.info(
            "session_restored",
            extra={'event': {
                'event_type': 'session_restored',
                'admin_account_id': admin_account_id,
                'drifted': drifted,
            }}
        )

    def log_notification(self, result_id: str, attempted: int, delivered: int):
        """Log delivery attempts for one clustering result."""
        self.logger.info(
            "notification",
            extra={'event': {
                'event_type': 'notification',
                'result_id': result_id,
                'attempted': attempted,
                'delivered': delivered,
            }}
        )

    def log_security_event(self, event_type: str, severity: str,
                           details: Dict[str, Any]):
        """Log security event."""
        self.logger.warning(
            f"security_event: {event_type}",
            extra={'event': {
                'event_type': event_type,
                'severity': severity,
                'details': details,
            }}
        )


def configure_logging(
    app_name: str = 'clustering',
    log_level: str = 'INFO',
    log_file: str = None,
    structured: bool = False
) -> logging.Logger:
    """
    Configure application logging.

    Args:
        app_name: Name of the application logger
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (if None, logs to console only)
        structured: If True, uses JSON structured logging

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(app_name)
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers.clear()

    sensitive_filter = SensitiveDataFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper()))
    console_handler.addFilter(sensitive_filter)
    console_handler.setFormatter(StructuredFormatter() if structured else SimpleFormatter())
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(sensitive_filter)
        file_handler.setFormatter(StructuredFormatter() if structured else SimpleFormatter())
        logger.addHandler(file_handler)

    return logger


# Application logger instance; module loggers under src.* propagate to root,
# the ``clustering`` logger is for workflow-level messages.
app_logger = configure_logging(
    app_name='clustering',
    log_level=os.getenv('LOG_LEVEL', 'INFO'),
    log_file=os.getenv('LOG_FILE', 'logs/application.log') or None,
    structured=os.getenv('LOG_STRUCTURED', 'false').lower() == 'true'
)

# Audit logger instance
audit_logger = AuditLogger(os.getenv('AUDIT_LOG_FILE', 'logs/audit.log') or None)
