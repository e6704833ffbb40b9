"""Logging utilities for the Lambda container.

Provides JSON logging configuration and header sanitization for the
request/response log records.
"""

import json
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from pythonjsonlogger import json as jsonlogger

# Sensitive header names (case-insensitive substrings)
SENSITIVE_KEYS = [
    "authorization",
    "api-key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
    "cookie",
    "session",
]

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


def configure_json_logging(level: str = "INFO", pretty: bool = False) -> None:
    """Configure the root logger to emit JSON.

    Every module logger propagates to the root logger, so this only needs to
    run once per execution environment.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        pretty: Indented JSON for terminals instead of one line per record
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    handler = logging.StreamHandler()
    handler.setLevel(log_level)

    if pretty:
        formatter: logging.Formatter = _PrettyJsonFormatter()
    else:
        # One record per line so CloudWatch keeps entries intact
        formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            timestamp=True,
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)


class _PrettyJsonFormatter(logging.Formatter):
    """Indented JSON formatter for the local development server."""

    def __init__(self, max_string_length: int = 500) -> None:
        super().__init__()
        self.max_string_length = max_string_length

    def _shorten(self, value: Any) -> Any:
        if isinstance(value, str) and len(value) > self.max_string_length:
            return value[: self.max_string_length] + f"... ({len(value)} chars)"
        return value

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as indented JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = self._shorten(value)

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_data, indent=2, ensure_ascii=False, default=str)


def _is_sensitive(name: str) -> bool:
    name_lower = name.lower()
    return any(key in name_lower for key in SENSITIVE_KEYS)


def sanitize_headers(headers: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Flatten headers for logging, redacting sensitive values.

    Args:
        headers: (name, value) pairs, repeated names allowed

    Returns:
        Dictionary of header name to value, with secrets replaced
    """
    sanitized: Dict[str, str] = {}
    for key, value in headers:
        if _is_sensitive(key):
            sanitized[key] = "[REDACTED]"
        elif key in sanitized:
            sanitized[key] = f"{sanitized[key]}, {value}"
        else:
            sanitized[key] = value
    return sanitized


def format_request_log(
    request_id: str,
    http_method: str,
    request_path: str,
    headers: Iterable[Tuple[str, str]],
    body_size: int,
    lambda_context: Optional[Any] = None,
) -> Dict[str, Any]:
    """Format structured request log entry.

    Args:
        request_id: Request ID (from Lambda context)
        http_method: HTTP method (GET, POST, etc.)
        request_path: Request path
        headers: Request headers
        body_size: Request body length in bytes
        lambda_context: Optional Lambda context for metadata

    Returns:
        Dictionary with structured log data
    """
    log_data = {
        "request_id": request_id,
        "http_method": http_method,
        "request_path": request_path,
        "request_headers": sanitize_headers(headers),
        "request_body_size": body_size,
    }

    if lambda_context:
        log_data["lambda_function_name"] = getattr(lambda_context, "function_name", None)
        log_data["lambda_memory_limit"] = getattr(
            lambda_context, "memory_limit_in_mb", None
        )
        log_data["lambda_remaining_time_ms"] = getattr(
            lambda_context, "get_remaining_time_in_millis", lambda: None
        )()

    return log_data


def format_response_log(
    request_id: str,
    status_code: int,
    headers: Iterable[Tuple[str, str]],
    body_size: int,
    duration_ms: float,
    success: bool = True,
) -> Dict[str, Any]:
    """Format structured response log entry.

    Args:
        request_id: Request ID
        status_code: HTTP status code
        headers: Response headers
        body_size: Response body length in bytes
        duration_ms: Processing duration in milliseconds
        success: Whether request was successful

    Returns:
        Dictionary with structured log data
    """
    return {
        "request_id": request_id,
        "response_status": status_code,
        "response_headers": sanitize_headers(headers),
        "response_body_size": body_size,
        "duration_ms": round(duration_ms, 2),
        "success": success,
    }
