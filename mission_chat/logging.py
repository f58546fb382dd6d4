# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Structured logging utilities for the Mission Chat service.

This module provides:
- Context management for request_id and session_id correlation
- A key=value structured logger used by every component
- Secret redaction for API keys and bearer tokens
- JSON logging formatter option
"""

import json
import logging
import re
import time
from contextvars import ContextVar
from typing import Optional, Dict, Any

# Context variables for request correlation
request_id_ctx: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
session_id_ctx: ContextVar[Optional[str]] = ContextVar('session_id', default=None)


def set_request_id(request_id: str) -> None:
    """Set the request ID in context for correlation."""
    request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


def set_session_id(session_id: str) -> None:
    """Set the chat session ID in context for correlation."""
    session_id_ctx.set(session_id)


def get_session_id() -> Optional[str]:
    """Get the current chat session ID from context."""
    return session_id_ctx.get()


def clear_context() -> None:
    """Clear all context variables.

    Should be called at the end of request processing to avoid leaks.
    """
    request_id_ctx.set(None)
    session_id_ctx.set(None)


def redact_secrets(text: str) -> str:
    """Redact API keys and secrets from text for safe logging.

    Redacts:
    - sk- style API keys
    - Generic api_key=... patterns
    - Bearer tokens

    Args:
        text: Text that may contain secrets

    Returns:
        Text with secrets redacted
    """
    text = re.sub(r'sk-[a-zA-Z0-9]{16,}', 'sk-***REDACTED***', text)
    text = re.sub(r'api[_-]?key["\']?\s*[:=]\s*["\']?([a-zA-Z0-9_\-]{16,})',
                  'api_key=***REDACTED***', text, flags=re.IGNORECASE)
    text = re.sub(r'Bearer\s+[a-zA-Z0-9\-._~+/]+', 'Bearer ***REDACTED***', text, flags=re.IGNORECASE)
    return text


def sanitize_for_log(text: str, max_length: int = 200) -> str:
    """Sanitize text for safe logging (prevents log injection).

    Removes control characters and truncates to prevent log flooding.
    This is different from redact_secrets() which focuses on sensitive data.

    Args:
        text: Text to sanitize
        max_length: Maximum length to truncate to

    Returns:
        Sanitized text safe for logging
    """
    sanitized = re.sub(r'[\r\n\t\x00-\x1f\x7f-\x9f]', '', str(text))
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."
    return sanitized


def get_structured_extras() -> Dict[str, Any]:
    """Get structured logging extras with correlation IDs."""
    extras: Dict[str, Any] = {}

    request_id = get_request_id()
    if request_id:
        extras['request_id'] = request_id

    session_id = get_session_id()
    if session_id:
        extras['session_id'] = session_id

    return extras


class StructuredLogger:
    """Structured logger with correlation IDs.

    Automatically includes request_id and session_id from context
    in all log messages. Keyword arguments are rendered as key=value
    pairs after the message and passed through as record extras.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, **kwargs) -> None:
        extras = get_structured_extras()
        extras.update(kwargs)

        if extras:
            extra_str = ' '.join(f'{k}={v}' for k, v in extras.items() if v is not None)
            if extra_str:
                message = f"{message} | {extra_str}"

        self.logger.log(level, message, extra=extras)

    def debug(self, message: str, **kwargs) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs) -> None:
        self._log(logging.CRITICAL, message, **kwargs)


class PhaseTimer:
    """Context manager for timing and logging turn phases.

    Usage:
        with PhaseTimer("payload_apply", logger):
            # do work
            pass
    """

    def __init__(self, phase: str, logger: StructuredLogger):
        self.phase = phase
        self.logger = logger
        self.start_time = 0.0

    def __enter__(self):
        self.start_time = time.time()
        self.logger.debug(f"Phase started: {self.phase}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000

        if exc_type:
            self.logger.error(
                f"Phase failed: {self.phase}",
                duration_ms=f"{duration_ms:.2f}",
                error_type=exc_type.__name__
            )
        else:
            self.logger.info(
                f"Phase completed: {self.phase}",
                duration_ms=f"{duration_ms:.2f}"
            )


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Outputs timestamp, level, logger and message plus every non-reserved
    record attribute (request_id, session_id and StructuredLogger extras).
    """

    RESERVED_ATTRS = {
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
        'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
        'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'message', 'taskName'
    }

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage()
        }

        for key, value in record.__dict__.items():
            if key not in self.RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    service_name: str = "mission-chat"
) -> None:
    """Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, use JSON formatter; otherwise use standard formatter
        service_name: Service name to include in logs
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    root_logger.info(
        f"Logging configured: level={level}, json_format={json_format}, service={service_name}"
    )
