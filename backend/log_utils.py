"""
Logging utilities for safe log output.

Provides a custom LogRecord factory that sanitizes log arguments
to prevent log injection attacks (CWE-117). Program titles, channel
names and recorder output are provider-controlled and could contain
newlines that forge log entries.

Stream URLs carry account credentials (``/live/<user>/<pass>/...`` and
``username=``/``password=`` query parameters); those are masked too.

Install once at startup via install_safe_logging().
"""

import logging
import re

_ORIGINAL_FACTORY = logging.getLogRecordFactory()

REDACTED = "***"

_LIVE_PATH_RE = re.compile(r"(/(?:live|movie|series|timeshift)/)([^/\s]+)/([^/\s]+)/")
_QUERY_CREDENTIAL_RE = re.compile(r"((?:username|password)=)([^&\s\"']+)", re.IGNORECASE)


def redact_credentials(text: str) -> str:
    """Mask account credentials embedded in stream and API URLs."""
    text = _LIVE_PATH_RE.sub(rf"\1{REDACTED}/{REDACTED}/", text)
    return _QUERY_CREDENTIAL_RE.sub(rf"\1{REDACTED}", text)


def _sanitize_value(value):
    """Strip newlines and carriage returns from a value for safe logging."""
    if isinstance(value, str):
        value = value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
        return redact_credentials(value)
    return value


def _safe_record_factory(*args, **kwargs):
    """LogRecord factory that sanitizes args to prevent log injection."""
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if isinstance(record.msg, str):
        # f-string messages arrive pre-formatted with their values in msg
        record.msg = _sanitize_value(record.msg)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    return record


def install_safe_logging():
    """
    Install a global LogRecord factory that sanitizes all log arguments.

    Call once during application startup, before any logging occurs.
    """
    logging.setLogRecordFactory(_safe_record_factory)
