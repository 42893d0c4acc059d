"""
Logging utilities for safe log output.

Rule expressions, channel names and stream URLs are user-provided and flow
into log calls. The record factory installed here escapes line breaks and
other control characters so they cannot forge log entries (CWE-117), and
shortens very long values so a pasted playlist does not flood the log.

Install once at startup via install_safe_logging().
"""

import logging

_ORIGINAL_FACTORY = logging.getLogRecordFactory()

MAX_LOGGED_VALUE_LENGTH = 500

_ESCAPES = {"\r": "\\r", "\n": "\\n", "\t": "\\t"}


def _sanitize_value(value):
    """Escape control characters and truncate long strings for logging."""
    if not isinstance(value, str):
        return value
    cleaned = "".join(
        _ESCAPES.get(ch, f"\\x{ord(ch):02x}") if ord(ch) < 32 or ord(ch) == 127 else ch
        for ch in value
    )
    if len(cleaned) > MAX_LOGGED_VALUE_LENGTH:
        extra = len(cleaned) - MAX_LOGGED_VALUE_LENGTH
        cleaned = f"{cleaned[:MAX_LOGGED_VALUE_LENGTH]}...(+{extra} chars)"
    return cleaned


def _safe_record_factory(*args, **kwargs):
    """LogRecord factory that sanitizes %-style args."""
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    return record


def install_safe_logging():
    """Install the sanitizing LogRecord factory globally. Safe to call twice."""
    if logging.getLogRecordFactory() is not _safe_record_factory:
        logging.setLogRecordFactory(_safe_record_factory)
