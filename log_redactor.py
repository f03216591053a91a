"""Log redaction: scrubs API keys from terminal output and session logs."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional, Pattern, Sequence

REDACTED = "[REDACTED]"


def _compile(patterns: Iterable[str]) -> list[Pattern[str]]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error:
            logging.getLogger(__name__).warning("Ignoring invalid redact pattern %r", pattern)
    return compiled


def redact_string(text: str, patterns: Sequence[str]) -> str:
    """Replace all matches of the given regex patterns with [REDACTED]."""
    for regex in _compile(patterns):
        text = regex.sub(REDACTED, text)
    return text


class RedactingFilter(logging.Filter):
    """Logging filter that redacts sensitive patterns from log records.

    The message is formatted first so secrets passed as ``%s`` arguments
    are caught too.
    """

    def __init__(self, patterns: Sequence[str], name: str = "") -> None:
        super().__init__(name)
        self._regexes = _compile(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._regexes:
            return True
        message = record.getMessage()
        redacted = message
        for regex in self._regexes:
            redacted = regex.sub(REDACTED, redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def install_redaction(
    patterns: Sequence[str], logger: Optional[logging.Logger] = None
) -> RedactingFilter:
    """Attach one RedactingFilter to every handler of ``logger`` (root by default)."""
    target = logger or logging.getLogger()
    log_filter = RedactingFilter(patterns)
    for handler in target.handlers:
        handler.addFilter(log_filter)
    return log_filter
