"""Structured logging setup.

JSON output for production, coloured console output for development. Phone
numbers, emails and loan identifiers are redacted before rendering.
"""

from __future__ import annotations

import os
import re
import sys
from collections.abc import MutableMapping
from typing import Any, cast

import structlog
from structlog.types import EventDict, WrappedLogger

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")

SENSITIVE_KEYS: frozenset[str] = frozenset({
    "password",
    "secret",
    "token",
    "authorization",
    "email",
    "phone",
    "mobile",
    "ref_mobile_1",
    "ref_mobile_2",
    "ref_mobile_3",
    "ref_mobile_4",
    "ref_mobile_5",
    "ref_mobile_6",
    "ref_mobile_7",
    "crn",
    "loan_card_no",
})

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-]{8,}\d")

# structlog-owned keys are never PII
PASSTHROUGH_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger"})


class PIIRedactor:
    """Processor that masks sensitive keys and PII-looking string values."""

    def __call__(
        self,
        _logger: WrappedLogger,
        _method_name: str,
        event_dict: EventDict,
    ) -> EventDict:
        return cast(EventDict, self._redact_dict(event_dict))

    def _redact_dict(self, data: MutableMapping[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, value in data.items():
            if key in PASSTHROUGH_KEYS:
                result[key] = value
            elif key.lower() in SENSITIVE_KEYS:
                result[key] = "[REDACTED]"
            elif isinstance(value, dict):
                result[key] = self._redact_dict(value)
            elif isinstance(value, str):
                result[key] = self._redact_string(value)
            elif isinstance(value, list):
                result[key] = [self._redact_string(item) if isinstance(item, str) else item for item in value]
            else:
                result[key] = value
        return result

    def _redact_string(self, value: str) -> str:
        value = EMAIL_PATTERN.sub("[EMAIL]", value)
        return PHONE_PATTERN.sub("[PHONE]", value)


def build_processors(format: str = LOG_FORMAT, redact_pii: bool = True) -> list[Any]:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
    ]
    # the redactor must see the event before the timestamp is added
    if redact_pii:
        processors.append(PIIRedactor())
    processors.append(structlog.processors.TimeStamper(fmt="iso"))
    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def setup_logging(level: str = LOG_LEVEL, format: str = LOG_FORMAT, redact_pii: bool = True) -> None:
    """Configure structlog once for the process.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR)
        format: "json" for production, "console" for development
        redact_pii: Whether to mask phone/email/identity values
    """
    level_map = {
        "DEBUG": 10,
        "INFO": 20,
        "WARNING": 30,
        "ERROR": 40,
        "CRITICAL": 50,
    }
    structlog.configure(
        processors=build_processors(format, redact_pii),
        wrapper_class=structlog.make_filtering_bound_logger(level_map.get(level.upper(), 20)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
