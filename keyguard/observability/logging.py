"""
Structured Logging with Structlog.

Every log line is a JSON object carrying service/version, the bound request
context and a snake_case event name. Credential ids never reach the output
in full: only their plan prefix survives redaction.
"""

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from keyguard.config import settings

# Secrets; only the public prefix is ever logged
_SENSITIVE_KEYS = frozenset({"credential_id", "owner_credential_id", "caller_id"})


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp service name and version onto every event."""
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    return event_dict


def redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace credential ids with their plan prefix (kg_std_***)."""
    for key in _SENSITIVE_KEYS & event_dict.keys():
        value = event_dict[key]
        if isinstance(value, str):
            parts = value.split("_", 2)
            event_dict[key] = f"{parts[0]}_{parts[1]}_***" if len(parts) == 3 else "***"
    return event_dict


def build_processors(json_output: bool, debug: bool) -> list[Processor]:
    """Processor chain shared by the API and one-off scripts."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_credentials,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.ExceptionRenderer() if debug else structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structlog on top of stdlib logging.

    Defaults come from LOG_LEVEL and LOG_FORMAT. Example output:
    {
        "event": "access_decided",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "keyguard.services.access_engine",
        "service": "keyguard-api",
        "request_id": "req-123",
        "credential_id": "kg_std_***",
        ...
    }
    """
    level = (level or settings.log_level).upper()
    log_format = log_format or settings.log_format

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level))

    structlog.configure(
        processors=build_processors(json_output=log_format == "json", debug=level == "DEBUG"),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def log_context(**context: Any) -> AbstractContextManager[None]:
    """
    Bind request-scoped fields for every log line inside the block.

    Usage:
        with log_context(request_id="req-123"):
            logger.info("processing_request")
    """
    return structlog.contextvars.bound_contextvars(**context)
