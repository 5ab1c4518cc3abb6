"""
Structlog configuration for the dashboard API.

Every entry carries the service name and version, whatever is bound through
``log_context`` (request id, user id) and is scrubbed of credentials before
rendering. JSON is emitted in production and a colored console view locally.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from sentinel.config import settings

REDACTED = "[redacted]"

# Keys whose values must never reach the log stream.
SENSITIVE_KEYS = frozenset(
    {"password", "new_password", "access_token", "refresh_token", "authorization", "apikey"}
)

# Chatty client libraries that log every request at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def stamp_service(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    return event_dict


def scrub_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace credential values with a marker; nested dicts are scrubbed one level deep."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if str(k).lower() in SENSITIVE_KEYS else v for k, v in value.items()
            }
    return event_dict


def stringify_ids(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """UUID user and record ids render as plain strings in JSON output."""
    for key in ("user_id", "scan_id", "plan_id"):
        if key in event_dict and event_dict[key] is not None:
            event_dict[key] = str(event_dict[key])
    return event_dict


def build_processors(json_output: bool) -> list[Processor]:
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        stamp_service,
        stringify_ids,
        scrub_credentials,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    chain.append(renderer)
    return chain


def setup_logging() -> None:
    """
    Route stdlib logging to stdout and configure structlog on top of it.

    A JSON entry looks like:
    {"event": "scan_completed", "level": "info", "logger": "sentinel.services.scan_orchestrator",
     "service": "sentinel-dashboard-api", "user_id": "...", "tokens_used": 1, ...}
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=build_processors(settings.log_format == "json"),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind request-scoped fields for the duration of a block.

        with log_context(request_id=request_id, user_id=user.id):
            logger.info("history_loaded")

    Only the keys bound here are removed on exit, so nested blocks compose.
    """

    def __init__(self, **fields: Any) -> None:
        self.fields = {k: v for k, v in fields.items() if v is not None}

    def __enter__(self) -> "log_context":
        structlog.contextvars.bind_contextvars(**self.fields)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.fields)
