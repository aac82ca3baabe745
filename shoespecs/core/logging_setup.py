"""structlog bootstrap shared by the runner, the per-article child and the resolver.

Every record carries ``process`` (runner/child/resolver) so interleaved output
from a runner and its children can be told apart. The child logs to stderr:
its stdout is reserved for ``STAGE`` heartbeat lines.
"""

import logging
import logging.config
import sys

import structlog
from structlog.dev import ConsoleRenderer

from shoespecs.core.config import settings

_LOCAL_ENVIRONMENTS = ("", "local", "development", "dev")
_QUIET_LOGGERS = ("asyncpg", "httpx", "httpcore", "openai")

_configured_role: str | None = None


def _renderer():
    if settings.ENVIRONMENT.lower() in _LOCAL_ENVIRONMENTS:
        return ConsoleRenderer(colors=False, pad_event=32)
    return structlog.processors.JSONRenderer()


def _dict_config(log_level: str, stream: str, pre_chain: list) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    _renderer(),
                ],
                "foreign_pre_chain": pre_chain,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": stream,
            },
        },
        "root": {"handlers": ["default"], "level": log_level.upper()},
        "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
    }


def configure_logging(log_level: str, *, role: str, stream: str = "ext://sys.stdout") -> None:
    """Configure structlog once per process and bind ``process=role``.

    Console output locally, JSON elsewhere (``ENVIRONMENT``).
    """
    global _configured_role
    if _configured_role is not None:
        return

    for handle in (sys.stdout, sys.stderr):
        if hasattr(handle, "reconfigure"):
            handle.reconfigure(encoding="utf-8", errors="backslashreplace")

    pre_chain: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.config.dictConfig(_dict_config(log_level, stream, pre_chain))

    structlog.contextvars.bind_contextvars(process=role)
    _configured_role = role
