"""
structlog configuration for the API process and the queue worker.

Both processes log one event per line: JSON in production, the console
renderer when ``debug`` is on. Context bound through ``structlog.contextvars``
(the request id, or the job being processed) is merged into every event
emitted while it is bound, including events from the ERP client and the
rate governor.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from .settings import Settings, settings as default_settings

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("azure", "httpx", "httpcore", "uamqp")


def _processors(debug: bool) -> list[Any]:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
    ]
    if debug:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            )
        )
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())
    return processors


def setup_logging(settings: Settings | None = None) -> None:
    """Configure stdlib logging and structlog for this process."""
    settings = settings or default_settings
    level = getattr(logging, settings.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=_processors(settings.debug),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Replace the bound context with a fresh request's."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


@contextmanager
def job_context(job_id: str, vendor_id: str, job_type: str) -> Iterator[None]:
    """Tag every event logged inside the block with the job being processed."""
    with structlog.contextvars.bound_contextvars(
        job_id=job_id, vendor_id=vendor_id, type=job_type
    ):
        yield
