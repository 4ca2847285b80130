"""
Structured logging setup shared by every component.

Components bind their own context (component, patient_id) on top of the
module-level logger and emit snake_case event names.
"""

import logging

import structlog

from triage_engine.config import LoggingConfig

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure structlog and the stdlib root logger from a LoggingConfig."""
    config = config or LoggingConfig()

    renderer: structlog.types.Processor
    if config.format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    logging.basicConfig(format="%(message)s", level=getattr(logging, config.level))
    logging.getLogger().setLevel(getattr(logging, config.level))

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# Production defaults until the application calls configure_logging itself
configure_logging()
