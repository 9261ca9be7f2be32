"""structlog setup shared by the sweeps, the seeder and any host application.

Output goes through the stdlib logging bridge, so SQLAlchemy and redis
records are rendered by the same formatter as planguard's own events:
JSON lines in production, ConsoleRenderer when json_logs is False.
"""

import logging
import logging.config
from datetime import date, datetime

import structlog


def service_name_adder(service: str):
    """Processor that stamps every entry with the emitting service."""

    def add_service_name(logger, method, event_dict):
        event_dict.setdefault("service", service)
        return event_dict

    return add_service_name


def isoformat_dates(logger, method, event_dict):
    """Render datetime/date values (trial_end, period bounds) as ISO-8601 strings."""
    for key, value in event_dict.items():
        if isinstance(value, (datetime, date)):
            event_dict[key] = value.isoformat()
    return event_dict


def configure_structlog(log_level: str = "INFO", json_logs: bool = True, service: str = "planguard") -> None:
    """Configure structlog and the stdlib root logger.

    Call once at process start, before anything logs
    (structlog caches the processor chain on first use).

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: JSON lines when True, human-readable console output otherwise
        service: Value of the "service" key on every entry
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        service_name_adder(service),
        isoformat_dates,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["default"], "level": log_level},
        "loggers": {
            "sqlalchemy.engine": {"level": "WARNING"},
            "asyncio": {"level": "WARNING"},
        },
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
