"""
Structured logging for every DNS Smart Block process.

All three entry points log through structlog. Each record carries the name
of the process that emitted it (``service``) and, for the queue processor,
the classification type it serves, so that the output of several processors
can be merged and still be told apart. Records that third-party libraries
emit through the standard library go through the same renderer.
"""

import logging
import sys

import structlog

from .config import Settings

# Libraries that log every request or statement at INFO/DEBUG.
NOISY_LOGGERS = (
    "httpx",
    "openai",
    "openai._base_client",
    "urllib3",
    "sqlalchemy.engine",
    "uvicorn.access",
)

_HANDLER_NAME = "dns-smart-block"


def _static_fields(**fields):
    def processor(logger, method_name, event_dict):
        for key, value in fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return processor


def configure_logging(settings: Settings, service: str = "dns-smart-block"):
    """
    Install the root handler and configure structlog.

    Calling this again replaces the handler installed by the previous call
    instead of adding a second one.
    """
    static = {"service": service}
    if service == "queue-processor":
        static["classification_type"] = settings.CLASSIFICATION_TYPE

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        _static_fields(**static),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.LOG_FORMAT == "json":
        renderer = [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderer],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.LOG_LEVEL)

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
