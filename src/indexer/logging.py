"""Structured logging for the indexer, built on structlog.

Every record carries the ledger network and program id the process indexes,
so logs from several indexers (devnet and localnet, say) can share a sink.
Per-event context (signature, slot, event_type) is bound with
structlog.contextvars by the engine and follows the event through its awaits.
"""

import logging
import os

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("httpx", "websockets")


def _service_context(network: str | None, program_id: str | None) -> Processor:
    """Processor adding the indexed network and program to each event dict."""
    static = {key: value for key, value in (("network", network), ("program_id", program_id)) if value}

    def add_service_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in static.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service_context


def setup_logging(
    log_level: str = "INFO",
    network: str | None = None,
    program_id: str | None = None,
) -> None:
    """Configure structlog with JSON or console rendering.

    Rendering format is controlled by the LOG_FORMAT environment variable:
    - "json" for production (machine-readable)
    - "console" for development (human-readable, default)
    """
    log_format = os.environ.get("LOG_FORMAT", "console").lower()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        _service_context(network, program_id),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger with the given name."""
    return structlog.get_logger(name)
