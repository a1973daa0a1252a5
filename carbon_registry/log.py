"""structlog setup, called once at process start.

    configure_logging("INFO", "json")     # production
    configure_logging("DEBUG", "console") # development

Modules then log snake_case events with key/value context:

    log = structlog.get_logger(__name__)
    log.info("ledger_confirmed", project_id=..., tx_hash=...)
"""
import logging

import structlog


def configure_logging(level: str = "INFO", fmt: str = "json", stream=None) -> None:
    """``stream`` defaults to stdout; the CLI passes stderr so its JSON output stays clean."""
    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if fmt == "console":
        final = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        final = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared + final,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, str(level).upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )
