# sessionledger/logs.py
import logging
import sys

import structlog


def configure_logging(json_output: bool = False, level: str = "info") -> None:
    """
    Configure structlog once per process.
    The daemon logs JSON lines (its stdout is redirected into daemon.log by the spawner);
    interactive commands get the console renderer on stderr.
    """
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(sys.stdout if json_output else sys.stderr),
        cache_logger_on_first_use=False,
    )
