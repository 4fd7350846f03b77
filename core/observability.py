"""
Structured logging setup.

structlog sits on top of stdlib logging so library log records and our own
events end up in the same stream. JSON output is for deployed environments,
console rendering for local development.
"""

import logging
import sys
from pathlib import Path

import structlog

from core.config import LoggingConfig


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure stdlib logging and structlog from `config`."""
    config = config or LoggingConfig()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.enable_file_logging:
        log_path = Path(config.log_file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, config.level),
        format="%(message)s",
        handlers=handlers,
        force=True,
    )

    processors: list[structlog.typing.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if config.format == "json":
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ]
    else:
        # ConsoleRenderer formats exceptions itself
        processors += [structlog.processors.UnicodeDecoder(), structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
