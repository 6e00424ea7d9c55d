"""
Structured logging setup for Anchor Lens
Uses structlog on top of stdlib logging, scoped to the anchor_lens logger tree
"""

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional
import structlog
from structlog.typing import EventDict, Processor
from solders.pubkey import Pubkey

if TYPE_CHECKING:
    from anchor_lens.core.config import LogConfig


PACKAGE_LOGGER = "anchor_lens"


def add_timestamp(logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add ISO timestamp to log events"""
    from datetime import datetime, timezone
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_log_level(logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add log level to event dict"""
    event_dict["level"] = method_name
    return event_dict


def render_binary_values(logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Raw payloads as hex, program ids and keys as base58"""
    for key, value in event_dict.items():
        if isinstance(value, (bytes, bytearray, memoryview)):
            event_dict[key] = bytes(value).hex()
        elif isinstance(value, Pubkey):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(
    level: str = "INFO",
    format: str = "json",
    output_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure structured logging for the anchor_lens package

    Calling it again replaces the handlers installed by the previous call.
    Loggers outside the package are left alone.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        format: Output format ("json" or "console")
        output_file: Optional file path for log output

    Returns:
        The package-level stdlib logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(numeric_level)
    package_logger.propagate = False

    handlers = [logging.StreamHandler(sys.stderr)]
    if output_file:
        log_path = Path(output_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(output_file))

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        package_logger.addHandler(handler)

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        add_log_level,
        add_timestamp,
        render_binary_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return package_logger


def setup_from_config(log_config: "LogConfig") -> logging.Logger:
    """Apply the logging section of a loaded LensConfig"""
    return setup_logging(
        level=log_config.level,
        format=log_config.format,
        output_file=log_config.output_file,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance

    Args:
        name: Logger name (usually __name__)

    Returns:
        structlog logger bound to the given name
    """
    return structlog.get_logger(name)
