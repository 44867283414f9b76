"""Logging configuration."""

import logging
import os
import sys

from pydantic import BaseModel, Field

LIBRARY_LOGGER = "toolrelay"


class LogConfig(BaseModel):
    """Logging configuration for an application embedding toolrelay."""

    level: str = "INFO"
    library_level: str | None = None
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"

    # Provider SDKs and LangChain are chatty at INFO
    quiet_loggers: list[str] = Field(default_factory=lambda: ["anthropic", "httpx", "langchain_core"])


def setup_logging(config: LogConfig | None = None) -> None:
    """Configure the root handler, the toolrelay logger and the quieted third-party loggers."""
    if config is None:
        config = LogConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    logging.basicConfig(
        level=config.level.upper(),
        format=config.format,
        datefmt=config.date_format,
        stream=sys.stdout,
        force=True,
    )

    if config.library_level:
        logging.getLogger(LIBRARY_LOGGER).setLevel(config.library_level.upper())

    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Get a logger for a toolrelay module.

    Args:
        name: Module name (typically __name__)
        level: Explicit level, falls back to the LOG_LEVEL environment variable

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    return logger
