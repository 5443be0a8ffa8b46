"""Structured logging setup using structlog"""

import logging
import sys
from typing import Any

import structlog

from filevault.config import settings


# Libraries whose INFO/DEBUG output drowns the service's own events
NOISY_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "apscheduler",
    "sqlalchemy",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "PIL",
    "multipart",
)


def configure_third_party_loggers(log_level: int):
    """Raise noisy library loggers to ERROR; asyncio follows the app level but never below WARNING"""
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)
    logging.getLogger("asyncio").setLevel(max(log_level, logging.WARNING))


def configure_logging():
    """Configure structlog on top of stdlib logging (JSON lines on stdout)"""
    # Settings already lowers production to "error" unless LOG_LEVEL is set
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    configure_third_party_loggers(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Get a logger instance"""
    return structlog.get_logger(name)


def log_storage_config(logger: Any, config: Any) -> None:
    """
    Log the effective storage and compression configuration.

    The database URL may carry credentials, so only its scheme is logged.

    Args:
        logger: Logger instance
        config: Settings object
    """
    scheme = config.database_url.split(":", 1)[0] if config.database_url else "[NOT_SET]"

    logger.info(
        "storage_config_loaded",
        environment=config.environment,
        database=scheme,
        storage_path=str(config.storage_root),
        archive_path=str(config.archive_root),
        max_file_size_bytes=config.max_file_size,
        compression_enabled=config.enable_file_compression,
        compression_quality=config.compression_quality,
        compression_threshold_bytes=config.compression_threshold_size,
        compress_images=config.compress_image_types,
        compress_text=config.compress_text_types,
        max_dimensions=f"{config.compression_max_width}x{config.compression_max_height}",
        max_concurrent_compressions=config.compression_max_concurrent or "unbounded",
        cleanup_enabled=config.cleanup_enabled,
        cleanup_interval_minutes=config.cleanup_interval_minutes,
    )


# Configure logging on import
configure_logging()
