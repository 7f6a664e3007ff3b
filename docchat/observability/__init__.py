"""Observability package for DocChat."""

from .logging import (
    JSONFormatter,
    ColoredFormatter,
    StructuredLogger,
    setup_logging,
    get_structured_logger,
    log_performance
)

__all__ = [
    'JSONFormatter',
    'ColoredFormatter',
    'StructuredLogger',
    'setup_logging',
    'get_structured_logger',
    'log_performance'
]
