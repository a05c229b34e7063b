"""Promoter Observability package.

Logging and metrics for promotion runs.
"""

from promoter.observability.logging import configure_logging, get_logger
from promoter.observability.metrics import MetricsCollector

__all__ = ["configure_logging", "get_logger", "MetricsCollector"]
