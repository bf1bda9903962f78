"""
Observability Module for Billing Sync

Provides:
- Structured logging with correlation IDs
- In-memory metrics (API requests, sync outcomes, queue drains)
"""

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
)

__all__ = [
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
    # Metrics
    "MetricsCollector",
    "get_metrics",
]
