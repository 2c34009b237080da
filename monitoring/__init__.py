"""
Monitoring module for the territory resolution service.

Provides rolling-window service metrics.
"""

# The engine imports MetricsCollector, so resolution has to finish loading first
import resolution  # noqa: F401

from .metrics import (
    MetricsBucket,
    MetricsCollector,
    ServiceMetrics,
)

__all__ = [
    'MetricsBucket',
    'MetricsCollector',
    'ServiceMetrics',
]
