"""
Observability components for PolicyMesh.

Provides Prometheus metrics and logging setup.
"""

from .logconfig import configure_logging
from .metrics import PolicyMetrics, get_metrics, setup_metrics, start_metrics_server

__all__ = [
    "configure_logging",
    "PolicyMetrics",
    "get_metrics",
    "setup_metrics",
    "start_metrics_server",
]
