"""Backend query executors (Prometheus and OpenSearch PPL)."""

from .base import MetricQueryExecutor, StructuralQueryExecutor
from .factory import get_metric_executor, get_structural_executor, reset_clients
from .ppl import PPLClient
from .promql import PrometheusClient

__all__ = [
    "MetricQueryExecutor",
    "PPLClient",
    "PrometheusClient",
    "StructuralQueryExecutor",
    "get_metric_executor",
    "get_structural_executor",
    "reset_clients",
]
