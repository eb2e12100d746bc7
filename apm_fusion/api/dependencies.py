"""Shared dependencies for API endpoints."""

import logging

from apm_fusion.clients.base import MetricQueryExecutor
from apm_fusion.clients.factory import get_metric_executor, get_structural_executor
from apm_fusion.config import get_fusion_config
from apm_fusion.fusion.coordinator import MetricsFusionCoordinator

logger = logging.getLogger(__name__)


def get_coordinator() -> MetricsFusionCoordinator:
    """Build a coordinator over the shared backend clients.

    Coordinators hold no per-call state, so one per request is cheap.
    """
    return MetricsFusionCoordinator(
        get_metric_executor(),
        get_structural_executor(),
        config=get_fusion_config(),
    )


def get_metrics_backend() -> MetricQueryExecutor:
    """The shared time-series executor."""
    return get_metric_executor()
