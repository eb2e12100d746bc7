"""Metrics fusion: normalize, join, aggregate, filter and project."""

from .coordinator import FusionSession, MetricsFusionCoordinator

__all__ = [
    "FusionSession",
    "MetricsFusionCoordinator",
]
