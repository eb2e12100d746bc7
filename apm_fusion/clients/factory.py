"""Lazy initialization for backend clients.

Clients are built once from the active FusionConfig and shared across
requests. Tests call ``reset_clients`` after changing configuration.
"""

import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar, cast

from apm_fusion.clients.base import MetricQueryExecutor, StructuralQueryExecutor
from apm_fusion.clients.ppl import PPLClient
from apm_fusion.clients.promql import PrometheusClient
from apm_fusion.config import get_fusion_config

logger = logging.getLogger(__name__)

T = TypeVar("T")

_clients: dict[str, Any] = {}
_lock = threading.Lock()


def _get_client(name: str, build: Callable[[], T]) -> T:
    """Helper for thread-safe lazy initialization of clients.

    Args:
        name: Unique name/key for the client instance.
        build: Zero-argument constructor for the client.

    Returns:
        The initialized client instance.
    """
    if name not in _clients:
        with _lock:
            if name not in _clients:
                _clients[name] = build()
                logger.debug(f"Initialized {name} client")
    return cast(T, _clients[name])


def get_metric_executor() -> MetricQueryExecutor:
    """Returns the shared Prometheus client."""
    config = get_fusion_config()
    return _get_client(
        "prometheus",
        lambda: PrometheusClient(
            config.prometheus_url,
            timeout=config.http_timeout_seconds,
            default_step=config.query_step,
        ),
    )


def get_structural_executor() -> StructuralQueryExecutor:
    """Returns the shared OpenSearch PPL client."""
    config = get_fusion_config()
    return _get_client(
        "ppl",
        lambda: PPLClient(config.opensearch_url, timeout=config.http_timeout_seconds),
    )


def reset_clients() -> None:
    """Drop cached clients so the next call rebuilds them."""
    with _lock:
        _clients.clear()
