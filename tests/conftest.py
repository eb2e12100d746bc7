"""Shared fixtures for APM fusion tests."""

import asyncio
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from apm_fusion.clients.base import MetricQueryExecutor, StructuralQueryExecutor
from apm_fusion.clients.factory import reset_clients
from apm_fusion.config import FusionConfig, reset_fusion_config
from apm_fusion.schema import MetricKind

FIXED_NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Drop cached config and clients around every test."""
    reset_fusion_config()
    reset_clients()
    yield
    reset_fusion_config()
    reset_clients()


@pytest.fixture
def fusion_config() -> FusionConfig:
    return FusionConfig(
        prometheus_url="http://prom.test",
        opensearch_url="http://os.test",
        max_concurrency=4,
    )


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


def kind_for_query(query: str) -> MetricKind:
    """Recover the metric kind from a built PromQL query."""
    for kind, quantile in (
        (MetricKind.P50, "0.50"),
        (MetricKind.P90, "0.90"),
        (MetricKind.P99, "0.99"),
    ):
        if f"histogram_quantile({quantile}" in query:
            return kind
    if query.startswith("(1 -"):
        return MetricKind.AVAILABILITY
    if "error{" in query:
        return MetricKind.ERROR_RATE
    return MetricKind.FAULT_RATE


def classic_response(*series: tuple[dict[str, str], str]) -> dict[str, Any]:
    """Prometheus range-query body with the given (labels, last value) series."""
    return {
        "status": "success",
        "data": {
            "resultType": "matrix",
            "result": [
                {"metric": labels, "values": [[1735732500, "0"], [1735732800, value]]}
                for labels, value in series
            ],
        },
    }


class FakeMetricExecutor(MetricQueryExecutor):
    """Serves canned responses per metric kind and records every call."""

    def __init__(
        self,
        responses: dict[MetricKind, Any] | None = None,
        fail_kinds: set[MetricKind] | None = None,
        block_kinds: set[MetricKind] | None = None,
        delay: float = 0,
    ):
        self.responses = responses or {}
        self.fail_kinds = fail_kinds or set()
        self.block_kinds = block_kinds or set()
        self.delay = delay
        self.calls: list[tuple[MetricKind, int, int]] = []
        self.cancelled: list[MetricKind] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.release = asyncio.Event()

    async def execute_metric_request(self, query, start_time, end_time, step=None):
        kind = kind_for_query(query)
        self.calls.append((kind, start_time, end_time))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if kind in self.fail_kinds:
                raise RuntimeError(f"{kind.value} backend down")
            if kind in self.block_kinds:
                await self.release.wait()
            else:
                await asyncio.sleep(self.delay)
            return self.responses.get(kind, classic_response())
        except asyncio.CancelledError:
            self.cancelled.append(kind)
            raise
        finally:
            self.in_flight -= 1


@pytest.fixture
def structural_executor() -> AsyncMock:
    executor = AsyncMock(spec=StructuralQueryExecutor)
    executor.execute_query.return_value = {"schema": [], "datarows": [], "size": 0}
    return executor
