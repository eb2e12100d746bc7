"""Prometheus HTTP API client.

Thin async wrapper around ``/api/v1/query_range`` using httpx.
"""

import logging
from typing import Any

import httpx

from apm_fusion.clients.base import MetricQueryExecutor
from apm_fusion.exceptions import BackendUnavailableError
from apm_fusion.telemetry import instrumented

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT_SECONDS = 30
_DEFAULT_STEP = "60s"


class PrometheusClient(MetricQueryExecutor):
    """Executes PromQL range queries against a Prometheus-compatible server."""

    def __init__(
        self,
        base_url: str,
        timeout: float = _HTTP_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
        default_step: str = _DEFAULT_STEP,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}
        self.default_step = default_step
        self._transport = transport

    @instrumented
    async def execute_metric_request(
        self,
        query: str,
        start_time: int,
        end_time: int,
        step: str | None = None,
    ) -> dict[str, Any]:
        """Run a range query and return the decoded JSON body.

        Raises:
            BackendUnavailableError: On transport errors, non-200 responses
                or a Prometheus ``status: error`` payload.
        """
        params = {
            "query": query.strip(),
            "start": str(start_time),
            "end": str(end_time),
            "step": step or self.default_step,
        }
        logger.debug(f"PromQL query: {params['query']}")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.get(
                    f"{self.base_url}/api/v1/query_range",
                    headers=self.headers,
                    params=params,
                )
        except httpx.HTTPError as e:
            raise BackendUnavailableError(
                f"Prometheus request failed: {e}", source="promql"
            ) from e

        if resp.status_code != 200:
            raise BackendUnavailableError(
                f"Prometheus returned {resp.status_code}: {resp.text[:500]}",
                source="promql",
            )

        data = resp.json()
        if isinstance(data, dict) and data.get("status") == "error":
            raise BackendUnavailableError(
                f"Prometheus query error: {data.get('error', 'unknown error')}",
                source="promql",
            )
        return data
