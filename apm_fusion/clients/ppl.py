"""OpenSearch PPL client and response helpers.

Queries the service-map topology index through ``/_plugins/_ppl``.
"""

import logging
from typing import Any

import httpx

from apm_fusion.clients.base import StructuralQueryExecutor
from apm_fusion.exceptions import BackendUnavailableError
from apm_fusion.telemetry import instrumented

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT_SECONDS = 30

# Errors that mean "no topology data yet" rather than a broken backend.
_EMPTY_RESULT_MARKERS = ("Unauthorized", "index_not_found_exception", "no such index")


def empty_ppl_response() -> dict[str, Any]:
    return {"schema": [], "datarows": [], "size": 0}


def _is_empty_result_error(message: str) -> bool:
    return any(marker in message for marker in _EMPTY_RESULT_MARKERS)


class PPLClient(StructuralQueryExecutor):
    """Executes PPL queries against an OpenSearch cluster."""

    def __init__(
        self,
        base_url: str,
        timeout: float = _HTTP_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}
        self._transport = transport

    @instrumented
    async def execute_query(self, query: str, dataset_id: str) -> dict[str, Any]:
        """Run a PPL query.

        A missing index or an unauthorized response yields an empty result
        instead of an error, matching a fresh cluster with no topology data.

        Raises:
            BackendUnavailableError: On transport errors and any other
                non-200 response.
        """
        logger.debug(f"PPL query on '{dataset_id}': {query}")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    f"{self.base_url}/_plugins/_ppl",
                    headers=self.headers,
                    json={"query": query},
                )
        except httpx.HTTPError as e:
            raise BackendUnavailableError(
                f"OpenSearch request failed: {e}", source="ppl"
            ) from e

        if resp.status_code != 200:
            message = resp.text[:1000]
            if resp.status_code == 401 or _is_empty_result_error(message):
                logger.warning(
                    f"PPL query on '{dataset_id}' returned no data "
                    f"({resp.status_code}): {message[:200]}"
                )
                return empty_ppl_response()
            raise BackendUnavailableError(
                f"OpenSearch returned {resp.status_code}: {message[:500]}",
                source="ppl",
            )
        return resp.json()


def rows_from_response(response: dict[str, Any]) -> list[dict[str, Any]]:
    """Flatten a PPL response into a list of row dicts.

    Handles the REST shape (``schema`` + ``datarows``), pre-built
    ``jsonData`` rows and column-oriented data frames (``fields`` with
    ``values``). Responses wrapped in ``body`` are unwrapped first.
    """
    if not isinstance(response, dict):
        return []
    if isinstance(response.get("body"), dict):
        response = response["body"]

    json_data = response.get("jsonData")
    if isinstance(json_data, list):
        return [row for row in json_data if isinstance(row, dict)]

    schema = response.get("schema") or []
    datarows = response.get("datarows")
    if isinstance(datarows, list) and schema:
        names = [column.get("name") for column in schema]
        return [dict(zip(names, row)) for row in datarows]

    frame_fields = response.get("fields")
    if isinstance(frame_fields, list) and frame_fields:
        size = max(len(f.get("values") or []) for f in frame_fields)
        rows: list[dict[str, Any]] = [{} for _ in range(size)]
        for frame_field in frame_fields:
            for i, value in enumerate(frame_field.get("values") or []):
                rows[i][frame_field.get("name")] = value
        return rows

    return []


def lookup(row: dict[str, Any], dotted: str) -> Any:
    """Read a dotted attribute path from a PPL row.

    PPL returns selected object fields under their dotted name, so the flat
    key is tried first, then each dotted prefix, then nested traversal.
    """
    if dotted in row:
        return row[dotted]
    parts = dotted.split(".")
    for split in range(len(parts) - 1, 0, -1):
        head = ".".join(parts[:split])
        if head in row and isinstance(row[head], dict):
            value: Any = row[head]
            for part in parts[split:]:
                if not isinstance(value, dict):
                    return None
                value = value.get(part)
            return value
    return None


def _first_count(candidate: dict[str, Any]) -> Any:
    aggregations = candidate.get("aggregations")
    if isinstance(aggregations, dict):
        stat = aggregations.get("dependency_count")
        if isinstance(stat, dict) and stat.get("value"):
            return stat["value"]
    json_data = candidate.get("jsonData")
    if isinstance(json_data, list) and json_data and isinstance(json_data[0], dict):
        if json_data[0].get("dependency_count"):
            return json_data[0]["dependency_count"]
    datarows = candidate.get("datarows")
    if isinstance(datarows, list) and datarows:
        first = datarows[0]
        if isinstance(first, (list, tuple)) and first and first[0]:
            return first[0]
    return None


def extract_dependency_count(response: Any) -> int:
    """Read a ``dependency_count`` stat from any supported PPL response shape.

    Anything unreadable counts as 0.
    """
    if not isinstance(response, dict):
        logger.warning(f"Unexpected dependency count response: {response!r}")
        return 0
    candidates: list[dict[str, Any]] = [response]
    if isinstance(response.get("body"), dict):
        candidates.insert(0, response["body"])

    raw: Any = None
    for candidate in candidates:
        raw = _first_count(candidate)
        if raw:
            break

    try:
        return max(int(float(raw)), 0) if raw else 0
    except (TypeError, ValueError):
        logger.warning(f"Unparseable dependency count: {raw!r}")
        return 0
