"""Normalization of time-series responses into (labels, value) rows.

Two wire shapes are recognised:

1. Row frame: ``meta.instantData.rows`` is a list of flat objects. Every
   key except ``Value`` and ``Time`` is a label; ``Value`` holds the
   number as a string.
2. Classic series: a ``result`` array found at ``body.data.result``,
   ``data.result`` or ``result``. Each entry carries a ``metric`` label map
   and either ``value`` (one ``[ts, value]`` pair) or ``values`` (pairs,
   the last one is current).

The row frame is tried first. Anything else normalizes to no rows.
"""

import logging
import math
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

NormalizedRow = tuple[dict[str, str], float]

_ROW_FRAME_RESERVED = ("Value", "Time")


class ResponseShape(str, Enum):
    ROW_FRAME = "row_frame"
    CLASSIC_SERIES = "classic_series"
    UNRECOGNIZED = "unrecognized"


def parse_metric_value(raw: Any) -> float:
    """Parse a sample value; unparseable, NaN and infinite values become 0.0."""
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning(f"Unparseable metric value {raw!r}, using 0")
        return 0.0
    if math.isnan(value) or math.isinf(value):
        logger.warning(f"Non-finite metric value {raw!r}, using 0")
        return 0.0
    return value


def _row_frame_rows(response: Any) -> list[Any] | None:
    if not isinstance(response, dict):
        return None
    meta = response.get("meta")
    if not isinstance(meta, dict):
        return None
    instant = meta.get("instantData")
    if not isinstance(instant, dict):
        return None
    rows = instant.get("rows")
    return rows if isinstance(rows, list) else None


def _classic_results(response: Any) -> list[Any] | None:
    if not isinstance(response, dict):
        return None
    body = response.get("body")
    if isinstance(body, dict):
        data = body.get("data")
        if isinstance(data, dict) and isinstance(data.get("result"), list):
            return data["result"]
    data = response.get("data")
    if isinstance(data, dict) and isinstance(data.get("result"), list):
        return data["result"]
    if isinstance(response.get("result"), list):
        return response["result"]
    return None


def detect_shape(response: Any) -> ResponseShape:
    if _row_frame_rows(response) is not None:
        return ResponseShape.ROW_FRAME
    if _classic_results(response) is not None:
        return ResponseShape.CLASSIC_SERIES
    return ResponseShape.UNRECOGNIZED


def _normalize_row_frame(rows: list[Any]) -> list[NormalizedRow]:
    normalized: list[NormalizedRow] = []
    for row in rows:
        if not isinstance(row, dict):
            logger.warning(f"Skipping non-object row-frame entry: {row!r}")
            continue
        labels = {
            str(k): str(v)
            for k, v in row.items()
            if k not in _ROW_FRAME_RESERVED and v is not None
        }
        normalized.append((labels, parse_metric_value(row.get("Value"))))
    return normalized


def _normalize_classic(results: list[Any]) -> list[NormalizedRow]:
    normalized: list[NormalizedRow] = []
    for series in results:
        if not isinstance(series, dict):
            logger.warning(f"Skipping non-object series entry: {series!r}")
            continue
        metric = series.get("metric") or {}
        if not isinstance(metric, dict):
            logger.warning(f"Skipping series with non-object labels: {metric!r}")
            continue
        labels = {str(k): str(v) for k, v in metric.items() if v is not None}

        pair = series.get("value")
        if not pair:
            values = series.get("values") or []
            if not isinstance(values, list):
                logger.warning(f"Malformed samples {values!r} for series {labels}, skipping")
                continue
            if not values:
                logger.warning(f"No samples for series {labels}, skipping")
                continue
            pair = values[-1]
        if not isinstance(pair, (list, tuple)) or len(pair) < 2:
            logger.warning(f"Malformed sample {pair!r} for series {labels}, skipping")
            continue
        normalized.append((labels, parse_metric_value(pair[1])))
    return normalized


def normalize(response: Any) -> list[NormalizedRow]:
    """Flatten either supported response shape into ``(labels, value)`` rows.

    Returns an empty list when the shape is unrecognized; the caller
    decides how loudly to report that.
    """
    rows = _row_frame_rows(response)
    if rows is not None:
        return _normalize_row_frame(rows)
    results = _classic_results(response)
    if results is not None:
        return _normalize_classic(results)
    return []
