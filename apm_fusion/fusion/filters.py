"""Multi-axis row filtering and filter facets.

A row passes when every axis passes:

- name, service-operation and remote-operation selections: membership
  when the selection is non-empty;
- latency (p99) and request/call-count ranges: inclusive bounds, and rows
  without data pass;
- threshold buckets: with no bucket selected on any metric the axis
  passes; otherwise at least one selected bucket of any metric must match
  a defined value.
"""

import logging
import math
from collections.abc import Callable, Iterable, Sequence
from typing import Any, TypeVar

from apm_fusion.schema import (
    AvailabilityBucket,
    FilterFacets,
    FilterState,
    RateBucket,
    is_defined,
)

logger = logging.getLogger(__name__)

RowT = TypeVar("RowT")

DEFAULT_LATENCY_RANGE: tuple[float, float] = (0, 10000)
DEFAULT_REQUEST_RANGE: tuple[float, float] = (0, 100000)

_AVAILABILITY_PREDICATES: dict[AvailabilityBucket, Callable[[float], bool]] = {
    AvailabilityBucket.BELOW_95: lambda a: a < 0.95,
    AvailabilityBucket.BETWEEN_95_99: lambda a: 0.95 <= a < 0.99,
    AvailabilityBucket.AT_LEAST_99: lambda a: a >= 0.99,
}

_RATE_PREDICATES: dict[RateBucket, Callable[[float], bool]] = {
    RateBucket.BELOW_1: lambda r: r < 0.01,
    RateBucket.BETWEEN_1_5: lambda r: 0.01 <= r <= 0.05,
    RateBucket.ABOVE_5: lambda r: r > 0.05,
}


def availability_bucket_matches(bucket: AvailabilityBucket, value: Any) -> bool:
    return is_defined(value) and _AVAILABILITY_PREDICATES[bucket](value)


def rate_bucket_matches(bucket: RateBucket, value: Any) -> bool:
    return is_defined(value) and _RATE_PREDICATES[bucket](value)


def in_range(value: Any, bounds: tuple[float, float] | None) -> bool:
    """Inclusive range check; missing data and unbounded ranges pass."""
    if bounds is None or not is_defined(value):
        return True
    low, high = bounds
    return low <= value <= high


class FilterEngine:
    """Evaluates a FilterState against display rows.

    Args:
        name_field: Row attribute matched against ``FilterState.names``:
            ``service_operation`` for operations, ``service_name`` for
            dependencies.
    """

    def __init__(
        self,
        name_field: str = "service_operation",
        latency_field: str = "p99_duration",
        request_field: str = "call_count",
    ):
        self.name_field = name_field
        self.latency_field = latency_field
        self.request_field = request_field

    def _selected(self, selection: frozenset[str], value: Any) -> bool:
        return not selection or value in selection

    def _thresholds_match(self, row: Any, state: FilterState) -> bool:
        if not state.has_bucket_selection:
            return True
        availability = getattr(row, "availability", None)
        if any(
            availability_bucket_matches(b, availability)
            for b in state.availability_buckets
        ):
            return True
        error_rate = getattr(row, "error_rate", None)
        if any(rate_bucket_matches(b, error_rate) for b in state.error_rate_buckets):
            return True
        fault_rate = getattr(row, "fault_rate", None)
        return any(rate_bucket_matches(b, fault_rate) for b in state.fault_rate_buckets)

    def matches(self, row: Any, state: FilterState) -> bool:
        if not self._selected(state.names, getattr(row, self.name_field, None)):
            return False
        if not self._selected(
            state.service_operations, getattr(row, "service_operation", None)
        ):
            return False
        if not self._selected(
            state.remote_operations, getattr(row, "remote_operation", None)
        ):
            return False
        if not in_range(getattr(row, self.latency_field, None), state.latency_range):
            return False
        if not in_range(getattr(row, self.request_field, None), state.request_range):
            return False
        return self._thresholds_match(row, state)

    def apply(self, rows: Iterable[RowT], state: FilterState) -> list[RowT]:
        """Rows that pass every axis, in input order."""
        return [row for row in rows if self.matches(row, state)]


def _bounds(values: Iterable[Any], default: tuple[float, float]) -> tuple[float, float]:
    defined = [v for v in values if is_defined(v)]
    if not defined:
        return default
    return (math.floor(min(defined)), math.ceil(max(defined)))


def compute_filter_facets(rows: Sequence[Any], name_field: str) -> FilterFacets:
    """Sorted unique selections and data-driven slider bounds for ``rows``."""

    def unique(field: str) -> list[str]:
        return sorted({v for v in (getattr(r, field, None) for r in rows) if v})

    return FilterFacets(
        names=unique(name_field),
        service_operations=unique("service_operation"),
        remote_operations=unique("remote_operation"),
        latency_range=_bounds(
            (getattr(r, "p99_duration", None) for r in rows), DEFAULT_LATENCY_RANGE
        ),
        request_range=_bounds(
            (getattr(r, "call_count", None) for r in rows), DEFAULT_REQUEST_RANGE
        ),
    )
