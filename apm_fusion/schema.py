"""Pydantic schemas for the APM fusion engine.

This module defines Pydantic schemas for:
- Structural entities (services, operations, dependency edges)
- Per-entity metric records filled in by the fusion coordinator
- Display rows (enriched entities and grouped dependency rows)
- Filter state, time windows and paginated results
"""

import math
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EntityKind(str, Enum):
    """Granularity of a structural entity."""

    SERVICE = "service"
    OPERATION = "operation"
    DEPENDENCY = "dependency"


class MetricKind(str, Enum):
    """Metric kinds the coordinator can fetch for an entity."""

    P50 = "p50"
    P90 = "p90"
    P99 = "p99"
    FAULT_RATE = "fault_rate"
    ERROR_RATE = "error_rate"
    AVAILABILITY = "availability"
    DEPENDENCY_COUNT = "dependency_count"

    @property
    def field_name(self) -> str:
        """Name of the MetricRecord field this kind writes to."""
        return _METRIC_FIELD_NAMES[self]

    @property
    def is_time_series(self) -> bool:
        """Whether this kind is served by the time-series backend."""
        return self is not MetricKind.DEPENDENCY_COUNT


_METRIC_FIELD_NAMES: dict[MetricKind, str] = {
    MetricKind.P50: "p50_duration",
    MetricKind.P90: "p90_duration",
    MetricKind.P99: "p99_duration",
    MetricKind.FAULT_RATE: "fault_rate",
    MetricKind.ERROR_RATE: "error_rate",
    MetricKind.AVAILABILITY: "availability",
    MetricKind.DEPENDENCY_COUNT: "dependency_count",
}

TIME_SERIES_METRIC_KINDS: tuple[MetricKind, ...] = tuple(
    kind for kind in MetricKind if kind.is_time_series
)

# Float-valued metric fields shared by records and display rows.
METRIC_FIELDS: tuple[str, ...] = (
    "p50_duration",
    "p90_duration",
    "p99_duration",
    "fault_rate",
    "error_rate",
    "availability",
)


class AvailabilityBucket(str, Enum):
    """Availability threshold buckets."""

    BELOW_95 = "< 95%"
    BETWEEN_95_99 = "95-99%"
    AT_LEAST_99 = "≥ 99%"


class RateBucket(str, Enum):
    """Error and fault rate threshold buckets."""

    BELOW_1 = "< 1%"
    BETWEEN_1_5 = "1-5%"
    ABOVE_5 = "> 5%"


class SortDirection(str, Enum):
    """Sort direction for table projection."""

    ASC = "asc"
    DESC = "desc"


def is_defined(value: Any) -> bool:
    """Return True for a present, non-NaN value."""
    if value is None:
        return False
    return not (isinstance(value, float) and math.isnan(value))


# =============================================================================
# Structural entities
# =============================================================================


class Entity(BaseModel):
    """A service, operation or dependency edge discovered structurally."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    service_name: str = Field(
        description="Owning service, or the remote service for a dependency edge"
    )
    service_operation: str | None = Field(
        default=None, description="Operation name on the owning/calling service"
    )
    remote_operation: str | None = Field(
        default=None, description="Operation invoked on the remote service"
    )
    environment: str = Field(default="unknown", description="Deployment environment")
    call_count: int = Field(
        default=0, ge=0, description="Request or call count from the structural backend"
    )

    @model_validator(mode="after")
    def _remote_requires_operation(self) -> "Entity":
        if self.remote_operation and not self.service_operation:
            raise ValueError("remote_operation requires service_operation")
        return self

    @property
    def kind(self) -> EntityKind:
        """Granularity implied by which identity attributes are present."""
        if self.remote_operation:
            return EntityKind.DEPENDENCY
        if self.service_operation:
            return EntityKind.OPERATION
        return EntityKind.SERVICE

    def identity(self) -> tuple[str, ...]:
        """Identity attributes in key order, omitting absent ones."""
        parts = (self.service_name, self.service_operation, self.remote_operation)
        return tuple(p for p in parts if p)


class EntityScope(BaseModel):
    """Where to look for entities: one service in one environment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    service_name: str = Field(description="Service whose entities are fused")
    environment: str = Field(description="Deployment environment")
    kind: EntityKind = Field(
        default=EntityKind.OPERATION, description="Granularity of the fused entities"
    )
    query_index: str | None = Field(
        default=None, description="Structural dataset; the configured index if unset"
    )


class TimeWindow(BaseModel):
    """A closed time interval with timezone-aware bounds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    start: datetime = Field(description="Inclusive start of the window")
    end: datetime = Field(description="Inclusive end of the window")

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if self.start > self.end:
            raise ValueError("TimeWindow start must not be after end")
        return self

    @classmethod
    def trailing(cls, seconds: int, now: datetime | None = None) -> "TimeWindow":
        """Window of ``seconds`` length ending at ``now``."""
        end = now or datetime.now(timezone.utc)
        return cls(start=end - timedelta(seconds=seconds), end=end)

    @property
    def start_epoch(self) -> int:
        return int(self.start.timestamp())

    @property
    def end_epoch(self) -> int:
        return int(self.end.timestamp())


# =============================================================================
# Metrics
# =============================================================================


class MetricRecord(BaseModel):
    """Fused metrics for one entity.

    Every field starts at zero when the record is seeded. ``observed`` tracks
    which fields were written from a backend so a measured zero can be told
    apart from missing data.
    """

    model_config = ConfigDict(extra="forbid")

    p50_duration: float = Field(default=0.0, description="p50 latency (ms)")
    p90_duration: float = Field(default=0.0, description="p90 latency (ms)")
    p99_duration: float = Field(default=0.0, description="p99 latency (ms)")
    fault_rate: float = Field(default=0.0, description="Fault ratio")
    error_rate: float = Field(default=0.0, description="Error ratio")
    availability: float = Field(default=0.0, description="Availability ratio (0-1)")
    dependency_count: int = Field(default=0, ge=0, description="Distinct dependencies")
    observed: set[str] = Field(
        default_factory=set, description="Fields that received backend data"
    )

    def set_metric(self, field_name: str, value: float | int) -> None:
        """Write one metric field and mark it observed."""
        if field_name not in self.__class__.model_fields or field_name == "observed":
            raise ValueError(f"Unknown metric field: {field_name}")
        setattr(self, field_name, value)
        self.observed.add(field_name)

    def has_data(self, field_name: str) -> bool:
        return field_name in self.observed


class EnrichedEntity(BaseModel):
    """An entity flattened together with its fused metrics."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    service_name: str
    service_operation: str | None = None
    remote_operation: str | None = None
    environment: str = "unknown"
    call_count: int = 0
    p50_duration: float | None = None
    p90_duration: float | None = None
    p99_duration: float | None = None
    fault_rate: float | None = None
    error_rate: float | None = None
    availability: float | None = None
    dependency_count: int | None = None

    @classmethod
    def from_parts(
        cls, entity: Entity, record: MetricRecord | None
    ) -> "EnrichedEntity":
        """Merge an entity with its record; metrics stay None without a record."""
        data: dict[str, Any] = entity.model_dump()
        if record is not None:
            data.update(record.model_dump(exclude={"observed"}))
        return cls(**data)


class GroupedDependencyRow(BaseModel):
    """Display row for all edges to one remote operation of one service."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    service_name: str = Field(description="Remote service name")
    environment: str = Field(description="Environment of the first member edge")
    remote_operation: str = Field(description="Operation invoked on the remote service")
    service_operations: list[str] = Field(
        default_factory=list, description="Sorted unique calling operations"
    )
    call_count: int = Field(default=0, description="Sum of member call counts")
    p50_duration: float | None = None
    p90_duration: float | None = None
    p99_duration: float | None = None
    fault_rate: float | None = None
    error_rate: float | None = None
    availability: float | None = None


class ServiceFaultRate(BaseModel):
    """A service ranked by its current fault rate."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    service_name: str
    environment: str
    fault_rate: float


# =============================================================================
# Filtering and projection
# =============================================================================


class FilterState(BaseModel):
    """User-selected filter axes. Empty selections do not filter."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    names: frozenset[str] = Field(
        default_factory=frozenset, description="Selected operation/service names"
    )
    service_operations: frozenset[str] = Field(
        default_factory=frozenset, description="Selected calling operations"
    )
    remote_operations: frozenset[str] = Field(
        default_factory=frozenset, description="Selected remote operations"
    )
    availability_buckets: frozenset[AvailabilityBucket] = Field(
        default_factory=frozenset
    )
    error_rate_buckets: frozenset[RateBucket] = Field(default_factory=frozenset)
    fault_rate_buckets: frozenset[RateBucket] = Field(default_factory=frozenset)
    latency_range: tuple[float, float] | None = Field(
        default=None, description="Inclusive p99 latency bounds (ms)"
    )
    request_range: tuple[float, float] | None = Field(
        default=None, description="Inclusive request/call count bounds"
    )

    @property
    def has_bucket_selection(self) -> bool:
        return bool(
            self.availability_buckets
            or self.error_rate_buckets
            or self.fault_rate_buckets
        )


class FilterFacets(BaseModel):
    """Choices and slider bounds derived from the current rows."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    names: list[str] = Field(default_factory=list)
    service_operations: list[str] = Field(default_factory=list)
    remote_operations: list[str] = Field(default_factory=list)
    latency_range: tuple[float, float] = (0, 10000)
    request_range: tuple[float, float] = (0, 100000)


class Page(BaseModel):
    """One page of projected rows."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    items: list[Any] = Field(default_factory=list)
    page_index: int = Field(ge=0)
    page_size: int = Field(gt=0)
    total_item_count: int = Field(ge=0)

    @property
    def page_count(self) -> int:
        return math.ceil(self.total_item_count / self.page_size)
