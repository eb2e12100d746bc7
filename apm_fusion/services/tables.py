"""End-to-end table views for a service's operations and dependencies.

Each view lists entities structurally, fuses their metrics, derives the
filter facets from the unfiltered rows, then filters and projects.
"""

import logging

from pydantic import BaseModel, ConfigDict, Field

from apm_fusion.fusion.aggregator import DependencyAggregator
from apm_fusion.fusion.coordinator import MetricsFusionCoordinator
from apm_fusion.fusion.filters import FilterEngine, compute_filter_facets
from apm_fusion.fusion.joiner import KEY_SPECS, enrich_entities
from apm_fusion.fusion.projector import DEFAULT_PAGE_SIZE, DEFAULT_SORT_FIELD, project
from apm_fusion.schema import (
    TIME_SERIES_METRIC_KINDS,
    EntityKind,
    EntityScope,
    FilterFacets,
    FilterState,
    MetricKind,
    Page,
    SortDirection,
    TimeWindow,
)
from apm_fusion.services.entities import list_entities

logger = logging.getLogger(__name__)

OPERATION_METRIC_KINDS: tuple[MetricKind, ...] = tuple(MetricKind)
DEPENDENCY_METRIC_KINDS: tuple[MetricKind, ...] = TIME_SERIES_METRIC_KINDS


class TableView(BaseModel):
    """One projected page plus the facets for the filter controls."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    page: Page = Field(description="Sorted, filtered page of rows")
    facets: FilterFacets = Field(description="Selections and slider bounds")


async def build_operations_table(
    coordinator: MetricsFusionCoordinator,
    service_name: str,
    environment: str,
    window: TimeWindow,
    filter_state: FilterState | None = None,
    sort_field: str = DEFAULT_SORT_FIELD,
    sort_direction: SortDirection = SortDirection.ASC,
    page_index: int = 0,
    page_size: int = DEFAULT_PAGE_SIZE,
    query_index: str | None = None,
) -> TableView:
    """Operations of ``service_name`` with latency, rates and dependency counts."""
    scope = EntityScope(
        service_name=service_name,
        environment=environment,
        kind=EntityKind.OPERATION,
        query_index=query_index,
    )
    entities = await list_entities(
        coordinator.structural_executor,
        scope,
        window,
        coordinator.config.topology_index,
    )
    records = await coordinator.fuse(entities, OPERATION_METRIC_KINDS, window, scope)
    rows = enrich_entities(entities, records, KEY_SPECS[scope.kind])

    facets = compute_filter_facets(rows, "service_operation")
    if filter_state is not None:
        rows = FilterEngine(name_field="service_operation").apply(rows, filter_state)

    return TableView(
        page=project(rows, sort_field, sort_direction, page_index, page_size),
        facets=facets,
    )


async def build_dependencies_table(
    coordinator: MetricsFusionCoordinator,
    service_name: str,
    environment: str,
    window: TimeWindow,
    filter_state: FilterState | None = None,
    sort_field: str = DEFAULT_SORT_FIELD,
    sort_direction: SortDirection = SortDirection.ASC,
    page_index: int = 0,
    page_size: int = DEFAULT_PAGE_SIZE,
    query_index: str | None = None,
) -> TableView:
    """Dependencies of ``service_name`` grouped per remote operation."""
    scope = EntityScope(
        service_name=service_name,
        environment=environment,
        kind=EntityKind.DEPENDENCY,
        query_index=query_index,
    )
    entities = await list_entities(
        coordinator.structural_executor,
        scope,
        window,
        coordinator.config.topology_index,
    )
    records = await coordinator.fuse(entities, DEPENDENCY_METRIC_KINDS, window, scope)
    rows = enrich_entities(entities, records, KEY_SPECS[scope.kind])

    facets = compute_filter_facets(rows, "service_name")
    aggregator = DependencyAggregator(weighting=coordinator.config.dependency_weighting)
    grouped = aggregator.aggregate(rows, filter_state)
    logger.debug(f"Grouped {len(rows)} dependency edges into {len(grouped)} rows")

    return TableView(
        page=project(grouped, sort_field, sort_direction, page_index, page_size),
        facets=facets,
    )
