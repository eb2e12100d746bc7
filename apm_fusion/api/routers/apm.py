"""Service operations, dependencies and ranking endpoints."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from apm_fusion.api.dependencies import get_coordinator, get_metrics_backend
from apm_fusion.clients.base import MetricQueryExecutor
from apm_fusion.exceptions import APMFusionError, UserFacingError
from apm_fusion.fusion.coordinator import MetricsFusionCoordinator
from apm_fusion.fusion.projector import DEFAULT_PAGE_SIZE, DEFAULT_SORT_FIELD
from apm_fusion.schema import FilterState, SortDirection
from apm_fusion.services.entities import list_services
from apm_fusion.services.tables import (
    build_dependencies_table,
    build_operations_table,
)
from apm_fusion.services.top_services import (
    DEFAULT_TOP_SERVICES_LIMIT,
    get_top_services_by_fault_rate,
)
from apm_fusion.time_utils import parse_time_range

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/apm", tags=["apm"])


class TableRequest(BaseModel):
    """Request model for the operations and dependencies tables."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    service_name: str = Field(description="Service to inspect")
    environment: str = Field(description="Deployment environment")
    time_from: str = Field(default="now-15m", description="Range start")
    time_to: str = Field(default="now", description="Range end")
    filters: FilterState | None = None
    sort_field: str = DEFAULT_SORT_FIELD
    sort_direction: SortDirection = SortDirection.ASC
    page_index: int = 0
    page_size: int = DEFAULT_PAGE_SIZE
    query_index: str | None = None


@router.post("/operations")
async def operations_table(
    payload: TableRequest,
    coordinator: MetricsFusionCoordinator = Depends(get_coordinator),
) -> Any:
    """Fused metrics for each operation of a service."""
    try:
        window = parse_time_range(payload.time_from, payload.time_to)
        return await build_operations_table(
            coordinator,
            payload.service_name,
            payload.environment,
            window,
            filter_state=payload.filters,
            sort_field=payload.sort_field,
            sort_direction=payload.sort_direction,
            page_index=payload.page_index,
            page_size=payload.page_size,
            query_index=payload.query_index,
        )
    except (HTTPException, APMFusionError):
        raise
    except Exception as e:
        logger.exception(f"Error building operations table for {payload.service_name}")
        raise UserFacingError(f"Internal server error: {e}") from e


@router.post("/dependencies")
async def dependencies_table(
    payload: TableRequest,
    coordinator: MetricsFusionCoordinator = Depends(get_coordinator),
) -> Any:
    """Fused metrics for each remote operation a service depends on."""
    try:
        window = parse_time_range(payload.time_from, payload.time_to)
        return await build_dependencies_table(
            coordinator,
            payload.service_name,
            payload.environment,
            window,
            filter_state=payload.filters,
            sort_field=payload.sort_field,
            sort_direction=payload.sort_direction,
            page_index=payload.page_index,
            page_size=payload.page_size,
            query_index=payload.query_index,
        )
    except (HTTPException, APMFusionError):
        raise
    except Exception as e:
        logger.exception(
            f"Error building dependencies table for {payload.service_name}"
        )
        raise UserFacingError(f"Internal server error: {e}") from e


@router.get("/services")
async def services(
    time_from: str = "now-15m",
    time_to: str = "now",
    query_index: str | None = None,
    coordinator: MetricsFusionCoordinator = Depends(get_coordinator),
) -> Any:
    """Services seen in the service map during the range."""
    try:
        window = parse_time_range(time_from, time_to)
        return await list_services(
            coordinator.structural_executor,
            query_index or coordinator.config.topology_index,
            window,
        )
    except (HTTPException, APMFusionError):
        raise
    except Exception as e:
        logger.exception("Error listing services")
        raise UserFacingError(f"Internal server error: {e}") from e


@router.get("/services/top-fault-rate")
async def top_services_by_fault_rate(
    time_from: str = "now-15m",
    time_to: str = "now",
    limit: int = Query(default=DEFAULT_TOP_SERVICES_LIMIT, ge=1, le=100),
    executor: MetricQueryExecutor = Depends(get_metrics_backend),
) -> Any:
    """Services with the highest current fault rate."""
    try:
        window = parse_time_range(time_from, time_to)
        return await get_top_services_by_fault_rate(executor, window, limit=limit)
    except (HTTPException, APMFusionError):
        raise
    except Exception as e:
        logger.exception("Error ranking services by fault rate")
        raise UserFacingError(f"Internal server error: {e}") from e
