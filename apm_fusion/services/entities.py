"""Structural entity discovery from the service-map index."""

import logging
from typing import Any

from apm_fusion.clients.base import StructuralQueryExecutor
from apm_fusion.clients.ppl import lookup, rows_from_response
from apm_fusion.queries.ppl import (
    build_list_dependencies_query,
    build_list_operations_query,
    build_list_services_query,
)
from apm_fusion.schema import Entity, EntityKind, EntityScope, TimeWindow

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
DEFAULT_DEPENDENCY_ENVIRONMENT = "generic:default"


def _count(value: Any) -> int:
    try:
        return max(int(float(value)), 0)
    except (TypeError, ValueError):
        return 0


async def list_services(
    executor: StructuralQueryExecutor,
    query_index: str,
    window: TimeWindow | None,
) -> list[Entity]:
    """All services seen in ``window`` with their event counts."""
    query = build_list_services_query(query_index, window)
    rows = rows_from_response(await executor.execute_query(query, query_index))

    services = []
    for row in rows:
        name = lookup(row, "service.keyAttributes.name")
        if not name:
            continue
        services.append(
            Entity(
                service_name=name,
                environment=lookup(row, "service.keyAttributes.environment") or UNKNOWN,
                call_count=_count(row.get("request_count", row.get("count()"))),
            )
        )
    logger.info(f"Listed {len(services)} services from '{query_index}'")
    return services


async def list_operations(
    executor: StructuralQueryExecutor,
    scope: EntityScope,
    query_index: str,
    window: TimeWindow | None,
) -> list[Entity]:
    """Operations of one service, one entity per name, counted by row."""
    query = build_list_operations_query(
        query_index, window, scope.environment, scope.service_name
    )
    rows = rows_from_response(await executor.execute_query(query, query_index))

    counts: dict[str, int] = {}
    environments: dict[str, str] = {}
    for row in rows:
        name = lookup(row, "operation.name")
        if not name:
            continue
        counts[name] = counts.get(name, 0) + 1
        environments.setdefault(
            name,
            lookup(row, "service.keyAttributes.environment")
            or scope.environment
            or UNKNOWN,
        )

    operations = [
        Entity(
            service_name=scope.service_name,
            service_operation=name,
            environment=environments[name],
            call_count=count,
        )
        for name, count in counts.items()
    ]
    logger.info(f"Listed {len(operations)} operations for '{scope.service_name}'")
    return operations


async def list_dependencies(
    executor: StructuralQueryExecutor,
    scope: EntityScope,
    query_index: str,
    window: TimeWindow | None,
) -> list[Entity]:
    """Dependency edges of one service, one entity per edge, counted by row.

    Edges are keyed by remote service, calling operation and remote
    operation. The entity's service name is the remote service.
    """
    query = build_list_dependencies_query(
        query_index, window, scope.environment, scope.service_name
    )
    rows = rows_from_response(await executor.execute_query(query, query_index))

    counts: dict[tuple[str, str, str], int] = {}
    environments: dict[tuple[str, str, str], str] = {}
    for row in rows:
        remote_service = lookup(row, "operation.remoteService.keyAttributes.name")
        if not remote_service:
            continue
        edge = (
            remote_service,
            lookup(row, "operation.name") or UNKNOWN,
            lookup(row, "operation.remoteOperationName") or UNKNOWN,
        )
        counts[edge] = counts.get(edge, 0) + 1
        environments.setdefault(
            edge,
            lookup(row, "operation.remoteService.keyAttributes.environment")
            or DEFAULT_DEPENDENCY_ENVIRONMENT,
        )

    dependencies = [
        Entity(
            service_name=remote_service,
            service_operation=operation,
            remote_operation=remote_operation,
            environment=environments[(remote_service, operation, remote_operation)],
            call_count=count,
        )
        for (remote_service, operation, remote_operation), count in counts.items()
    ]
    logger.info(f"Listed {len(dependencies)} dependencies for '{scope.service_name}'")
    return dependencies


async def list_entities(
    executor: StructuralQueryExecutor,
    scope: EntityScope,
    window: TimeWindow | None,
    default_index: str,
) -> list[Entity]:
    """Entities of ``scope.kind`` for the scope's service."""
    query_index = scope.query_index or default_index
    if scope.kind is EntityKind.OPERATION:
        return await list_operations(executor, scope, query_index, window)
    if scope.kind is EntityKind.DEPENDENCY:
        return await list_dependencies(executor, scope, query_index, window)
    services = await list_services(executor, query_index, window)
    return [
        s
        for s in services
        if s.service_name == scope.service_name
        and (not scope.environment or s.environment == scope.environment)
    ]
