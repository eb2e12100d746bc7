"""PPL builders for the service-map topology index."""

from apm_fusion.schema import TimeWindow

SERVICE_OPERATION_EVENT = "ServiceOperationDetail"


def escape_literal(value: str) -> str:
    """Escape a value for use inside a single-quoted PPL string literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _base(query_index: str, window: TimeWindow | None) -> str:
    query = f"source={query_index}"
    if window is not None:
        query += (
            f" | where timestamp >= {window.start_epoch}"
            f" and timestamp <= {window.end_epoch}"
        )
    query += " | dedup hashCode"
    query += f" | where eventType = '{SERVICE_OPERATION_EVENT}'"
    return query


def _service_filters(environment: str | None, service_name: str | None) -> str:
    clause = ""
    if environment:
        clause += (
            f" | where service.keyAttributes.environment = '{escape_literal(environment)}'"
        )
    if service_name:
        clause += f" | where service.keyAttributes.name = '{escape_literal(service_name)}'"
    return clause


def build_list_services_query(query_index: str, window: TimeWindow | None) -> str:
    return (
        _base(query_index, window)
        + " | stats count() as request_count"
        + " by service.keyAttributes.name, service.keyAttributes.environment"
    )


def build_list_operations_query(
    query_index: str,
    window: TimeWindow | None,
    environment: str | None,
    service_name: str | None,
) -> str:
    return (
        _base(query_index, window)
        + _service_filters(environment, service_name)
        + " | fields service.keyAttributes, operation.name,"
        + " operation.remoteService.keyAttributes, operation.remoteOperationName"
    )


def build_list_dependencies_query(
    query_index: str,
    window: TimeWindow | None,
    environment: str | None,
    service_name: str | None,
) -> str:
    """Edges from the service's operations to remote services.

    Rows without a remote service are operations that call nothing.
    """
    return (
        _base(query_index, window)
        + _service_filters(environment, service_name)
        + " | where isnotnull(operation.remoteService.keyAttributes.name)"
        + " | fields service.keyAttributes, operation.name,"
        + " operation.remoteService.keyAttributes, operation.remoteOperationName"
    )


def build_operation_dependency_count_query(
    query_index: str,
    window: TimeWindow | None,
    environment: str | None,
    service_name: str,
    operation_name: str,
) -> str:
    """Distinct remote services one operation calls."""
    return (
        _base(query_index, window)
        + _service_filters(environment, service_name)
        + f" | where operation.name = '{escape_literal(operation_name)}'"
        + " | stats distinct_count(operation.remoteService.keyAttributes.name)"
        + " as dependency_count"
    )
