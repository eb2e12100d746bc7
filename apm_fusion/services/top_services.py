"""Services ranked by fault rate."""

import logging

from apm_fusion.clients.base import MetricQueryExecutor
from apm_fusion.fusion.normalizer import normalize
from apm_fusion.queries.promql import build_top_services_by_fault_rate_query
from apm_fusion.schema import ServiceFaultRate, TimeWindow

logger = logging.getLogger(__name__)

DEFAULT_TOP_SERVICES_LIMIT = 5


async def get_top_services_by_fault_rate(
    executor: MetricQueryExecutor,
    window: TimeWindow,
    limit: int = DEFAULT_TOP_SERVICES_LIMIT,
) -> list[ServiceFaultRate]:
    """Services with a non-zero fault rate, highest first, at most ``limit``."""
    query = build_top_services_by_fault_rate_query(limit)
    response = await executor.execute_metric_request(
        query, window.start_epoch, window.end_epoch
    )

    services = []
    for labels, value in normalize(response):
        service_name = labels.get("service")
        if not service_name:
            logger.warning(f"Fault rate series without service label: {labels}")
            continue
        if value <= 0:
            continue
        services.append(
            ServiceFaultRate(
                service_name=service_name,
                environment=labels.get("environment", "unknown"),
                fault_rate=value,
            )
        )

    services.sort(key=lambda s: s.fault_rate, reverse=True)
    return services[:limit]
