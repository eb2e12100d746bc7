"""PromQL builders for span-derived RED metrics.

Every query is consolidated: one query per metric kind returns one series
per entity, grouped by the labels the joiner keys on.
"""

from apm_fusion.schema import EntityKind, MetricKind

SPAN_DERIVED_NAMESPACE = "span_derived"
LATENCY_HISTOGRAM = "latency_seconds_seconds_bucket"

GROUP_LABELS: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.SERVICE: ("service",),
    EntityKind.OPERATION: ("service", "operation"),
    EntityKind.DEPENDENCY: ("remoteService", "operation", "remoteOperation"),
}

_QUANTILES: dict[MetricKind, str] = {
    MetricKind.P50: "0.50",
    MetricKind.P90: "0.90",
    MetricKind.P99: "0.99",
}


def escape_label_value(value: str) -> str:
    """Escape a value for use inside a double-quoted label matcher."""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _matchers(environment: str, service_name: str, entity_kind: EntityKind) -> str:
    matchers = [
        f'environment="{escape_label_value(environment)}"',
        f'service="{escape_label_value(service_name)}"',
        f'namespace="{SPAN_DERIVED_NAMESPACE}"',
    ]
    if entity_kind is EntityKind.DEPENDENCY:
        matchers.append('remoteService!=""')
    return ",".join(matchers)


def _ratio(numerator: str, selector: str, group_by: str) -> str:
    return (
        f"sum by ({group_by}) ({numerator}{{{selector}}})\n"
        f"  /\n"
        f"  sum by ({group_by}) (request{{{selector}}})"
    )


def build_metric_query(
    metric_kind: MetricKind,
    entity_kind: EntityKind,
    environment: str,
    service_name: str,
) -> str:
    """Build the consolidated query for one time-series metric kind.

    Rates are ratios (0-1), availability is a percentage (0-100) and
    latencies are in seconds. Unit conversion happens on fusion.

    Raises:
        ValueError: For ``dependency_count``, which has no PromQL form.
    """
    if not metric_kind.is_time_series:
        raise ValueError(f"{metric_kind.value} is not a time-series metric")

    group_by = ", ".join(GROUP_LABELS[entity_kind])
    selector = _matchers(environment, service_name, entity_kind)

    if metric_kind in _QUANTILES:
        return (
            f"histogram_quantile({_QUANTILES[metric_kind]},\n"
            f"  sum by ({group_by}, le) (\n"
            f"    {LATENCY_HISTOGRAM}{{{selector}}}\n"
            f"  )\n"
            f")"
        )
    if metric_kind is MetricKind.FAULT_RATE:
        return f"(\n  {_ratio('fault', selector, group_by)}\n)"
    if metric_kind is MetricKind.ERROR_RATE:
        return f"(\n  {_ratio('error', selector, group_by)}\n)"
    # availability
    return f"(1 - (\n  {_ratio('fault', selector, group_by)}\n)) * 100"


def build_top_services_by_fault_rate_query(limit: int = 5) -> str:
    """Fault ratio per (environment, service), highest ``limit`` series."""
    return (
        f"topk({limit},\n"
        f"  sum by (environment, service) (fault)\n"
        f"  /\n"
        f"  sum by (environment, service) (request)\n"
        f")"
    )
