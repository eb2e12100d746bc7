"""Grouping of dependency edges into display rows."""

import logging
from collections.abc import Sequence

from apm_fusion.config import WEIGHTING_CALL_COUNT, WEIGHTING_UNWEIGHTED
from apm_fusion.fusion.filters import FilterEngine
from apm_fusion.schema import (
    METRIC_FIELDS,
    EnrichedEntity,
    FilterState,
    GroupedDependencyRow,
    is_defined,
)

logger = logging.getLogger(__name__)


def mean_of_defined(
    values: Sequence[float | None], weights: Sequence[int] | None = None
) -> float | None:
    """Mean of the defined, non-NaN values; None when there are none.

    With ``weights``, each value counts in proportion to its weight. A
    group whose defined members all weigh zero falls back to the plain
    mean.
    """
    pairs = [
        (v, weights[i] if weights is not None else 1)
        for i, v in enumerate(values)
        if is_defined(v)
    ]
    if not pairs:
        return None
    total_weight = sum(w for _, w in pairs)
    if weights is None or total_weight <= 0:
        return sum(v for v, _ in pairs) / len(pairs)
    return sum(v * w for v, w in pairs) / total_weight


class DependencyAggregator:
    """Filters raw dependency edges, then groups them per remote operation.

    Rows are grouped on ``(service_name, remote_operation)`` in first-seen
    order. Each metric is the mean of the members that have data for it.
    """

    def __init__(self, weighting: str = WEIGHTING_UNWEIGHTED):
        if weighting not in (WEIGHTING_UNWEIGHTED, WEIGHTING_CALL_COUNT):
            raise ValueError(f"Unknown weighting: {weighting}")
        self.weighting = weighting
        self.filter_engine = FilterEngine(name_field="service_name")

    def aggregate(
        self,
        enriched: Sequence[EnrichedEntity],
        filter_state: FilterState | None = None,
    ) -> list[GroupedDependencyRow]:
        rows = (
            self.filter_engine.apply(enriched, filter_state)
            if filter_state is not None
            else list(enriched)
        )

        groups: dict[tuple[str, str], list[EnrichedEntity]] = {}
        for row in rows:
            if not row.remote_operation:
                logger.warning(f"Skipping dependency row without remote operation: {row}")
                continue
            groups.setdefault((row.service_name, row.remote_operation), []).append(row)

        return [
            self._group_row(service_name, remote_operation, members)
            for (service_name, remote_operation), members in groups.items()
        ]

    def _group_row(
        self,
        service_name: str,
        remote_operation: str,
        members: list[EnrichedEntity],
    ) -> GroupedDependencyRow:
        weights = (
            [m.call_count or 0 for m in members]
            if self.weighting == WEIGHTING_CALL_COUNT
            else None
        )
        metrics = {
            field: mean_of_defined([getattr(m, field) for m in members], weights)
            for field in METRIC_FIELDS
        }
        return GroupedDependencyRow(
            service_name=service_name,
            environment=members[0].environment,
            remote_operation=remote_operation,
            service_operations=sorted(
                {m.service_operation for m in members if m.service_operation}
            ),
            call_count=sum(m.call_count or 0 for m in members),
            **metrics,
        )
