"""Fusion of structural entities with time-series metrics.

``MetricsFusionCoordinator.fuse`` seeds one zeroed record per entity, fans
out one query per time-series metric kind, then joins each normalized
response into the records. Query tasks only fetch; every write into the
record map happens on the task running ``fuse``.

The HTTP endpoints run one ``fuse`` per request. Long-lived callers that
refresh the same view repeatedly (a polling dashboard, a websocket feed)
hold a ``FusionSession`` instead: each ``refresh`` cancels the cycle still
in flight and its caller gets ``FusionSupersededError``.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from apm_fusion.clients.base import MetricQueryExecutor, StructuralQueryExecutor
from apm_fusion.clients.ppl import extract_dependency_count
from apm_fusion.config import FusionConfig, get_fusion_config
from apm_fusion.exceptions import BackendUnavailableError, FusionSupersededError
from apm_fusion.fusion.joiner import KEY_SPECS, KeySpec, entity_key, join_rows
from apm_fusion.fusion.normalizer import ResponseShape, detect_shape, normalize
from apm_fusion.queries.ppl import build_operation_dependency_count_query
from apm_fusion.queries.promql import build_metric_query
from apm_fusion.schema import (
    Entity,
    EntityKind,
    EntityScope,
    MetricKind,
    MetricRecord,
    TimeWindow,
)
from apm_fusion.telemetry import instrumented

logger = logging.getLogger(__name__)

# Backend units to display units: seconds to ms, percent to ratio.
UNIT_MULTIPLIERS: dict[MetricKind, float] = {
    MetricKind.P50: 1000.0,
    MetricKind.P90: 1000.0,
    MetricKind.P99: 1000.0,
    MetricKind.FAULT_RATE: 1.0,
    MetricKind.ERROR_RATE: 1.0,
    MetricKind.AVAILABILITY: 0.01,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MetricsFusionCoordinator:
    """Fetches and fuses metrics for the entities of one scope."""

    def __init__(
        self,
        metric_executor: MetricQueryExecutor,
        structural_executor: StructuralQueryExecutor,
        config: FusionConfig | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.metric_executor = metric_executor
        self.structural_executor = structural_executor
        self.config = config or get_fusion_config()
        self.clock = clock

    @instrumented
    async def fuse(
        self,
        entities: Sequence[Entity],
        metric_kinds: Iterable[MetricKind],
        window: TimeWindow,
        scope: EntityScope,
    ) -> dict[str, MetricRecord]:
        """Fuse metrics for ``entities`` into a fresh key to record map.

        Time-series kinds are read over the trailing window ending now,
        whatever ``window`` is. ``window`` bounds the structural
        dependency-count queries only.

        Raises:
            BackendUnavailableError: If any time-series query fails. The
                remaining queries are cancelled first.
        """
        key_spec = KEY_SPECS[scope.kind]
        records: dict[str, MetricRecord] = {}
        targets: dict[str, Entity] = {}
        for entity in entities:
            key = entity_key(entity, key_spec)
            if key is None:
                logger.warning(f"Entity lacks identity for {scope.kind.value} key: {entity}")
                continue
            records.setdefault(key, MetricRecord())
            targets.setdefault(key, entity)

        if not records:
            return records

        kinds = list(dict.fromkeys(metric_kinds))
        series_kinds = [kind for kind in kinds if kind.is_time_series]
        if series_kinds:
            await self._fuse_time_series(records, series_kinds, scope, key_spec)
        if MetricKind.DEPENDENCY_COUNT in kinds:
            await self._fuse_dependency_counts(records, targets, window, scope)

        logger.info(
            f"Fused {len(kinds)} metric kinds for {len(records)} "
            f"{scope.kind.value} entities of '{scope.service_name}'"
        )
        return records

    async def _fuse_time_series(
        self,
        records: dict[str, MetricRecord],
        kinds: list[MetricKind],
        scope: EntityScope,
        key_spec: KeySpec,
    ) -> None:
        trailing = TimeWindow.trailing(
            self.config.trailing_window_seconds, now=self.clock()
        )
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def fetch(kind: MetricKind) -> tuple[MetricKind, Any]:
            query = build_metric_query(
                kind, scope.kind, scope.environment, scope.service_name
            )
            async with semaphore:
                try:
                    response = await self.metric_executor.execute_metric_request(
                        query,
                        trailing.start_epoch,
                        trailing.end_epoch,
                        self.config.query_step,
                    )
                except Exception as e:
                    raise BackendUnavailableError(
                        f"Failed to fetch {kind.value} metrics for "
                        f"'{scope.service_name}': {e}",
                        source=kind.value,
                    ) from e
            return kind, response

        tasks = [asyncio.create_task(fetch(kind)) for kind in kinds]
        try:
            for next_done in asyncio.as_completed(tasks):
                kind, response = await next_done
                self._apply(records, kind, response, key_spec)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def _apply(
        self,
        records: dict[str, MetricRecord],
        kind: MetricKind,
        response: Any,
        key_spec: KeySpec,
    ) -> None:
        rows = normalize(response)
        if not rows:
            if detect_shape(response) is ResponseShape.UNRECOGNIZED:
                logger.warning(f"Unrecognized response shape for {kind.value} metrics")
            else:
                logger.debug(f"No {kind.value} series returned")
            return
        stats = join_rows(
            records, rows, key_spec, kind.field_name, UNIT_MULTIPLIERS[kind]
        )
        logger.debug(
            f"{kind.value}: joined={stats.joined} orphaned={stats.orphaned} "
            f"missing_labels={stats.missing_labels}"
        )

    async def _fuse_dependency_counts(
        self,
        records: dict[str, MetricRecord],
        targets: dict[str, Entity],
        window: TimeWindow,
        scope: EntityScope,
    ) -> None:
        if scope.kind is not EntityKind.OPERATION:
            logger.debug(f"dependency_count is not defined for {scope.kind.value} entities")
            return

        index = scope.query_index or self.config.topology_index
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def count(key: str, entity: Entity) -> tuple[str, int | None]:
            query = build_operation_dependency_count_query(
                index,
                window,
                scope.environment,
                entity.service_name,
                entity.service_operation or "",
            )
            try:
                async with semaphore:
                    response = await self.structural_executor.execute_query(query, index)
                return key, extract_dependency_count(response)
            except Exception as e:
                logger.warning(
                    f"Dependency count failed for operation "
                    f"'{entity.service_operation}': {e}"
                )
                return key, None

        results = await asyncio.gather(
            *(count(key, entity) for key, entity in targets.items())
        )
        for key, value in results:
            if value is not None:
                records[key].set_metric("dependency_count", value)


class FusionSession:
    """Runs fusion cycles for one view; a new refresh supersedes the last.

    The superseded caller receives ``FusionSupersededError`` so results of
    an older cycle are never delivered after a newer one started.
    """

    def __init__(self, coordinator: MetricsFusionCoordinator):
        self.coordinator = coordinator
        self._current: asyncio.Task | None = None

    @property
    def in_flight(self) -> bool:
        return self._current is not None and not self._current.done()

    def cancel(self) -> None:
        """Cancel the in-flight cycle, if any."""
        if self.in_flight:
            self._current.cancel()

    async def refresh(
        self,
        entities: Sequence[Entity],
        metric_kinds: Iterable[MetricKind],
        window: TimeWindow,
        scope: EntityScope,
    ) -> dict[str, MetricRecord]:
        if self.in_flight:
            logger.info("Superseding in-flight fusion cycle")
            self.cancel()

        task = asyncio.create_task(
            self.coordinator.fuse(entities, list(metric_kinds), window, scope)
        )
        self._current = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._current is task and task.done():
                self._current = None

        if task.cancelled():
            raise FusionSupersededError()
        return task.result()
