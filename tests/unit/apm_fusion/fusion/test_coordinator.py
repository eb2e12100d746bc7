"""Unit tests for the metrics fusion coordinator."""

import asyncio
import logging
from datetime import timedelta

import pytest
from conftest import FIXED_NOW, FakeMetricExecutor, classic_response

from apm_fusion.exceptions import BackendUnavailableError, FusionSupersededError
from apm_fusion.fusion.coordinator import FusionSession, MetricsFusionCoordinator
from apm_fusion.schema import (
    TIME_SERIES_METRIC_KINDS,
    Entity,
    EntityKind,
    EntityScope,
    MetricKind,
    TimeWindow,
)

DISPLAY_WINDOW = TimeWindow(start=FIXED_NOW - timedelta(hours=1), end=FIXED_NOW)
OPERATION_SCOPE = EntityScope(
    service_name="cart", environment="prod", kind=EntityKind.OPERATION
)
DEPENDENCY_SCOPE = EntityScope(
    service_name="cart", environment="prod", kind=EntityKind.DEPENDENCY
)


def _operations(*names: str) -> list[Entity]:
    return [
        Entity(service_name="cart", service_operation=n, environment="prod")
        for n in names
    ]


def _op_labels(name: str) -> dict[str, str]:
    return {"service": "cart", "operation": name}


def _coordinator(metric_executor, structural_executor, config, clock):
    return MetricsFusionCoordinator(
        metric_executor, structural_executor, config=config, clock=clock
    )


class TestFuseOperations:
    """End-to-end fusion for operation entities."""

    @pytest.mark.asyncio
    async def test_fuses_units_and_drops_orphans(
        self, fusion_config, fixed_clock, structural_executor, caplog
    ):
        executor = FakeMetricExecutor(
            responses={
                MetricKind.P99: classic_response(
                    (_op_labels("A"), "0.25"),
                    (_op_labels("B"), "0.5"),
                    (_op_labels("D"), "9.9"),
                ),
                MetricKind.AVAILABILITY: classic_response(
                    (_op_labels("A"), "99.5"),
                    (_op_labels("B"), "90"),
                ),
                MetricKind.FAULT_RATE: classic_response((_op_labels("B"), "0.07")),
            }
        )
        coordinator = _coordinator(
            executor, structural_executor, fusion_config, fixed_clock
        )

        with caplog.at_level(logging.WARNING):
            records = await coordinator.fuse(
                _operations("A", "B", "C"),
                TIME_SERIES_METRIC_KINDS,
                DISPLAY_WINDOW,
                OPERATION_SCOPE,
            )

        assert sorted(records) == ["cart:A", "cart:B", "cart:C"]
        assert records["cart:A"].p99_duration == pytest.approx(250.0)
        assert records["cart:A"].availability == pytest.approx(0.995)
        assert records["cart:B"].p99_duration == pytest.approx(500.0)
        assert records["cart:B"].availability == pytest.approx(0.9)
        assert records["cart:B"].fault_rate == pytest.approx(0.07)
        # No data: zero-filled but not observed.
        assert records["cart:C"].p99_duration == 0.0
        assert records["cart:C"].observed == set()
        assert "Orphan" in caplog.text

    @pytest.mark.asyncio
    async def test_row_frame_response_joins_by_labels(
        self, fusion_config, fixed_clock, structural_executor
    ):
        executor = FakeMetricExecutor(
            responses={
                MetricKind.P99: {
                    "meta": {
                        "instantData": {
                            "rows": [
                                {
                                    "service": "pay",
                                    "operation": "charge",
                                    "Value": "0.12",
                                    "Time": 1735732800,
                                }
                            ]
                        }
                    }
                }
            }
        )
        coordinator = _coordinator(
            executor, structural_executor, fusion_config, fixed_clock
        )
        entities = [
            Entity(service_name="pay", service_operation="charge", environment="prod"),
            Entity(service_name="pay", service_operation="refund", environment="prod"),
        ]
        scope = EntityScope(service_name="pay", environment="prod")

        records = await coordinator.fuse(
            entities, [MetricKind.P99], DISPLAY_WINDOW, scope
        )

        # 0.12 s from the backend is 120 ms once scaled by 1000.
        assert records["pay:charge"].p99_duration == pytest.approx(120.0)
        assert records["pay:charge"].has_data("p99_duration")
        assert records["pay:refund"].p99_duration == 0.0
        assert records["pay:refund"].observed == set()

    @pytest.mark.asyncio
    async def test_one_query_per_kind_over_trailing_window(
        self, fusion_config, fixed_clock, structural_executor
    ):
        executor = FakeMetricExecutor()
        coordinator = _coordinator(
            executor, structural_executor, fusion_config, fixed_clock
        )

        await coordinator.fuse(
            _operations("A"), TIME_SERIES_METRIC_KINDS, DISPLAY_WINDOW, OPERATION_SCOPE
        )

        assert sorted(k.value for k, _, _ in executor.calls) == sorted(
            k.value for k in TIME_SERIES_METRIC_KINDS
        )
        end = int(FIXED_NOW.timestamp())
        for _, start_time, end_time in executor.calls:
            assert (start_time, end_time) == (end - 300, end)

    @pytest.mark.asyncio
    async def test_trailing_window_is_configurable(
        self, fusion_config, fixed_clock, structural_executor
    ):
        fusion_config.trailing_window_seconds = 60
        executor = FakeMetricExecutor()
        coordinator = _coordinator(
            executor, structural_executor, fusion_config, fixed_clock
        )

        await coordinator.fuse(
            _operations("A"), [MetricKind.P50], DISPLAY_WINDOW, OPERATION_SCOPE
        )

        _, start_time, end_time = executor.calls[0]
        assert end_time - start_time == 60

    @pytest.mark.asyncio
    async def test_empty_entities_issue_no_queries(
        self, fusion_config, fixed_clock, structural_executor
    ):
        executor = FakeMetricExecutor()
        coordinator = _coordinator(
            executor, structural_executor, fusion_config, fixed_clock
        )

        records = await coordinator.fuse(
            [], TIME_SERIES_METRIC_KINDS, DISPLAY_WINDOW, OPERATION_SCOPE
        )

        assert records == {}
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_fan_out_respects_max_concurrency(
        self, fusion_config, fixed_clock, structural_executor
    ):
        fusion_config.max_concurrency = 2
        executor = FakeMetricExecutor(delay=0.01)
        coordinator = _coordinator(
            executor, structural_executor, fusion_config, fixed_clock
        )

        await coordinator.fuse(
            _operations("A"), TIME_SERIES_METRIC_KINDS, DISPLAY_WINDOW, OPERATION_SCOPE
        )

        assert len(executor.calls) == len(TIME_SERIES_METRIC_KINDS)
        assert executor.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_unrecognized_shape_leaves_zeros(
        self, fusion_config, fixed_clock, structural_executor, caplog
    ):
        executor = FakeMetricExecutor(responses={MetricKind.P50: {"unexpected": True}})
        coordinator = _coordinator(
            executor, structural_executor, fusion_config, fixed_clock
        )

        with caplog.at_level(logging.WARNING):
            records = await coordinator.fuse(
                _operations("A"), [MetricKind.P50], DISPLAY_WINDOW, OPERATION_SCOPE
            )

        assert records["cart:A"].p50_duration == 0.0
        assert "Unrecognized response shape" in caplog.text


class TestFuseFailures:
    """Failure and cancellation semantics."""

    @pytest.mark.asyncio
    async def test_kind_failure_raises_and_cancels_others(
        self, fusion_config, fixed_clock, structural_executor
    ):
        executor = FakeMetricExecutor(
            fail_kinds={MetricKind.P90},
            block_kinds=set(TIME_SERIES_METRIC_KINDS) - {MetricKind.P90},
        )
        coordinator = _coordinator(
            executor, structural_executor, fusion_config, fixed_clock
        )

        with pytest.raises(BackendUnavailableError) as exc_info:
            await coordinator.fuse(
                _operations("A"),
                TIME_SERIES_METRIC_KINDS,
                DISPLAY_WINDOW,
                OPERATION_SCOPE,
            )

        assert exc_info.value.source == "p90"
        assert exc_info.value.status_code == 502
        started = {kind for kind, _, _ in executor.calls}
        assert set(executor.cancelled) == started - {MetricKind.P90}
        assert executor.in_flight == 0

    @pytest.mark.asyncio
    async def test_cancelling_caller_cancels_queries(
        self, fusion_config, fixed_clock, structural_executor
    ):
        executor = FakeMetricExecutor(block_kinds=set(TIME_SERIES_METRIC_KINDS))
        coordinator = _coordinator(
            executor, structural_executor, fusion_config, fixed_clock
        )

        task = asyncio.create_task(
            coordinator.fuse(
                _operations("A"),
                TIME_SERIES_METRIC_KINDS,
                DISPLAY_WINDOW,
                OPERATION_SCOPE,
            )
        )
        while len(executor.calls) < fusion_config.max_concurrency:
            await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert executor.in_flight == 0
        assert len(executor.cancelled) == len(executor.calls)


class TestDependencyCount:
    """Dependency counts from the structural backend."""

    @pytest.mark.asyncio
    async def test_counts_per_operation_over_display_window(
        self, fusion_config, fixed_clock, structural_executor
    ):
        async def execute_query(query, dataset_id):
            if "operation.name = 'A'" in query:
                return {"schema": [{"name": "dependency_count"}], "datarows": [[3]]}
            return {"jsonData": [{"dependency_count": "2"}]}

        structural_executor.execute_query.side_effect = execute_query
        coordinator = _coordinator(
            FakeMetricExecutor(), structural_executor, fusion_config, fixed_clock
        )

        records = await coordinator.fuse(
            _operations("A", "B"),
            [MetricKind.DEPENDENCY_COUNT],
            DISPLAY_WINDOW,
            OPERATION_SCOPE,
        )

        assert records["cart:A"].dependency_count == 3
        assert records["cart:B"].dependency_count == 2
        query, dataset_id = structural_executor.execute_query.call_args.args
        assert dataset_id == fusion_config.topology_index
        assert f"timestamp >= {DISPLAY_WINDOW.start_epoch}" in query
        assert f"timestamp <= {DISPLAY_WINDOW.end_epoch}" in query

    @pytest.mark.asyncio
    async def test_entity_failure_keeps_zero(
        self, fusion_config, fixed_clock, structural_executor, caplog
    ):
        async def execute_query(query, dataset_id):
            if "operation.name = 'B'" in query:
                raise RuntimeError("shard failure")
            return {"datarows": [[4]]}

        structural_executor.execute_query.side_effect = execute_query
        coordinator = _coordinator(
            FakeMetricExecutor(), structural_executor, fusion_config, fixed_clock
        )

        with caplog.at_level(logging.WARNING):
            records = await coordinator.fuse(
                _operations("A", "B"),
                [MetricKind.P50, MetricKind.DEPENDENCY_COUNT],
                DISPLAY_WINDOW,
                OPERATION_SCOPE,
            )

        assert records["cart:A"].dependency_count == 4
        assert records["cart:B"].dependency_count == 0
        assert not records["cart:B"].has_data("dependency_count")
        assert "Dependency count failed" in caplog.text

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "malformed",
        [None, [], {"datarows": [{"dependency_count": 3}]}, {"aggregations": []}],
    )
    async def test_malformed_response_isolated_to_its_entity(
        self, fusion_config, fixed_clock, structural_executor, malformed
    ):
        async def execute_query(query, dataset_id):
            if "operation.name = 'A'" in query:
                return malformed
            return {"datarows": [[2]]}

        structural_executor.execute_query.side_effect = execute_query
        coordinator = _coordinator(
            FakeMetricExecutor(), structural_executor, fusion_config, fixed_clock
        )

        records = await coordinator.fuse(
            _operations("A", "B"),
            [MetricKind.DEPENDENCY_COUNT],
            DISPLAY_WINDOW,
            OPERATION_SCOPE,
        )

        assert records["cart:A"].dependency_count == 0
        assert records["cart:B"].dependency_count == 2

    @pytest.mark.asyncio
    async def test_extraction_error_keeps_zero(
        self, fusion_config, fixed_clock, structural_executor, monkeypatch, caplog
    ):
        def explode(response):
            raise KeyError(0)

        monkeypatch.setattr(
            "apm_fusion.fusion.coordinator.extract_dependency_count", explode
        )
        coordinator = _coordinator(
            FakeMetricExecutor(), structural_executor, fusion_config, fixed_clock
        )

        with caplog.at_level(logging.WARNING):
            records = await coordinator.fuse(
                _operations("A"),
                [MetricKind.DEPENDENCY_COUNT],
                DISPLAY_WINDOW,
                OPERATION_SCOPE,
            )

        assert records["cart:A"].dependency_count == 0
        assert not records["cart:A"].has_data("dependency_count")
        assert "Dependency count failed" in caplog.text

    @pytest.mark.asyncio
    async def test_count_queries_respect_max_concurrency(
        self, fusion_config, fixed_clock, structural_executor
    ):
        fusion_config.max_concurrency = 2
        in_flight = 0
        max_in_flight = 0

        async def execute_query(query, dataset_id):
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            try:
                await asyncio.sleep(0.01)
                return {"datarows": [[1]]}
            finally:
                in_flight -= 1

        structural_executor.execute_query.side_effect = execute_query
        coordinator = _coordinator(
            FakeMetricExecutor(), structural_executor, fusion_config, fixed_clock
        )

        records = await coordinator.fuse(
            _operations("A", "B", "C", "D", "E"),
            [MetricKind.DEPENDENCY_COUNT],
            DISPLAY_WINDOW,
            OPERATION_SCOPE,
        )

        assert structural_executor.execute_query.await_count == 5
        assert max_in_flight == 2
        assert all(r.dependency_count == 1 for r in records.values())

    @pytest.mark.asyncio
    async def test_skipped_for_dependency_scope(
        self, fusion_config, fixed_clock, structural_executor
    ):
        coordinator = _coordinator(
            FakeMetricExecutor(), structural_executor, fusion_config, fixed_clock
        )
        entities = [
            Entity(service_name="db", service_operation="GET", remote_operation="SELECT")
        ]

        await coordinator.fuse(
            entities, [MetricKind.DEPENDENCY_COUNT], DISPLAY_WINDOW, DEPENDENCY_SCOPE
        )

        structural_executor.execute_query.assert_not_called()


class TestFuseDependencies:
    """End-to-end fusion for dependency edges."""

    @pytest.mark.asyncio
    async def test_dependency_edges_keyed_by_remote_labels(
        self, fusion_config, fixed_clock, structural_executor
    ):
        entities = [
            Entity(service_name="db", service_operation="op1", remote_operation="query"),
            Entity(service_name="db", service_operation="op2", remote_operation="query"),
        ]

        def labels(operation):
            return {
                "remoteService": "db",
                "operation": operation,
                "remoteOperation": "query",
            }

        executor = FakeMetricExecutor(
            responses={
                MetricKind.P99: classic_response(
                    (labels("op1"), "0.1"), (labels("op2"), "0.3")
                ),
            }
        )
        coordinator = _coordinator(
            executor, structural_executor, fusion_config, fixed_clock
        )

        records = await coordinator.fuse(
            entities, [MetricKind.P99], DISPLAY_WINDOW, DEPENDENCY_SCOPE
        )

        assert records["db:op1:query"].p99_duration == pytest.approx(100.0)
        assert records["db:op2:query"].p99_duration == pytest.approx(300.0)


class TestFusionSession:
    """A newer refresh supersedes the one in flight."""

    @pytest.mark.asyncio
    async def test_second_refresh_supersedes_first(
        self, fusion_config, fixed_clock, structural_executor
    ):
        executor = FakeMetricExecutor(block_kinds={MetricKind.P50})
        session = FusionSession(
            _coordinator(executor, structural_executor, fusion_config, fixed_clock)
        )

        first = asyncio.create_task(
            session.refresh(
                _operations("A"), [MetricKind.P50], DISPLAY_WINDOW, OPERATION_SCOPE
            )
        )
        while not executor.calls:
            await asyncio.sleep(0)
        assert session.in_flight

        executor.block_kinds = set()
        records = await session.refresh(
            _operations("A"), [MetricKind.P50], DISPLAY_WINDOW, OPERATION_SCOPE
        )

        with pytest.raises(FusionSupersededError):
            await first
        assert "cart:A" in records
        assert executor.cancelled == [MetricKind.P50]
        assert not session.in_flight
