"""Abstract query executors for the two backends the engine fuses."""

from abc import ABC, abstractmethod
from typing import Any


class MetricQueryExecutor(ABC):
    """Executes time-series (PromQL) queries."""

    @abstractmethod
    async def execute_metric_request(
        self,
        query: str,
        start_time: int,
        end_time: int,
        step: str | None = None,
    ) -> dict[str, Any]:
        """Run a range query over ``[start_time, end_time]`` (epoch seconds)."""
        pass


class StructuralQueryExecutor(ABC):
    """Executes structural (PPL) queries against a topology dataset."""

    @abstractmethod
    async def execute_query(self, query: str, dataset_id: str) -> dict[str, Any]:
        """Run a query against ``dataset_id`` and return the raw response."""
        pass
