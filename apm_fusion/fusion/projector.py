"""Sorting and pagination of display rows."""

from collections.abc import Sequence
from typing import Any

from apm_fusion.exceptions import InvalidProjectionError
from apm_fusion.schema import METRIC_FIELDS, Page, SortDirection, is_defined

PAGE_SIZE_OPTIONS: tuple[int, ...] = (10, 20, 50, 100)
DEFAULT_PAGE_SIZE = 10
DEFAULT_SORT_FIELD = "availability"

SORTABLE_FIELDS: frozenset[str] = frozenset(
    {
        *METRIC_FIELDS,
        "call_count",
        "dependency_count",
        "service_name",
        "service_operation",
        "remote_operation",
        "environment",
    }
)


def sort_rows(
    rows: Sequence[Any],
    sort_field: str,
    sort_direction: SortDirection = SortDirection.ASC,
) -> list[Any]:
    """Stable sort on ``sort_field``; rows without a value go last either way."""
    if sort_field not in SORTABLE_FIELDS:
        raise InvalidProjectionError(f"Cannot sort by '{sort_field}'")
    with_value = [r for r in rows if is_defined(getattr(r, sort_field, None))]
    without_value = [r for r in rows if not is_defined(getattr(r, sort_field, None))]
    with_value.sort(
        key=lambda r: getattr(r, sort_field),
        reverse=sort_direction is SortDirection.DESC,
    )
    return with_value + without_value


def project(
    rows: Sequence[Any],
    sort_field: str = DEFAULT_SORT_FIELD,
    sort_direction: SortDirection = SortDirection.ASC,
    page_index: int = 0,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Page:
    """Sort ``rows`` and return page ``page_index`` (zero-based).

    Raises:
        InvalidProjectionError: For an unknown sort field, a page size
            outside ``PAGE_SIZE_OPTIONS`` or a negative page index.
    """
    if page_size not in PAGE_SIZE_OPTIONS:
        raise InvalidProjectionError(
            f"page_size must be one of {PAGE_SIZE_OPTIONS}, got {page_size}"
        )
    if page_index < 0:
        raise InvalidProjectionError(f"page_index must be >= 0, got {page_index}")

    ordered = sort_rows(rows, sort_field, sort_direction)
    start = page_index * page_size
    return Page(
        items=ordered[start : start + page_size],
        page_index=page_index,
        page_size=page_size,
        total_item_count=len(ordered),
    )
