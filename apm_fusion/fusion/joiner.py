"""Composite-key join between structural entities and metric rows.

Entities and metric series are matched on identity attributes joined by
``KEY_DELIMITER`` in a fixed order. The entity side and the label side use
different attribute names but the same order, so both produce identical
keys for the same logical entity.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from apm_fusion.fusion.normalizer import NormalizedRow
from apm_fusion.schema import EnrichedEntity, Entity, EntityKind, MetricRecord

logger = logging.getLogger(__name__)

KEY_DELIMITER = ":"


@dataclass(frozen=True)
class KeySpec:
    """Ordered identity attributes on the entity and on the metric labels."""

    entity_fields: tuple[str, ...]
    label_fields: tuple[str, ...]


SERVICE_KEY = KeySpec(("service_name",), ("service",))
OPERATION_KEY = KeySpec(
    ("service_name", "service_operation"),
    ("service", "operation"),
)
DEPENDENCY_KEY = KeySpec(
    ("service_name", "service_operation", "remote_operation"),
    ("remoteService", "operation", "remoteOperation"),
)

KEY_SPECS: dict[EntityKind, KeySpec] = {
    EntityKind.SERVICE: SERVICE_KEY,
    EntityKind.OPERATION: OPERATION_KEY,
    EntityKind.DEPENDENCY: DEPENDENCY_KEY,
}


@dataclass
class JoinStats:
    joined: int = 0
    missing_labels: int = 0
    orphaned: int = 0


def build_key(labels: Mapping[str, Any], ordered_key_fields: Sequence[str]) -> str | None:
    """Join the named attributes into a key, or None if any is absent.

    A partial key is never produced.
    """
    parts = []
    for name in ordered_key_fields:
        value = labels.get(name)
        if value is None or value == "":
            return None
        parts.append(str(value))
    return KEY_DELIMITER.join(parts)


def entity_key(entity: Entity, key_spec: KeySpec | None = None) -> str | None:
    """Key for an entity, using the KeySpec for its kind unless one is given."""
    key_spec = key_spec or KEY_SPECS[entity.kind]
    values = {name: getattr(entity, name) for name in key_spec.entity_fields}
    return build_key(values, key_spec.entity_fields)


def join(target: dict[str, MetricRecord], key: str, field: str, value: float) -> bool:
    """Write ``value`` into the record at ``key``.

    Keys with no seeded record are orphans: they are dropped and reported,
    so the target map never grows.
    """
    record = target.get(key)
    if record is None:
        logger.warning(f"Orphan metric row '{key}' for {field}, dropping")
        return False
    record.set_metric(field, value)
    return True


def join_rows(
    target: dict[str, MetricRecord],
    rows: Iterable[NormalizedRow],
    key_spec: KeySpec,
    field: str,
    multiplier: float = 1.0,
) -> JoinStats:
    """Join every normalized row into ``target`` after scaling its value."""
    stats = JoinStats()
    for labels, value in rows:
        key = build_key(labels, key_spec.label_fields)
        if key is None:
            logger.warning(
                f"Metric row for {field} lacks key labels "
                f"{key_spec.label_fields}: {labels}"
            )
            stats.missing_labels += 1
            continue
        if join(target, key, field, value * multiplier):
            stats.joined += 1
        else:
            stats.orphaned += 1
    return stats


def enrich_entities(
    entities: Iterable[Entity],
    records: Mapping[str, MetricRecord],
    key_spec: KeySpec,
) -> list[EnrichedEntity]:
    """Flatten each entity with its record; entities without one keep None metrics."""
    enriched = []
    for entity in entities:
        key = entity_key(entity, key_spec)
        record = records.get(key) if key is not None else None
        enriched.append(EnrichedEntity.from_parts(entity, record))
    return enriched
