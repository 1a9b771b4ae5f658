"""Metric catalog: the authoritative set of point-reading metric types.

Readings are validated against the catalog at ingestion time.  The catalog
is seeded from ``pipeline_config.yaml`` and treated as immutable afterwards.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Iterator

from src.pipeline.base import MetricType
from src.pipeline.config_loader import PipelineConfig
from src.pipeline.errors import OutOfRangeValue, UnknownMetric
from src.pipeline.store import HealthStore
from src.pipeline.units import to_decimal

logger = logging.getLogger("healthsync.pipeline.catalog")


class MetricCatalog:
    """Name-indexed lookup of ``MetricType`` entries."""

    def __init__(self, metric_types: Iterable[MetricType] = ()) -> None:
        self._types: dict[str, MetricType] = {mt.name: mt for mt in metric_types}

    @classmethod
    def from_config(cls, config: PipelineConfig) -> MetricCatalog:
        return cls(config.metrics)

    @classmethod
    async def load(cls, store: HealthStore) -> MetricCatalog:
        """Build a catalog from the metric types already in storage."""
        types = await store.list_metric_types()
        logger.debug("Loaded %d metric types from store", len(types))
        return cls(types)

    async def seed(self, store: HealthStore) -> int:
        """Insert every catalog entry missing from the store.

        Existing names are left untouched, so seeding twice is a no-op.

        Returns:
            Number of metric types inserted.
        """
        inserted = 0
        for metric_type in self._types.values():
            if await store.insert_metric_type(metric_type):
                inserted += 1
        logger.info(
            "Metric catalog seeded: %d inserted, %d already present",
            inserted,
            len(self._types) - inserted,
        )
        return inserted

    def resolve(self, name: str) -> MetricType:
        """Return the metric type called ``name``.

        Raises:
            UnknownMetric: If no such metric is catalogued.
        """
        try:
            return self._types[name]
        except KeyError:
            raise UnknownMetric(name) from None

    def names(self) -> list[str]:
        return sorted(self._types)

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def __iter__(self) -> Iterator[MetricType]:
        return iter(self._types.values())

    def __len__(self) -> int:
        return len(self._types)


def check_range(metric_type: MetricType, value: object, policy: str = "reject") -> Decimal:
    """Apply the configured range policy to a reading value.

    Args:
        metric_type: Catalog entry for the reading.
        value:       Raw value (number or numeric string).
        policy:      "reject" raises, "clamp" pins to the nearest bound,
                     "informational" logs and keeps the value.

    Returns:
        The value to store, as a Decimal.

    Raises:
        OutOfRangeValue: Under the reject policy, or when the value is not numeric.
    """
    amount = to_decimal(value)
    if amount is None or not amount.is_finite():
        raise OutOfRangeValue(
            metric_type.name, value, metric_type.min_value, metric_type.max_value
        )

    low, high = metric_type.min_value, metric_type.max_value
    below = low is not None and amount < low
    above = high is not None and amount > high
    if not (below or above):
        return amount

    if policy == "clamp":
        clamped = low if below else high
        logger.debug("Clamped %s value %s to %s", metric_type.name, amount, clamped)
        return clamped
    if policy == "informational":
        logger.info(
            "%s value %s outside [%s, %s]; stored as-is", metric_type.name, amount, low, high
        )
        return amount
    raise OutOfRangeValue(metric_type.name, amount, low, high)
