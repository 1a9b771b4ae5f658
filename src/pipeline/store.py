"""Storage abstraction for the HealthSync pipeline.

``HealthStore`` is the narrow persistence interface the catalog, the device
registry and the aggregation engine are written against.  Two
implementations ship:

    InMemoryHealthStore  — process-local dicts; tests and local development
    PostgresHealthStore  — asyncpg, see ``src.pipeline.postgres_store``

Stores do no validation of their own.  Range checks, dedup policy and
merge semantics all live in the aggregation engine, which is the only
writer.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Sequence
from uuid import UUID

from src.pipeline.base import (
    DailyActivityRecord,
    Device,
    MetricType,
    Reading,
    SleepSession,
)
from src.pipeline.units import utc_now

logger = logging.getLogger("healthsync.pipeline.store")


class HealthStore(ABC):
    """Async persistence interface for catalog, devices and health records."""

    # ── Metric catalog ──

    @abstractmethod
    async def list_metric_types(self) -> list[MetricType]:
        """Return every catalogued metric type."""

    @abstractmethod
    async def insert_metric_type(self, metric_type: MetricType) -> bool:
        """Insert a metric type unless its name exists.

        Returns:
            True if a row was inserted, False if the name was already present.
        """

    # ── Devices ──

    @abstractmethod
    async def list_devices(self, user_id: UUID) -> list[Device]:
        """Return the user's devices, oldest first."""

    @abstractmethod
    async def get_device(self, device_id: UUID) -> Device | None:
        ...

    @abstractmethod
    async def insert_device(self, device: Device) -> Device:
        ...

    @abstractmethod
    async def update_last_sync(self, device_id: UUID, at: datetime) -> Device | None:
        """Advance ``last_sync`` to ``at`` if it is newer; never moves backwards.

        Returns:
            The device after the update, or None if it does not exist.
        """

    # ── Readings ──

    @abstractmethod
    async def insert_reading(self, reading: Reading) -> Reading:
        ...

    @abstractmethod
    async def find_reading(
        self, user_id: UUID, metric: str, device_id: UUID, recorded_at: datetime
    ) -> Reading | None:
        """Return the reading matching the natural key, if any."""

    @abstractmethod
    async def list_readings(
        self,
        user_id: UUID,
        start: datetime,
        end: datetime,
        metric: str | None = None,
        device_id: UUID | None = None,
    ) -> list[Reading]:
        """Return readings with ``start <= recorded_at < end``, newest first."""

    @abstractmethod
    async def last_reading_at(
        self, user_id: UUID, device_id: UUID, metric: str
    ) -> datetime | None:
        ...

    # ── Sleep ──

    @abstractmethod
    async def insert_sleep_session(self, session: SleepSession) -> SleepSession:
        ...

    @abstractmethod
    async def find_sleep_session(
        self, user_id: UUID, device_id: UUID, start: datetime, end: datetime
    ) -> SleepSession | None:
        """Return the session with exactly this (user, device, start, end), if any."""

    @abstractmethod
    async def list_sleep_sessions(
        self,
        user_id: UUID,
        start: datetime,
        end: datetime,
        device_id: UUID | None = None,
    ) -> list[SleepSession]:
        """Return sessions overlapping [start, end), newest first."""

    @abstractmethod
    async def last_sleep_at(self, user_id: UUID, device_id: UUID) -> datetime | None:
        ...

    # ── Daily activity ──

    @abstractmethod
    async def get_daily_activity(
        self, user_id: UUID, activity_date: date
    ) -> DailyActivityRecord | None:
        ...

    @abstractmethod
    async def upsert_daily_activity(
        self, record: DailyActivityRecord, columns: Sequence[str]
    ) -> DailyActivityRecord:
        """Insert ``record`` or, if (user, date) already has a row, update it.

        On conflict only ``columns`` take the record's values, ``updated_at``
        is bumped and ``record.device_id`` joins the row's ``device_ids``.
        The check and the write are one atomic step.
        """

    @abstractmethod
    async def list_daily_activity(
        self,
        user_id: UUID,
        start_date: date,
        end_date: date,
        device_id: UUID | None = None,
    ) -> list[DailyActivityRecord]:
        """Return records with ``start_date <= activity_date <= end_date``, newest first.

        ``device_id`` keeps rows the device contributed to.
        """

    @abstractmethod
    async def last_activity_at(self, user_id: UUID, device_id: UUID) -> datetime | None:
        ...

    async def ping(self) -> bool:
        """Liveness probe used by the health endpoint."""
        return True

    async def close(self) -> None:
        """Release any held resources."""


class InMemoryHealthStore(HealthStore):
    """Dict-backed store.

    All mutations run under a single ``asyncio.Lock`` so concurrent sync
    cycles in one event loop see consistent (user, date) activity rows.
    Returned objects are copies; callers cannot mutate stored state.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._metric_types: dict[str, MetricType] = {}
        self._devices: dict[UUID, Device] = {}
        self._readings: list[Reading] = []
        self._sleep: list[SleepSession] = []
        self._activity: dict[UUID, DailyActivityRecord] = {}

    # ── Metric catalog ──

    async def list_metric_types(self) -> list[MetricType]:
        return list(self._metric_types.values())

    async def insert_metric_type(self, metric_type: MetricType) -> bool:
        async with self._lock:
            if metric_type.name in self._metric_types:
                return False
            self._metric_types[metric_type.name] = metric_type
            return True

    # ── Devices ──

    async def list_devices(self, user_id: UUID) -> list[Device]:
        devices = [d for d in self._devices.values() if d.user_id == user_id]
        devices.sort(key=lambda d: d.created_at)
        return [copy.copy(d) for d in devices]

    async def get_device(self, device_id: UUID) -> Device | None:
        device = self._devices.get(device_id)
        return copy.copy(device) if device else None

    async def insert_device(self, device: Device) -> Device:
        async with self._lock:
            self._devices[device.id] = copy.copy(device)
        return copy.copy(device)

    async def update_last_sync(self, device_id: UUID, at: datetime) -> Device | None:
        async with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                return None
            if device.last_sync is None or at > device.last_sync:
                device.last_sync = at
            return copy.copy(device)

    # ── Readings ──

    async def insert_reading(self, reading: Reading) -> Reading:
        async with self._lock:
            self._readings.append(copy.deepcopy(reading))
        return reading

    async def find_reading(
        self, user_id: UUID, metric: str, device_id: UUID, recorded_at: datetime
    ) -> Reading | None:
        for reading in self._readings:
            if (
                reading.user_id == user_id
                and reading.metric == metric
                and reading.device_id == device_id
                and reading.recorded_at == recorded_at
            ):
                return copy.deepcopy(reading)
        return None

    async def list_readings(
        self,
        user_id: UUID,
        start: datetime,
        end: datetime,
        metric: str | None = None,
        device_id: UUID | None = None,
    ) -> list[Reading]:
        rows = [
            r
            for r in self._readings
            if r.user_id == user_id
            and start <= r.recorded_at < end
            and (metric is None or r.metric == metric)
            and (device_id is None or r.device_id == device_id)
        ]
        rows.sort(key=lambda r: r.recorded_at, reverse=True)
        return [copy.deepcopy(r) for r in rows]

    async def last_reading_at(
        self, user_id: UUID, device_id: UUID, metric: str
    ) -> datetime | None:
        times = [
            r.recorded_at
            for r in self._readings
            if r.user_id == user_id and r.device_id == device_id and r.metric == metric
        ]
        return max(times) if times else None

    # ── Sleep ──

    async def insert_sleep_session(self, session: SleepSession) -> SleepSession:
        async with self._lock:
            self._sleep.append(copy.deepcopy(session))
        return session

    async def find_sleep_session(
        self, user_id: UUID, device_id: UUID, start: datetime, end: datetime
    ) -> SleepSession | None:
        for session in self._sleep:
            if (
                session.user_id == user_id
                and session.device_id == device_id
                and session.sleep_start == start
                and session.sleep_end == end
            ):
                return copy.deepcopy(session)
        return None

    async def list_sleep_sessions(
        self,
        user_id: UUID,
        start: datetime,
        end: datetime,
        device_id: UUID | None = None,
    ) -> list[SleepSession]:
        rows = [
            s
            for s in self._sleep
            if s.user_id == user_id
            and s.sleep_start < end
            and s.sleep_end > start
            and (device_id is None or s.device_id == device_id)
        ]
        rows.sort(key=lambda s: s.sleep_start, reverse=True)
        return [copy.deepcopy(s) for s in rows]

    async def last_sleep_at(self, user_id: UUID, device_id: UUID) -> datetime | None:
        times = [
            s.sleep_end for s in self._sleep
            if s.user_id == user_id and s.device_id == device_id
        ]
        return max(times) if times else None

    # ── Daily activity ──

    async def get_daily_activity(
        self, user_id: UUID, activity_date: date
    ) -> DailyActivityRecord | None:
        for record in self._activity.values():
            if record.user_id == user_id and record.activity_date == activity_date:
                return copy.deepcopy(record)
        return None

    async def upsert_daily_activity(
        self, record: DailyActivityRecord, columns: Sequence[str]
    ) -> DailyActivityRecord:
        async with self._lock:
            existing = next(
                (
                    a for a in self._activity.values()
                    if a.user_id == record.user_id and a.activity_date == record.activity_date
                ),
                None,
            )
            if existing is None:
                stored = copy.deepcopy(record)
                if stored.device_id not in stored.device_ids:
                    stored.device_ids.append(stored.device_id)
                self._activity[stored.id] = stored
                return copy.deepcopy(stored)

            for name in columns:
                setattr(existing, name, getattr(record, name))
            if record.device_id not in existing.device_ids:
                existing.device_ids.append(record.device_id)
            existing.updated_at = utc_now()
            return copy.deepcopy(existing)

    async def list_daily_activity(
        self,
        user_id: UUID,
        start_date: date,
        end_date: date,
        device_id: UUID | None = None,
    ) -> list[DailyActivityRecord]:
        rows = [
            a
            for a in self._activity.values()
            if a.user_id == user_id
            and start_date <= a.activity_date <= end_date
            and (device_id is None or device_id in a.device_ids)
        ]
        rows.sort(key=lambda a: a.activity_date, reverse=True)
        return [copy.deepcopy(a) for a in rows]

    async def last_activity_at(self, user_id: UUID, device_id: UUID) -> datetime | None:
        times = [
            a.updated_at for a in self._activity.values()
            if a.user_id == user_id and device_id in a.device_ids
        ]
        return max(times) if times else None
