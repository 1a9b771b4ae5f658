"""Per-session sync orchestrator.

One ``SyncOrchestrator`` drives the sync cycles of one user session:

    IDLE → DEVICE_ENSURED → BACKFILLING → SOURCE_SYNCING → SUMMARY_REFRESHED → DONE
                          ↘ (after the first cycle) ↗
    any step → ERRORED   (missing identity or storage failure)

1. Ensure the phone device plus one device per adapter class.
2. On the first cycle of the session only, pull the look-back window from
   every adapter and feed it to the aggregation engine.
3. Pull the current window from every adapter.  Fetches run concurrently;
   writes are applied one adapter at a time so two sources never race the
   same daily activity row.
4. Advance ``last_sync`` on every device that had a successful pull.

Adapter failures are recorded in the report and never abort the cycle.
``StorageFailure`` and ``MissingIdentity`` move the state to ERRORED and
are re-raised to the caller; there is no automatic retry.

Usage::

    orchestrator = SyncOrchestrator(user_id, store, engine, adapters)
    report = await orchestrator.initialize()   # includes backfill
    report = await orchestrator.sync()         # steady state
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Sequence
from uuid import UUID

from src.pipeline.aggregation import AggregationEngine, BatchResult
from src.pipeline.base import AdapterResult, DeviceClass, SourceAdapter
from src.pipeline.config_loader import PipelineConfig, get_pipeline_config
from src.pipeline.errors import MissingIdentity, ValidationError
from src.pipeline.registry import DeviceRegistry
from src.pipeline.store import HealthStore
from src.pipeline.sync.backfill import BackfillState, SyncWindow, plan_backfill, plan_sync
from src.pipeline.units import ensure_utc, utc_now

logger = logging.getLogger("healthsync.pipeline.sync.orchestrator")


class SyncState(str, Enum):
    IDLE = "idle"
    DEVICE_ENSURED = "device_ensured"
    BACKFILLING = "backfilling"
    SOURCE_SYNCING = "source_syncing"
    SUMMARY_REFRESHED = "summary_refreshed"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class AdapterOutcome:
    """What one adapter contributed to one phase of a cycle.

    Attributes:
        source:     Adapter SOURCE_ID.
        phase:      "backfill", "sync" or "push".
        device_id:  Device the records were attributed to.
        records:    Records the adapter produced.
        error:      Adapter failure message, None on success.
        error_type: Exception class name of the failure.
        elapsed_ms: Fetch wall time.
        batch:      Engine write result for the produced records.
    """

    source: str
    phase: str
    device_id: UUID
    records: int = 0
    error: str | None = None
    error_type: str | None = None
    elapsed_ms: int = 0
    batch: BatchResult = field(default_factory=BatchResult)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "phase": self.phase,
            "device_id": str(self.device_id),
            "records": self.records,
            "ok": self.ok,
            "error": self.error,
            "error_type": self.error_type,
            "elapsed_ms": self.elapsed_ms,
            "succeeded": self.batch.succeeded,
            "failed": self.batch.failed,
            "skipped": self.batch.skipped,
        }


@dataclass
class SyncReport:
    """Result of one sync cycle.

    Attributes:
        user_id:         The session's user.
        state:           Final state (DONE or ERRORED).
        started_at:      UTC start time.
        finished_at:     UTC end time.
        backfilled:      True if this cycle ran the backfill phase.
        outcomes:        Per-adapter, per-phase outcomes.
        batch:           Engine results aggregated over all outcomes.
        synced_devices:  Devices whose last_sync was advanced.
        error:           Fatal error message when state is ERRORED.
    """

    user_id: UUID | None
    state: SyncState = SyncState.IDLE
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    backfilled: bool = False
    outcomes: list[AdapterOutcome] = field(default_factory=list)
    batch: BatchResult = field(default_factory=BatchResult)
    synced_devices: list[UUID] = field(default_factory=list)
    error: str | None = None

    @property
    def status(self) -> str:
        """'success', 'partial' or 'error'."""
        if self.state == SyncState.ERRORED:
            return "error"
        if self.batch.failed or any(not o.ok for o in self.outcomes):
            return "partial"
        return "success"

    @property
    def failed_sources(self) -> list[str]:
        return sorted({o.source for o in self.outcomes if not o.ok})

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": str(self.user_id) if self.user_id else None,
            "state": self.state.value,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "backfilled": self.backfilled,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "results": self.batch.to_response()["results"],
            "synced_devices": [str(d) for d in self.synced_devices],
            "error": self.error,
        }


class SyncOrchestrator:
    """Drive sync cycles for one user session.

    Args:
        user_id:        The session's user; None raises MissingIdentity on sync.
        store:          Persistence backend (used for the device registry).
        engine:         Aggregation engine; the only write path.
        adapters:       Sources to pull from.
        config:         Pipeline config; defaults to the global singleton.
        registry:       Device registry; one is created for ``user_id`` if omitted.
        backfill_state: Persisted backfill progress from an earlier session.
        clock:          Returns "now"; injectable for tests.
    """

    def __init__(
        self,
        user_id: UUID | None,
        store: HealthStore,
        engine: AggregationEngine,
        adapters: Sequence[SourceAdapter],
        config: PipelineConfig | None = None,
        registry: DeviceRegistry | None = None,
        backfill_state: BackfillState | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.user_id = user_id
        self._store = store
        self._engine = engine
        self._adapters = list(adapters)
        self._config = config or get_pipeline_config()
        self._registry = registry
        self._backfill_state = backfill_state or BackfillState()
        self._clock = clock
        self._backfilled = False
        self._state = SyncState.IDLE
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def registry(self) -> DeviceRegistry:
        if self._registry is None:
            if self.user_id is None:
                raise MissingIdentity("No user identity for this sync session")
            self._registry = DeviceRegistry(self._store, self.user_id)
        return self._registry

    @property
    def backfill_state(self) -> BackfillState:
        return self._backfill_state

    @property
    def has_backfilled(self) -> bool:
        return self._backfilled

    def _transition(self, state: SyncState) -> None:
        logger.debug("Sync %s: %s → %s", self.user_id, self._state.value, state.value)
        self._state = state

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def initialize(self) -> SyncReport:
        """First cycle of the session; runs the backfill phase."""
        return await self.sync()

    async def sync(self, now: datetime | None = None) -> SyncReport:
        """Run one sync cycle.

        Returns:
            The cycle's report; inspect ``status`` for partial failures.

        Raises:
            MissingIdentity: No user id.
            StorageFailure:  Persistence failed; state is ERRORED.
        """
        async with self._lock:
            now = ensure_utc(now) if now else self._clock()
            report = SyncReport(user_id=self.user_id, started_at=now)
            self._transition(SyncState.IDLE)
            try:
                await self._run_cycle(report, now)
            except Exception as exc:
                self._transition(SyncState.ERRORED)
                report.state = SyncState.ERRORED
                report.error = str(exc)
                report.finished_at = self._clock()
                logger.error("Sync failed for user %s: %s", self.user_id, exc)
                raise

            report.state = self._state
            report.finished_at = self._clock()
            logger.info(
                "Sync complete for user %s: status=%s, %d written, %d failed, %d skipped",
                self.user_id, report.status,
                report.batch.succeeded, report.batch.failed, report.batch.skipped,
            )
            return report

    async def ingest_push(
        self, source_id: str, event_name: str, payload: dict[str, Any]
    ) -> BatchResult:
        """Route one real-time push event through its adapter into the engine.

        Raises:
            MissingIdentity: No user id.
            ValidationError: No push-capable adapter for ``source_id`` or
                             an unknown event name.
            StorageFailure:  Persistence failed.
        """
        if self.user_id is None:
            raise MissingIdentity("No user identity for push event")
        adapter = self._adapter(source_id)
        normalize = getattr(adapter, "normalize_event", None)
        if normalize is None:
            raise ValidationError(f"Source {source_id!r} does not accept push events")

        device = await self.registry.ensure_device(adapter.DEVICE_CLASS)
        records = normalize(event_name, payload, self.user_id, device.id)
        result = await self._engine.ingest_batch(records)
        logger.debug(
            "Push %s/%s for user %s: %d written", source_id, event_name, self.user_id, result.succeeded
        )
        return result

    def cleanup(self) -> None:
        """Reset session state; the next sync backfills again."""
        if self._registry is not None:
            self._registry.clear()
        self._backfilled = False
        self._state = SyncState.IDLE
        for adapter in self._adapters:
            cleanup = getattr(adapter, "cleanup", None)
            if cleanup is not None:
                cleanup()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _run_cycle(self, report: SyncReport, now: datetime) -> None:
        if self.user_id is None:
            raise MissingIdentity("No user identity for this sync session")

        devices = {DeviceClass.PHONE: await self.registry.ensure_device(DeviceClass.PHONE)}
        for adapter in self._adapters:
            if adapter.DEVICE_CLASS not in devices:
                devices[adapter.DEVICE_CLASS] = await self.registry.ensure_device(
                    adapter.DEVICE_CLASS
                )
        self._transition(SyncState.DEVICE_ENSURED)

        successful: set[UUID] = set()
        sources = [a.SOURCE_ID for a in self._adapters]

        if not self._backfilled:
            self._transition(SyncState.BACKFILLING)
            windows = plan_backfill(
                sources, now, self._config.sync.backfill_hours,
                self._backfill_state, self._engine.tz,
            )
            await self._run_phase("backfill", windows, devices, report, successful)
            self._backfilled = True
            report.backfilled = True

        self._transition(SyncState.SOURCE_SYNCING)
        windows = plan_sync(sources, now, self._config.sync.sync_window_hours, self._engine.tz)
        await self._run_phase("sync", windows, devices, report, successful)

        for device_id in sorted(successful, key=str):
            await self.registry.touch_last_sync(device_id, now)
            report.synced_devices.append(device_id)
        self._transition(SyncState.SUMMARY_REFRESHED)
        self._transition(SyncState.DONE)

    async def _run_phase(
        self,
        phase: str,
        windows: list[SyncWindow],
        devices: dict[DeviceClass, Any],
        report: SyncReport,
        successful: set[UUID],
    ) -> None:
        if not windows:
            return
        timeout = self._config.sync.adapter_timeout_seconds
        adapters = {a.SOURCE_ID: a for a in self._adapters}
        planned = [(adapters[w.source], w) for w in windows]

        # concurrent fetches; pull() never raises for adapter failures
        results: list[AdapterResult] = await asyncio.gather(
            *(
                adapter.pull(
                    self.user_id, devices[adapter.DEVICE_CLASS].id, w.start, w.end, timeout
                )
                for adapter, w in planned
            )
        )

        # serialized writes, one adapter at a time
        for (adapter, window), result in zip(planned, results):
            device_id = devices[adapter.DEVICE_CLASS].id
            outcome = AdapterOutcome(
                source=adapter.SOURCE_ID,
                phase=phase,
                device_id=device_id,
                records=len(result.records),
                error=result.error,
                error_type=result.error_type,
                elapsed_ms=result.elapsed_ms,
            )
            if result.ok:
                outcome.batch = await self._engine.ingest_batch(result.records)
                report.batch.merge(outcome.batch)
                successful.add(device_id)
                if phase == "backfill":
                    self._backfill_state.mark(adapter.SOURCE_ID, window.end)
            else:
                logger.warning(
                    "%s %s failed for user %s: %s",
                    adapter.SOURCE_ID, phase, self.user_id, result.error,
                )
                if phase == "backfill":
                    self._backfill_state.errors.append(f"{adapter.SOURCE_ID}: {result.error}")
            report.outcomes.append(outcome)

    def _adapter(self, source_id: str) -> SourceAdapter:
        for adapter in self._adapters:
            if adapter.SOURCE_ID == source_id:
                return adapter
        raise ValidationError(f"No adapter configured for source {source_id!r}")
