"""Sync endpoints: single-item and batch ingestion, summaries, device status, history."""

from __future__ import annotations

import logging
import uuid
from datetime import date

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from src.dependencies import (
    AppSettings,
    CurrentUser,
    Engine,
    ManualAdapter,
    PipelineSettings,
    Registry,
    Store,
)
from src.models.ingest import (
    BatchSyncRequest,
    DailyActivityRead,
    DeviceRead,
    HealthSummaryRead,
    HeartRateSyncRequest,
    HistoryEntry,
    ReadingRead,
    SleepSessionRead,
    SleepSyncRequest,
    StepsSyncRequest,
)
from src.pipeline.aggregation import BatchResult
from src.pipeline.base import Device, DeviceClass
from src.pipeline.device_status import device_status
from src.pipeline.errors import (
    DeviceNotFound,
    MissingIdentity,
    PipelineError,
    StorageFailure,
)
from src.pipeline.registry import DeviceRegistry
from src.pipeline.units import utc_now

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("healthsync.sync")

_HISTORY_VIEWS = {
    "activity": DailyActivityRead,
    "sleep": SleepSessionRead,
}


def _http_error(exc: PipelineError) -> HTTPException:
    if isinstance(exc, StorageFailure):
        logger.error("Storage failure: %s", exc)
        return HTTPException(status_code=503, detail="Storage unavailable")
    if isinstance(exc, MissingIdentity):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, DeviceNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=422, detail={"message": str(exc), "code": exc.code})


async def _resolve_device(
    registry: DeviceRegistry, device_id: uuid.UUID | None, device_class: DeviceClass
) -> Device:
    """Use the caller's device, or the user's device of ``device_class``."""
    if device_id is None:
        return await registry.ensure_device(device_class)
    return await registry.get_device(device_id)


def _device_read(device: Device) -> DeviceRead:
    return DeviceRead(
        id=device.id,
        device_type=device.device_type.value,
        device_class=device.device_class.value,
        device_name=device.device_name,
        device_model=device.device_model,
        manufacturer=device.manufacturer,
        is_active=device.is_active,
        last_sync=device.last_sync,
        created_at=device.created_at,
    )


# ---------- Single-item ingestion ----------


@router.post("/heart-rate", response_model=ReadingRead, status_code=201)
async def sync_heart_rate(
    body: HeartRateSyncRequest,
    user: CurrentUser,
    engine: Engine,
    registry: Registry,
    manual: ManualAdapter,
) -> ReadingRead:
    try:
        device = await _resolve_device(registry, body.device_id, DeviceClass.WEARABLE)
        record = manual.from_heart_rate(body, user.user_id, device.id)
        reading = await engine.record_reading(record)
        await registry.touch_last_sync(device.id, utc_now())
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return ReadingRead.model_validate(reading)


@router.post("/sleep", response_model=SleepSessionRead, status_code=201)
async def sync_sleep(
    body: SleepSyncRequest,
    user: CurrentUser,
    engine: Engine,
    registry: Registry,
    manual: ManualAdapter,
) -> SleepSessionRead:
    try:
        device = await _resolve_device(registry, body.device_id, DeviceClass.WEARABLE)
        session = await engine.ingest(manual.from_sleep(body, user.user_id, device.id))
        await registry.touch_last_sync(device.id, utc_now())
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return SleepSessionRead.model_validate(session)


@router.post("/steps", response_model=DailyActivityRead, status_code=201)
async def sync_steps(
    body: StepsSyncRequest,
    user: CurrentUser,
    engine: Engine,
    registry: Registry,
    manual: ManualAdapter,
) -> DailyActivityRead:
    try:
        device = await _resolve_device(registry, body.device_id, DeviceClass.PHONE)
        record = await engine.ingest(manual.from_steps(body, user.user_id, device.id))
        await registry.touch_last_sync(device.id, utc_now())
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return DailyActivityRead.model_validate(record)


# ---------- Batch ingestion ----------


@router.post("/batch")
async def sync_batch(
    body: BatchSyncRequest,
    user: CurrentUser,
    settings: AppSettings,
    engine: Engine,
    registry: Registry,
    manual: ManualAdapter,
) -> JSONResponse:
    """Ingest up to ``batch_max_items`` items.

    Returns 200 when every item was stored (or was already stored), 207 when
    any item failed.  Invalid items never reject the rest of the batch.
    """
    if len(body.data) > settings.batch_max_items:
        raise HTTPException(
            status_code=422,
            detail=f"Batch exceeds {settings.batch_max_items} items",
        )

    device_class = DeviceClass.PHONE if body.data_type == "steps" else DeviceClass.WEARABLE
    try:
        device = await _resolve_device(registry, body.device_id, device_class)
        conversion = manual.convert(body, user.user_id, device.id)
        result = BatchResult(failed=len(conversion.errors), errors=list(conversion.errors))
        result.merge(await engine.ingest_batch(conversion.records, conversion.positions))
        if result.succeeded or result.skipped:
            await registry.touch_last_sync(device.id, utc_now())
    except PipelineError as exc:
        raise _http_error(exc) from exc

    logger.info(
        "Batch %s for user %s: %d ok, %d failed, %d skipped",
        body.data_type, user.user_id, result.succeeded, result.failed, result.skipped,
    )
    return JSONResponse(
        status_code=207 if result.failed else 200,
        content=result.to_response(),
    )


# ---------- Read views ----------


@router.get("/summary/{day}", response_model=HealthSummaryRead)
async def get_summary(day: date, user: CurrentUser, engine: Engine) -> HealthSummaryRead:
    try:
        summary = await engine.compute_summary(user.user_id, day)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return HealthSummaryRead.model_validate(summary)


@router.get("/devices", response_model=list[DeviceRead])
async def list_devices(user: CurrentUser, registry: Registry) -> list[DeviceRead]:
    try:
        devices = await registry.list_devices()
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return [_device_read(d) for d in devices]


@router.get("/devices/{device_id}/status")
async def get_device_status(
    device_id: uuid.UUID,
    user: CurrentUser,
    store: Store,
    engine: Engine,
    registry: Registry,
    pipeline: PipelineSettings,
) -> dict:
    try:
        status = await device_status(
            store, registry, device_id, pipeline.completeness, tz=engine.tz
        )
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return status.to_dict()


@router.get("/history", response_model=list[HistoryEntry])
async def get_history(
    user: CurrentUser,
    engine: Engine,
    days: int = Query(default=7, ge=1, le=90),
) -> list[HistoryEntry]:
    try:
        entries = await engine.history(user.user_id, days)
    except PipelineError as exc:
        raise _http_error(exc) from exc
    return [
        HistoryEntry(
            type=entry["type"],
            timestamp=entry["timestamp"],
            data=_HISTORY_VIEWS.get(entry["type"], ReadingRead)
            .model_validate(entry["data"])
            .model_dump(mode="json"),
        )
        for entry in entries
    ]
