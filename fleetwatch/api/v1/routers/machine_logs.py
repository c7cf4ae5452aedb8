import asyncio

from fastapi import APIRouter, Depends, HTTPException, status

from fleetwatch.api.deps import get_source
from fleetwatch.core.logging import get_logger
from fleetwatch.schemas.telemetry import MachineState, TelemetryEntry
from fleetwatch.services.source import SqlTelemetrySource
from fleetwatch.services.summary import summarize

router = APIRouter(tags=["machines"])
log = get_logger()


@router.post("/machine-logs", status_code=status.HTTP_201_CREATED, response_model=TelemetryEntry)
async def ingest(entry: TelemetryEntry, source: SqlTelemetrySource = Depends(get_source)):
    saved = await source.insert(entry.model_copy(update={"id": None}))
    log.info("machine_logs.ingested", machine_id=saved.machine_id, entry_id=saved.id, gpus=len(saved.gpus))
    return saved


@router.delete("/machine-logs/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove(entry_id: int, source: SqlTelemetrySource = Depends(get_source)):
    if not await source.delete(entry_id):
        raise HTTPException(status_code=404, detail=f"machine log {entry_id} not found")


@router.get("/machines", response_model=list[MachineState])
async def machines(source: SqlTelemetrySource = Depends(get_source)):
    machine_ids = sorted(await source.list_distinct_machine_ids())
    latest = await asyncio.gather(*(source.find_latest(m) for m in machine_ids))
    # a machine can expire between the two queries
    return [MachineState(snapshot=e, summary=summarize(e)) for e in latest if e is not None]
