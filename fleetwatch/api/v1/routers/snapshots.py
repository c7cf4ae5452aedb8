import asyncio

from fastapi import APIRouter, WebSocket

from fleetwatch.core.logging import get_logger
from fleetwatch.services.materializer import QueueSink, SnapshotMaterializer

router = APIRouter(tags=["machines"])
log = get_logger()


async def _forward(websocket: WebSocket, sink: QueueSink) -> None:
    while True:
        event = await sink.queue.get()
        await websocket.send_json(event.model_dump(mode="json", by_alias=True, exclude_none=True))
        if event.kind == "error":
            return


async def _until_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws/machines")
async def machine_snapshots(websocket: WebSocket):
    """Live machine snapshots as add/change/remove diffs; one materializer per connection."""
    await websocket.accept()
    log.info("ws.machines.connected")

    sink = QueueSink()
    materializer = SnapshotMaterializer(websocket.app.state.source, sink)
    tasks = [
        asyncio.create_task(_forward(websocket, sink)),
        asyncio.create_task(_until_disconnect(websocket)),
    ]
    try:
        ok = await materializer.start()
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        if not ok and tasks[0] in done:
            await websocket.close(code=1011)
    finally:
        await materializer.stop()
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log.info("ws.machines.closed")
