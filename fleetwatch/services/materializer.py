"""
Live "latest entry per machine" view over the telemetry log.

Every change notification only names a machine; the materializer then
re-reads that machine's newest entry from the store and emits add / change /
remove to its sink. Re-reads for one machine never overlap (per-key lock),
and notifications that pile up while a re-read is running collapse into a
single follow-up re-read.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime

from fleetwatch.core.errors import SourceUnavailableError
from fleetwatch.core.logging import get_logger
from fleetwatch.schemas.telemetry import ChangeEvent, DiffEvent, MachineSnapshot
from fleetwatch.services.change_feed import ChangeSubscription
from fleetwatch.services.source import TelemetrySource
from fleetwatch.services.summary import summarize

log = get_logger()


class DiffSink(ABC):
    @abstractmethod
    async def added(self, machine_id: str, snapshot: MachineSnapshot) -> None: ...

    @abstractmethod
    async def changed(self, machine_id: str, snapshot: MachineSnapshot) -> None: ...

    @abstractmethod
    async def removed(self, machine_id: str) -> None: ...

    @abstractmethod
    async def ready(self) -> None: ...

    @abstractmethod
    async def error(self, cause: BaseException) -> None: ...


class QueueSink(DiffSink):
    """Turns sink calls into DiffEvents on an asyncio queue."""

    def __init__(self, queue: asyncio.Queue | None = None) -> None:
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()

    async def added(self, machine_id: str, snapshot: MachineSnapshot) -> None:
        await self.queue.put(
            DiffEvent(kind="add", machine_id=machine_id, snapshot=snapshot, summary=summarize(snapshot))
        )

    async def changed(self, machine_id: str, snapshot: MachineSnapshot) -> None:
        await self.queue.put(
            DiffEvent(kind="change", machine_id=machine_id, snapshot=snapshot, summary=summarize(snapshot))
        )

    async def removed(self, machine_id: str) -> None:
        await self.queue.put(DiffEvent(kind="remove", machine_id=machine_id))

    async def ready(self) -> None:
        await self.queue.put(DiffEvent(kind="ready"))

    async def error(self, cause: BaseException) -> None:
        await self.queue.put(DiffEvent(kind="error", error=str(cause)))


class SnapshotMaterializer:
    """One subscription's view; owns its watermarks and must not be shared."""

    def __init__(self, source: TelemetrySource, sink: DiffSink) -> None:
        self._source = source
        self._sink = sink

        # machine_id -> timestamp of the last snapshot sent; mutated only under that key's lock
        self._last_emitted: dict[str, datetime] = {}
        self._locks: dict[str, asyncio.Lock] = {}

        self._pending: set[str] = set()
        self._workers: dict[str, asyncio.Task] = {}

        self._subscription: ChangeSubscription | None = None
        self._listener: asyncio.Task | None = None
        self._is_ready = False
        self._stopped = False

    @property
    def is_ready(self) -> bool:
        return self._is_ready

    @property
    def watermarks(self) -> dict[str, datetime]:
        return dict(self._last_emitted)

    async def __aenter__(self) -> "SnapshotMaterializer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _lock_for(self, machine_id: str) -> asyncio.Lock:
        lock = self._locks.get(machine_id)
        if lock is None:
            lock = self._locks[machine_id] = asyncio.Lock()
        return lock

    async def start(self) -> bool:
        """Subscribe, load the initial state and begin following changes.

        Returns False when start-up failed; the sink has then received
        ``error`` and the materializer is stopped.
        """
        # subscribe before the initial load so nothing written meanwhile is missed
        self._subscription = self._source.subscribe_changes()
        try:
            await self.initialize()
        except SourceUnavailableError as exc:
            log.error("materializer.init.failed", error=str(exc))
            return await self._abort(exc)
        except Exception as exc:
            log.exception("materializer.init.error")
            return await self._abort(exc)

        if self._stopped:
            return False
        self._listener = asyncio.create_task(self._listen(), name="materializer-listener")
        return True

    async def _abort(self, cause: BaseException) -> bool:
        if not self._stopped:
            await self._sink.error(cause)
        await self.stop()
        return False

    async def initialize(self) -> None:
        machine_ids = await self._source.list_distinct_machine_ids()
        log.info("materializer.init.start", machines=len(machine_ids))

        await asyncio.gather(*(self.resync(machine_id) for machine_id in machine_ids))

        if self._stopped:
            return
        await self._sink.ready()
        self._is_ready = True
        log.info("materializer.ready", machines=len(self._last_emitted))

    async def resync(self, machine_id: str) -> None:
        """Re-derive one machine's snapshot from the store and emit the diff."""
        async with self._lock_for(machine_id):
            if self._stopped:
                return
            latest = await self._source.find_latest(machine_id)
            if self._stopped:
                return

            if latest is None:
                if machine_id in self._last_emitted:
                    await self._sink.removed(machine_id)
                    del self._last_emitted[machine_id]
                return

            if machine_id in self._last_emitted:
                await self._sink.changed(machine_id, latest)
            else:
                await self._sink.added(machine_id, latest)
            self._last_emitted[machine_id] = latest.timestamp

    def on_change(self, event: ChangeEvent) -> None:
        if event.machine_id is None:
            log.debug("materializer.change.unkeyed", kind=event.kind.value)
            return
        self._schedule(event.machine_id)

    def _schedule(self, machine_id: str) -> None:
        if self._stopped:
            return
        self._pending.add(machine_id)
        if machine_id not in self._workers:
            self._workers[machine_id] = asyncio.create_task(self._drain(machine_id), name=f"resync:{machine_id}")

    async def _drain(self, machine_id: str) -> None:
        try:
            while machine_id in self._pending and not self._stopped:
                self._pending.discard(machine_id)
                try:
                    await self.resync(machine_id)
                except SourceUnavailableError as exc:
                    # keep the last good state; the next notification retries
                    log.warning("materializer.resync.failed", machine_id=machine_id, error=str(exc))
                except Exception:
                    log.exception("materializer.resync.error", machine_id=machine_id)
        finally:
            self._workers.pop(machine_id, None)

    async def _listen(self) -> None:
        assert self._subscription is not None
        async for event in self._subscription:
            self.on_change(event)

    async def wait_idle(self) -> None:
        """Wait until every delivered notification has been resynced."""
        while True:
            await asyncio.sleep(0)
            workers = list(self._workers.values())
            if workers:
                await asyncio.gather(*workers, return_exceptions=True)
                continue
            if self._stopped or self._listener is None or self._subscription.pending == 0:
                return

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._subscription is not None:
            self._subscription.close()

        current = asyncio.current_task()
        tasks = [t for t in (self._listener, *self._workers.values()) if t is not None and t is not current]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._workers.clear()
        self._pending.clear()
        self._last_emitted.clear()
        log.info("materializer.stopped")
