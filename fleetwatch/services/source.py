from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from fleetwatch.core.errors import SourceUnavailableError
from fleetwatch.core.logging import get_logger
from fleetwatch.models.machine_log import MachineLog
from fleetwatch.schemas.telemetry import ChangeEvent, ChangeKind, TelemetryEntry
from fleetwatch.services.change_feed import ChangeFeed, ChangeSubscription

log = get_logger()


class TelemetrySource(ABC):
    """Read side of the telemetry log, as seen by the materializer and usage engine."""

    @abstractmethod
    async def find_latest(self, machine_id: str) -> TelemetryEntry | None:
        ...

    @abstractmethod
    def find_range(self, start: datetime, end: datetime) -> AsyncIterator[TelemetryEntry]:
        """Entries with ``start <= timestamp < end``."""

    @abstractmethod
    async def list_distinct_machine_ids(self) -> set[str]:
        ...

    @abstractmethod
    def subscribe_changes(self) -> ChangeSubscription:
        ...


def _to_entry(row: MachineLog) -> TelemetryEntry:
    return TelemetryEntry(
        id=row.id,
        machine_id=row.machine_id,
        machine_name=row.machine_name,
        timestamp=row.ts,
        log_interval_seconds=row.log_interval_seconds,
        cpu=row.cpu,
        gpus=row.gpus or [],
    )


class SqlTelemetrySource(TelemetrySource):
    """machine_logs table via SQLAlchemy async; write paths publish to a ChangeFeed."""

    def __init__(self, session_factory: async_sessionmaker, feed: ChangeFeed | None = None, batch_size: int = 500) -> None:
        self._session_factory = session_factory
        self._feed = feed or ChangeFeed()
        self._batch_size = batch_size

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    @asynccontextmanager
    async def _guard(self, op: str):
        try:
            yield
        except (SQLAlchemyError, OSError) as exc:
            log.error("source.op.failed", op=op, error=str(exc))
            raise SourceUnavailableError(f"telemetry store {op} failed: {exc}") from exc

    def _publish(self, kind: ChangeKind, machine_id: str) -> None:
        self._feed.publish(ChangeEvent(kind=kind, machine_id=machine_id))

    # --- read side -------------------------------------------------------

    async def find_latest(self, machine_id: str) -> TelemetryEntry | None:
        stmt = (
            select(MachineLog)
            .where(MachineLog.machine_id == machine_id)
            .order_by(MachineLog.ts.desc(), MachineLog.id.desc())
            .limit(1)
        )
        async with self._guard("find_latest"):
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
                return _to_entry(row) if row is not None else None

    async def find_range(self, start: datetime, end: datetime) -> AsyncIterator[TelemetryEntry]:
        stmt = (
            select(MachineLog)
            .where(MachineLog.ts >= start, MachineLog.ts < end)
            .order_by(MachineLog.ts, MachineLog.id)
            .execution_options(yield_per=self._batch_size)
        )
        async with self._guard("find_range"):
            async with self._session_factory() as session:
                rows = await session.stream_scalars(stmt)
                async for row in rows:
                    yield _to_entry(row)

    async def list_distinct_machine_ids(self) -> set[str]:
        stmt = select(MachineLog.machine_id).distinct()
        async with self._guard("list_distinct_machine_ids"):
            async with self._session_factory() as session:
                return set((await session.scalars(stmt)).all())

    def subscribe_changes(self) -> ChangeSubscription:
        return self._feed.subscribe()

    # --- write side ------------------------------------------------------

    async def insert(self, entry: TelemetryEntry) -> TelemetryEntry:
        row = MachineLog(
            machine_id=entry.machine_id,
            machine_name=entry.machine_name,
            ts=entry.timestamp,
            log_interval_seconds=entry.log_interval_seconds,
            cpu=entry.cpu.model_dump(mode="json"),
            gpus=[g.model_dump(mode="json") for g in entry.gpus],
        )
        async with self._guard("insert"):
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()

        log.debug("source.entry.inserted", machine_id=entry.machine_id, entry_id=row.id)
        self._publish(ChangeKind.INSERT, entry.machine_id)
        return entry.model_copy(update={"id": row.id})

    async def delete(self, entry_id: int) -> bool:
        async with self._guard("delete"):
            async with self._session_factory() as session:
                row = await session.get(MachineLog, entry_id)
                if row is None:
                    return False
                machine_id = row.machine_id
                await session.delete(row)
                await session.commit()

        log.debug("source.entry.deleted", machine_id=machine_id, entry_id=entry_id)
        self._publish(ChangeKind.DELETE, machine_id)
        return True

    async def purge_expired(self, cutoff: datetime) -> int:
        """Drop every entry older than ``cutoff``; returns the number removed."""
        async with self._guard("purge_expired"):
            async with self._session_factory() as session:
                affected = (
                    await session.scalars(select(MachineLog.machine_id).where(MachineLog.ts < cutoff).distinct())
                ).all()
                if not affected:
                    return 0
                res = await session.execute(delete(MachineLog).where(MachineLog.ts < cutoff))
                await session.commit()

        for machine_id in sorted(affected):
            self._publish(ChangeKind.DELETE, machine_id)
        log.info("source.retention.purged", cutoff=cutoff.isoformat(), rows=res.rowcount, machines=len(affected))
        return res.rowcount
