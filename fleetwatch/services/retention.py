import asyncio
from datetime import datetime, timedelta, timezone

from fleetwatch.core.config import settings
from fleetwatch.core.logging import get_logger
from fleetwatch.services.source import SqlTelemetrySource

log = get_logger()


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def sweep_once(source: SqlTelemetrySource, retention_days: int, now: datetime | None = None) -> int:
    cutoff = (now or _now_utc()) - timedelta(days=retention_days)
    return await source.purge_expired(cutoff)


async def run_forever(source: SqlTelemetrySource) -> None:
    log.info(
        "retention.start",
        retention_days=settings.retention_days,
        interval_seconds=settings.retention_sweep_interval_seconds,
    )

    while True:
        try:
            await sweep_once(source, settings.retention_days)
        except Exception:
            log.exception("retention.error")
        await asyncio.sleep(settings.retention_sweep_interval_seconds)
