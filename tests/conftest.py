"""Pytest configuration and shared fixtures."""
import os
from datetime import datetime, timedelta, timezone

# Settings are read at import time; keep tests off postgres and /var/log.
os.environ.setdefault("DATABASE_URL_ASYNC", "sqlite+aiosqlite:///./.fleetwatch-test.db")
os.environ.setdefault("LOG_DIR", "")
os.environ.setdefault("RETENTION_DAYS", "0")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from fleetwatch.core.db import build_engine, build_session_factory, create_schema  # noqa: E402
from fleetwatch.schemas.telemetry import CpuReading, GpuReading, TelemetryEntry  # noqa: E402
from fleetwatch.services.change_feed import ChangeFeed  # noqa: E402
from fleetwatch.services.source import SqlTelemetrySource  # noqa: E402

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def make_entry():
    """Factory for TelemetryEntry; ``gpu_users`` is one user list per GPU."""

    def _make(
        machine_id: str = "machine-1",
        timestamp: datetime = T0,
        gpu_users: list[list[str]] | None = None,
        log_interval_seconds: float | None = 30,
        **cpu_overrides,
    ) -> TelemetryEntry:
        cpu = {
            "nproc": 32,
            "load_avg": 8.3,
            "memory_used": 48,
            "memory_total": 128,
            "storage_used": 480,
            "storage_total": 2000,
        }
        cpu.update(cpu_overrides)
        gpus = [
            GpuReading(index=i, utilization_pct=50, memory_used=6, memory_total=24, power_watts=200, users=users)
            for i, users in enumerate(gpu_users if gpu_users is not None else [["alice"]])
        ]
        return TelemetryEntry(
            machine_id=machine_id,
            machine_name=machine_id.replace("-", " ").title(),
            timestamp=timestamp,
            log_interval_seconds=log_interval_seconds,
            cpu=CpuReading(**cpu),
            gpus=gpus,
        )

    return _make


@pytest_asyncio.fixture
async def source(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'fleetwatch.db'}")
    await create_schema(engine)
    yield SqlTelemetrySource(build_session_factory(engine), ChangeFeed())
    await engine.dispose()
