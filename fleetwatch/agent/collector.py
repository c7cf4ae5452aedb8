import asyncio
import csv
import socket
import subprocess
from datetime import datetime, timezone

import httpx
import psutil

from fleetwatch.core.config import settings
from fleetwatch.core.logging import configure_logging, get_logger
from fleetwatch.schemas.telemetry import CpuReading, GpuReading, TelemetryEntry

log = get_logger()

_MIB = 1024 * 1024

_GPU_FIELDS = ["index", "uuid", "name", "utilization.gpu", "memory.used", "memory.total", "power.draw", "temperature.gpu"]
_APP_FIELDS = ["gpu_uuid", "pid"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _num(raw: str) -> float | None:
    # nvidia-smi prints "[N/A]" / "[Not Supported]" for missing values
    try:
        return float(raw)
    except ValueError:
        return None


def _nvidia_smi(query_flag: str, fields: list[str]) -> list[list[str]] | None:
    cmd = ["nvidia-smi", f"{query_flag}={','.join(fields)}", "--format=csv,noheader,nounits"]
    try:
        out = subprocess.check_output(cmd, stderr=subprocess.STDOUT, text=True, timeout=10)
    except (OSError, subprocess.SubprocessError):
        return None
    return [[c.strip() for c in row] for row in csv.reader(out.splitlines()) if row]


def read_cpu() -> CpuReading:
    vm = psutil.virtual_memory()
    disk = psutil.disk_usage("/")
    return CpuReading(
        nproc=psutil.cpu_count(logical=True) or 0,
        load_avg=psutil.getloadavg()[0],
        memory_used=vm.used,
        memory_total=vm.total,
        storage_used=disk.used,
        storage_total=disk.total,
    )


def _pid_user(pid: int) -> str | None:
    try:
        return psutil.Process(pid).username()
    except psutil.Error:
        return None


def gpu_users_by_uuid(rows: list[list[str]]) -> dict[str, list[str]]:
    """Map GPU uuid -> users owning its compute processes."""
    users: dict[str, list[str]] = {}
    for row in rows:
        if len(row) < 2 or not row[1].isdigit():
            continue
        user = _pid_user(int(row[1]))
        if user:
            users.setdefault(row[0], []).append(user)
    return users


def parse_gpus(rows: list[list[str]], users: dict[str, list[str]]) -> list[GpuReading]:
    gpus: list[GpuReading] = []
    for row in rows:
        if len(row) < len(_GPU_FIELDS):
            log.warning("collector.gpu.bad_row", row=row)
            continue
        index, uuid, name, util, mem_used, mem_total, power, temp = row[: len(_GPU_FIELDS)]
        gpus.append(
            GpuReading(
                index=int(index),
                name=name or None,
                utilization_pct=_num(util) or 0.0,
                memory_used=(_num(mem_used) or 0.0) * _MIB,
                memory_total=(_num(mem_total) or 0.0) * _MIB,
                power_watts=_num(power) or 0.0,
                temperature_c=_num(temp),
                users=users.get(uuid, []),
            )
        )
    return gpus


def read_gpus() -> list[GpuReading]:
    rows = _nvidia_smi("--query-gpu", _GPU_FIELDS)
    if rows is None:
        # no NVIDIA driver on this host
        return []
    apps = _nvidia_smi("--query-compute-apps", _APP_FIELDS) or []
    return parse_gpus(rows, gpu_users_by_uuid(apps))


def collect_entry() -> TelemetryEntry:
    hostname = socket.gethostname()
    return TelemetryEntry(
        machine_id=settings.agent_machine_id or hostname,
        machine_name=settings.agent_machine_name or hostname,
        timestamp=_now_utc(),
        log_interval_seconds=settings.metrics_interval_seconds,
        cpu=read_cpu(),
        gpus=read_gpus(),
    )


async def push(client: httpx.AsyncClient, entry: TelemetryEntry) -> None:
    payload = entry.model_dump(mode="json", by_alias=True, exclude={"id"})
    r = await client.post(f"{settings.agent_server_url}/machine-logs", json=payload)
    r.raise_for_status()
    log.info(
        "collector.metrics.sent",
        machine_id=entry.machine_id,
        ts=entry.timestamp.isoformat(),
        gpus=len(entry.gpus),
        users=sorted({u for g in entry.gpus for u in g.users}),
    )


async def run_forever() -> None:
    log.info("collector.start", interval_seconds=settings.metrics_interval_seconds, server=settings.agent_server_url)

    async with httpx.AsyncClient(timeout=settings.agent_timeout_seconds) as client:
        while True:
            try:
                entry = await asyncio.to_thread(collect_entry)
                await push(client, entry)
            except Exception:
                log.exception("collector.error")
            await asyncio.sleep(settings.metrics_interval_seconds)


def main() -> None:
    configure_logging()
    asyncio.run(run_forever())


if __name__ == "__main__":
    main()
