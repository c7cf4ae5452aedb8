"""
Human-facing utilization figures for a single telemetry entry.

Percentages are kept raw (load averages above nproc give >100%); only
``display_percent`` is rounded.
"""
import math

from fleetwatch.schemas.telemetry import MachineSummary, ResourceUsage, TelemetryEntry

_BYTE_UNITS = ("B", "KB", "MB", "GB")


def format_bytes(num: float, decimals: int = 1) -> str:
    if num <= 0:
        return "0 B"
    i = 0
    while num >= 1024 and i < len(_BYTE_UNITS) - 1:
        num /= 1024
        i += 1
    value = f"{num:.{decimals}f}"
    if "." in value:
        value = value.rstrip("0").rstrip(".")
    return f"{value} {_BYTE_UNITS[i]}"


def _ratio_pct(used: float, total: float) -> float:
    return 0.0 if total == 0 else used / total * 100


def _round_half_up(pct: float) -> int:
    return int(math.floor(pct + 0.5))


def _usage(pct: float, label: str) -> ResourceUsage:
    return ResourceUsage(utilization_percent=pct, display_percent=_round_half_up(pct), display_label=label)


def summarize(entry: TelemetryEntry) -> MachineSummary:
    cpu = entry.cpu
    gpus = entry.gpus

    cpu_pct = 0.0 if cpu.nproc == 0 else cpu.load_avg / cpu.nproc * 100
    ram_pct = _ratio_pct(cpu.memory_used, cpu.memory_total)
    hdd_pct = _ratio_pct(cpu.storage_used, cpu.storage_total)

    if gpus:
        # a GPU counts as busy by whichever is higher: compute or memory
        gpu_pct = sum(max(g.utilization_pct, _ratio_pct(g.memory_used, g.memory_total)) for g in gpus) / len(gpus)
        avg_util = sum(g.utilization_pct for g in gpus) / len(gpus)
    else:
        gpu_pct = 0.0
        avg_util = 0.0
    gpu_mem_used = sum(g.memory_used for g in gpus)
    gpu_mem_total = sum(g.memory_total for g in gpus)

    return MachineSummary(
        cpu=_usage(cpu_pct, f"{cpu.load_avg:.1f} / {cpu.nproc} cores"),
        gpu=_usage(
            gpu_pct,
            f"{_round_half_up(avg_util)}% util; {format_bytes(gpu_mem_used)} / {format_bytes(gpu_mem_total)}",
        ),
        ram=_usage(ram_pct, f"{format_bytes(cpu.memory_used)} / {format_bytes(cpu.memory_total)}"),
        hdd=_usage(hdd_pct, f"{format_bytes(cpu.storage_used)} / {format_bytes(cpu.storage_total)}"),
    )
