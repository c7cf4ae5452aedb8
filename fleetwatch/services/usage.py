"""
GPU-hour aggregation over a window of telemetry entries.

window filter -> unwind (gpu, user) -> duration -> target filter ->
bucket -> group/sum -> sort
"""
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import NamedTuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fleetwatch.core.errors import ValidationError
from fleetwatch.core.logging import get_logger
from fleetwatch.schemas.telemetry import TelemetryEntry, UsagePoint, UsageTotal
from fleetwatch.services.source import TelemetrySource

log = get_logger()

USAGE_UNITS = ("hour", "day", "week", "month")

# wire name -> UsageRow attribute
GROUP_DIMENSIONS = {"userId": "user_id", "machineId": "machine_id"}


class UsageRow(NamedTuple):
    machine_id: str
    user_id: str
    timestamp: datetime
    duration_seconds: float


# --- input validation ------------------------------------------------------


def parse_instant(value: str | datetime, name: str = "timestamp") -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name}: expected an ISO-8601 timestamp, got {value!r}")
        s = value.strip()
        # fromisoformat only learned "Z" in 3.11
        if s.endswith(("Z", "z")):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError as exc:
            raise ValidationError(f"{name}: malformed ISO-8601 timestamp {value!r}") from exc
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_window(from_iso: str | datetime, to_iso: str | datetime) -> tuple[datetime, datetime]:
    start = parse_instant(from_iso, "from")
    end = parse_instant(to_iso, "to")
    if start > end:
        raise ValidationError(f"from ({start.isoformat()}) is after to ({end.isoformat()})")
    return start, end


def check_unit(unit: str) -> str:
    if unit not in USAGE_UNITS:
        raise ValidationError(f"unit must be one of {', '.join(USAGE_UNITS)}; got {unit!r}")
    return unit


def resolve_timezone(name: str) -> ZoneInfo:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"timezone: expected an IANA zone name, got {name!r}")
    # a zone-database directory such as "America" raises IsADirectoryError
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise ValidationError(f"unknown timezone {name!r}") from exc


def check_group(group: str) -> str:
    if group not in GROUP_DIMENSIONS:
        raise ValidationError(f"group must be one of {', '.join(GROUP_DIMENSIONS)}; got {group!r}")
    return group


# --- pipeline stages -------------------------------------------------------


def unwind(entry: TelemetryEntry) -> Iterator[UsageRow]:
    """One row per (gpu, user); idle GPUs and GPU-less entries give nothing."""
    duration = entry.duration_seconds
    for gpu in entry.gpus:
        for user_id in gpu.users:
            yield UsageRow(entry.machine_id, user_id, entry.timestamp, duration)


def truncate(ts: datetime, unit: str, tz: tzinfo) -> datetime:
    """Start of the bucket containing ``ts``, as wall-clock time in ``tz``.

    Weeks start on Sunday.
    """
    local = ts.astimezone(tz)
    if unit == "hour":
        return local.replace(minute=0, second=0, microsecond=0)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit == "day":
        return midnight
    if unit == "week":
        days_since_sunday = (midnight.weekday() + 1) % 7
        return midnight - timedelta(days=days_since_sunday)
    if unit == "month":
        return midnight.replace(day=1)
    raise ValidationError(f"unit must be one of {', '.join(USAGE_UNITS)}; got {unit!r}")


@dataclass
class UsagePipeline:
    """Accumulates GPU-hours from entries fed one at a time.

    ``unit=None`` groups by id alone (leaderboard); otherwise by
    (id, bucket).
    """

    start: datetime
    end: datetime
    group: str = "userId"
    target: str | None = None
    unit: str | None = None
    tz: tzinfo = timezone.utc

    _hours: dict[tuple, float] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        check_group(self.group)
        if self.unit is not None:
            check_unit(self.unit)
        self._attr = GROUP_DIMENSIONS[self.group]

    def feed(self, entry: TelemetryEntry) -> None:
        if not (self.start <= entry.timestamp < self.end):
            return
        for row in unwind(entry):
            group_id = getattr(row, self._attr)
            if self.target is not None and group_id != self.target:
                continue
            if self.unit is None:
                key = (group_id,)
            else:
                # keyed on the UTC instant: local wall times repeat across a DST fall-back
                key = (group_id, truncate(row.timestamp, self.unit, self.tz).astimezone(timezone.utc))
            self._hours[key] = self._hours.get(key, 0.0) + row.duration_seconds / 3600.0

    def series(self) -> list[UsagePoint]:
        if self.unit is None:
            raise ValueError("series() needs a bucket unit")
        ordered = sorted(self._hours.items(), key=lambda kv: (kv[0][1], kv[0][0]))
        return [UsagePoint(id=k[0], bucket=k[1].astimezone(self.tz), gpu_hours=v) for k, v in ordered]

    def totals(self) -> list[UsageTotal]:
        totals: dict[str, float] = {}
        for key, hours in self._hours.items():
            totals[key[0]] = totals.get(key[0], 0.0) + hours
        ranked = sorted(totals.items(), key=lambda kv: (-kv[1], kv[0]))
        return [UsageTotal(id=k, gpu_hours=v) for k, v in ranked]


# --- query surface ---------------------------------------------------------


class UsageAggregator:
    """Request/response GPU-hour queries; stateless between calls."""

    def __init__(self, source: TelemetrySource) -> None:
        self._source = source

    async def _fill(self, pipeline: UsagePipeline) -> None:
        async for entry in self._source.find_range(pipeline.start, pipeline.end):
            pipeline.feed(entry)

    async def series(
        self,
        group: str,
        target: str | None,
        from_iso: str | datetime,
        to_iso: str | datetime,
        unit: str = "hour",
        timezone_name: str = "UTC",
    ) -> list[UsagePoint]:
        check_group(group)
        if target is not None and not target.strip():
            raise ValidationError(f"{group}: must not be empty")
        start, end = parse_window(from_iso, to_iso)
        check_unit(unit)
        tz = resolve_timezone(timezone_name)

        pipeline = UsagePipeline(start=start, end=end, group=group, target=target, unit=unit, tz=tz)
        await self._fill(pipeline)
        points = pipeline.series()

        log.info(
            "usage.series.done",
            group=group,
            target=target,
            start=start.isoformat(),
            end=end.isoformat(),
            unit=unit,
            timezone=timezone_name,
            buckets=len(points),
        )
        return points

    async def leaderboard(self, group: str, from_iso: str | datetime, to_iso: str | datetime) -> list[UsageTotal]:
        check_group(group)
        start, end = parse_window(from_iso, to_iso)

        pipeline = UsagePipeline(start=start, end=end, group=group)
        await self._fill(pipeline)
        totals = pipeline.totals()

        log.info("usage.leaderboard.done", group=group, start=start.isoformat(), end=end.isoformat(), rows=len(totals))
        return totals

    async def usage_by_user(self, user_id, from_iso, to_iso, unit="hour", timezone="UTC") -> list[UsagePoint]:
        return await self.series("userId", user_id, from_iso, to_iso, unit, timezone)

    async def usage_by_machine(self, machine_id, from_iso, to_iso, unit="hour", timezone="UTC") -> list[UsagePoint]:
        return await self.series("machineId", machine_id, from_iso, to_iso, unit, timezone)

    async def usage_all_users(self, from_iso, to_iso) -> list[UsageTotal]:
        return await self.leaderboard("userId", from_iso, to_iso)

    async def usage_all_machines(self, from_iso, to_iso) -> list[UsageTotal]:
        return await self.leaderboard("machineId", from_iso, to_iso)
