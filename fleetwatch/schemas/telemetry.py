from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_LOG_INTERVAL_SECONDS = 30.0


class WireModel(BaseModel):
    # camelCase on the wire, snake_case in python; both accepted on input
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CpuReading(WireModel):
    nproc: int = Field(ge=0)
    load_avg: float = Field(ge=0)
    memory_used: float = Field(ge=0)
    memory_total: float = Field(ge=0)
    storage_used: float = Field(ge=0)
    storage_total: float = Field(ge=0)


class GpuReading(WireModel):
    index: int = Field(ge=0)
    name: str | None = None
    utilization_pct: float = Field(ge=0)
    memory_used: float = Field(ge=0)
    memory_total: float = Field(ge=0)
    power_watts: float = Field(default=0.0, ge=0)
    temperature_c: float | None = None
    users: list[str] = Field(default_factory=list)

    @field_validator("users")
    @classmethod
    def _dedupe_users(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(u for u in v if u))


class TelemetryEntry(WireModel):
    id: int | None = None
    machine_id: str = Field(min_length=1)
    machine_name: str
    timestamp: datetime
    log_interval_seconds: float | None = Field(default=None, gt=0)
    cpu: CpuReading
    gpus: list[GpuReading] = Field(default_factory=list)

    @field_validator("timestamp")
    @classmethod
    def _aware_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def duration_seconds(self) -> float:
        if self.log_interval_seconds is None:
            return DEFAULT_LOG_INTERVAL_SECONDS
        return self.log_interval_seconds


# The freshest entry of a machine is its snapshot; same shape.
MachineSnapshot = TelemetryEntry


class ResourceUsage(WireModel):
    utilization_percent: float
    display_percent: int
    display_label: str


class MachineSummary(WireModel):
    cpu: ResourceUsage
    gpu: ResourceUsage
    ram: ResourceUsage
    hdd: ResourceUsage


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(WireModel):
    kind: ChangeKind
    machine_id: str | None = None


DiffKind = Literal["add", "change", "remove", "ready", "error"]


class DiffEvent(WireModel):
    kind: DiffKind
    machine_id: str | None = None
    snapshot: MachineSnapshot | None = None
    summary: MachineSummary | None = None
    error: str | None = None


class UsagePoint(WireModel):
    id: str
    bucket: datetime
    gpu_hours: float


class UsageTotal(WireModel):
    id: str
    gpu_hours: float


class MachineState(WireModel):
    snapshot: MachineSnapshot
    summary: MachineSummary
