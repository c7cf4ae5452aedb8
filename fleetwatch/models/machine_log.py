from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from fleetwatch.models.base import Base, UTCDateTime


class MachineLog(Base):
    __tablename__ = "machine_logs"

    # sqlite only autoincrements INTEGER PRIMARY KEY
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    machine_id: Mapped[str] = mapped_column(String(255), nullable=False)
    machine_name: Mapped[str] = mapped_column(String(255), nullable=False)
    ts: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)

    log_interval_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)

    cpu: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    gpus: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    __table_args__ = (
        Index("ix_machine_logs_machine_ts", "machine_id", "ts"),
    )
