"""create machine_logs

Revision ID: 3f9a1c2e7b40
Revises:
Create Date: 2026-10-19 00:00:00
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "3f9a1c2e7b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "machine_logs",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), autoincrement=True, nullable=False),
        sa.Column("machine_id", sa.String(length=255), nullable=False),
        sa.Column("machine_name", sa.String(length=255), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("log_interval_seconds", sa.Float(), nullable=True),
        sa.Column("cpu", sa.JSON(), nullable=False),
        sa.Column("gpus", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_machine_logs_ts"), "machine_logs", ["ts"], unique=False)
    op.create_index("ix_machine_logs_machine_ts", "machine_logs", ["machine_id", "ts"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_machine_logs_machine_ts", table_name="machine_logs")
    op.drop_index(op.f("ix_machine_logs_ts"), table_name="machine_logs")
    op.drop_table("machine_logs")
