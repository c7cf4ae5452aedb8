from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from fleetwatch.models.base import Base
from fleetwatch.models.machine_log import MachineLog  # noqa: F401


def build_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, pool_pre_ping=True, future=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    # alembic owns the schema in deployments; this is for dev/test databases
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
