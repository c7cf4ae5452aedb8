import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query

from fleetwatch.api.deps import get_usage
from fleetwatch.core.config import settings
from fleetwatch.schemas.telemetry import UsagePoint, UsageTotal
from fleetwatch.services.usage import UsageAggregator

router = APIRouter(prefix="/usage", tags=["usage"])


async def _with_timeout(coro):
    try:
        return await asyncio.wait_for(coro, timeout=settings.usage_query_timeout_seconds)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail="usage query timed out")


@router.get("/users/{user_id}", response_model=list[UsagePoint])
async def usage_by_user(
    user_id: str,
    from_: str = Query(alias="from"),
    to: str = Query(),
    unit: str = "hour",
    timezone: str = "UTC",
    usage: UsageAggregator = Depends(get_usage),
):
    return await _with_timeout(usage.usage_by_user(user_id, from_, to, unit, timezone))


@router.get("/machines/{machine_id}", response_model=list[UsagePoint])
async def usage_by_machine(
    machine_id: str,
    from_: str = Query(alias="from"),
    to: str = Query(),
    unit: str = "hour",
    timezone: str = "UTC",
    usage: UsageAggregator = Depends(get_usage),
):
    return await _with_timeout(usage.usage_by_machine(machine_id, from_, to, unit, timezone))


@router.get("/users", response_model=list[UsageTotal])
async def usage_all_users(
    from_: str = Query(alias="from"),
    to: str = Query(),
    usage: UsageAggregator = Depends(get_usage),
):
    return await _with_timeout(usage.usage_all_users(from_, to))


@router.get("/machines", response_model=list[UsageTotal])
async def usage_all_machines(
    from_: str = Query(alias="from"),
    to: str = Query(),
    usage: UsageAggregator = Depends(get_usage),
):
    return await _with_timeout(usage.usage_all_machines(from_, to))
