from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.redis import get_redis
from app.models.idex import IdexSyncOrder
from app.services.idex_types import SyncStatus

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/health/db")
async def health_db(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "connected"}


@router.get("/health/redis")
async def health_redis():
    await get_redis().ping()
    return {"status": "ok", "redis": "connected"}


@router.get("/health/sync")
async def health_sync(db: AsyncSession = Depends(get_db)):
    """Queue depth and age of the oldest pending order. A growing age means the worker is stuck."""
    result = await db.execute(
        select(IdexSyncOrder.status, func.count(IdexSyncOrder.id), func.min(IdexSyncOrder.created_at))
        .where(IdexSyncOrder.status.in_([SyncStatus.PENDING.value, SyncStatus.IN_PROGRESS.value]))
        .group_by(IdexSyncOrder.status)
    )
    counts = {SyncStatus.PENDING.value: 0, SyncStatus.IN_PROGRESS.value: 0}
    oldest_pending: datetime | None = None
    for order_status, count, oldest in result.all():
        counts[order_status] = count
        if order_status == SyncStatus.PENDING.value:
            oldest_pending = oldest

    age_seconds = None
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = int((datetime.now(timezone.utc) - oldest_pending).total_seconds())

    return {
        "status": "ok",
        "pending": counts[SyncStatus.PENDING.value],
        "in_progress": counts[SyncStatus.IN_PROGRESS.value],
        "oldest_pending_age_seconds": age_seconds,
    }
