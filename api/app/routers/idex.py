"""IDEX cabinets router.

Cabinet CRUD, the per-cabinet transaction browser, and the sync-order queue:
  1. POST /idex/sync or /idex/cabinets/{id}/sync inserts a PENDING order.
  2. The Celery worker (app.services.idex_sync) picks it up and fills in progress.
  3. The UI polls GET /idex/sync-orders until the order is COMPLETED or FAILED.
"""

import logging
import math
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.security import encrypt_value
from app.models.idex import IdexCabinet, IdexSyncOrder, IdexTransaction
from app.schemas.idex import (
    CabinetCreate,
    CabinetListResponse,
    CabinetResponse,
    SyncOrderListResponse,
    SyncOrderResponse,
    SyncRequest,
    TimePreset,
    TransactionListResponse,
    TransactionResponse,
)
from app.services.idex_types import SyncStatus

logger = logging.getLogger(__name__)

# Counters live in Redis so limits hold across API workers
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.rate_limit_storage_uri or settings.redis_url,
)

router = APIRouter(prefix="/idex", tags=["idex"])


# ─── Helpers ───────────────────────────────────────────────────────────────────

def _total_pages(total: int, per_page: int) -> int:
    return max(1, math.ceil(total / per_page))


def _panel_timestamp(value: datetime) -> str:
    """Format a bound the way the panel writes approved_at (UTC, microseconds, Z)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def preset_range(preset: TimePreset, now: datetime) -> tuple[datetime, datetime]:
    """Return the (start, end) window for a preset, relative to ``now``."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if preset == TimePreset.last12h:
        return now - timedelta(hours=12), now
    if preset == TimePreset.last24h:
        return now - timedelta(hours=24), now
    if preset == TimePreset.today:
        return midnight, now
    if preset == TimePreset.yesterday:
        return midnight - timedelta(days=1), midnight
    if preset == TimePreset.thisWeek:
        # Week starts on Sunday
        return midnight - timedelta(days=(now.weekday() + 1) % 7), now
    if preset == TimePreset.last2days:
        return now - timedelta(days=2), now
    if preset == TimePreset.thisMonth:
        return midnight.replace(day=1), now
    return now - timedelta(hours=24), now


async def _get_cabinet_or_404(cabinet_id: int, db: AsyncSession) -> IdexCabinet:
    cabinet = await db.get(IdexCabinet, cabinet_id)
    if not cabinet:
        raise HTTPException(status_code=404, detail="Cabinet not found")
    return cabinet


async def _transaction_count(cabinet_id: int, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(IdexTransaction.id)).where(IdexTransaction.cabinet_id == cabinet_id)
    )
    return result.scalar_one()


def _cabinet_response(cabinet: IdexCabinet, transaction_count: int) -> CabinetResponse:
    return CabinetResponse(
        id=cabinet.id,
        idex_id=cabinet.idex_id,
        login=cabinet.login,
        name=cabinet.name,
        created_at=cabinet.created_at,
        transaction_count=transaction_count,
    )


async def _enqueue(cabinet_id: int | None, pages: int, db: AsyncSession) -> IdexSyncOrder:
    pages = min(pages, settings.idex_max_pages)
    order = IdexSyncOrder(
        cabinet_id=cabinet_id,
        pages=pages,
        status=SyncStatus.PENDING.value,
        processed={},
    )
    db.add(order)
    await db.commit()
    await db.refresh(order)
    logger.info("Queued sync order %s (cabinet=%s, pages=%d)", order.id, cabinet_id or "all", pages)
    return order


# ─── Cabinets ──────────────────────────────────────────────────────────────────

@router.get("/cabinets", response_model=CabinetListResponse)
async def list_cabinets(
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    total = (await db.execute(select(func.count(IdexCabinet.id)))).scalar_one()

    tx_counts = (
        select(IdexTransaction.cabinet_id, func.count(IdexTransaction.id).label("n"))
        .group_by(IdexTransaction.cabinet_id)
        .subquery()
    )
    result = await db.execute(
        select(IdexCabinet, func.coalesce(tx_counts.c.n, 0))
        .outerjoin(tx_counts, tx_counts.c.cabinet_id == IdexCabinet.id)
        .order_by(IdexCabinet.id.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    cabinets = [_cabinet_response(cab, count) for cab, count in result.all()]

    return CabinetListResponse(
        cabinets=cabinets,
        total_count=total,
        total_pages=_total_pages(total, per_page),
        current_page=page,
    )


@router.get("/cabinets/{cabinet_id}", response_model=CabinetResponse)
async def get_cabinet(cabinet_id: int, db: AsyncSession = Depends(get_db)):
    cabinet = await _get_cabinet_or_404(cabinet_id, db)
    return _cabinet_response(cabinet, await _transaction_count(cabinet_id, db))


@router.post("/cabinets", response_model=CabinetResponse, status_code=201)
async def create_cabinet(payload: CabinetCreate, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(IdexCabinet).where(
            or_(IdexCabinet.idex_id == payload.idex_id, IdexCabinet.login == payload.login)
        )
    )
    existing = result.scalars().first()
    if existing:
        if existing.idex_id == payload.idex_id:
            detail = f"Cabinet with IDEX ID {payload.idex_id} already exists"
        else:
            detail = f"Cabinet with login {payload.login} already exists"
        raise HTTPException(status_code=409, detail=detail)

    cabinet = IdexCabinet(
        idex_id=payload.idex_id,
        login=payload.login,
        encrypted_password=encrypt_value(payload.password),
        name=payload.name,
    )
    db.add(cabinet)
    await db.commit()
    await db.refresh(cabinet)
    return _cabinet_response(cabinet, 0)


@router.delete("/cabinets/{cabinet_id}", status_code=204)
async def delete_cabinet(cabinet_id: int, db: AsyncSession = Depends(get_db)):
    cabinet = await _get_cabinet_or_404(cabinet_id, db)
    await db.execute(delete(IdexTransaction).where(IdexTransaction.cabinet_id == cabinet_id))
    await db.delete(cabinet)
    await db.commit()


@router.get("/cabinets/{cabinet_id}/transactions", response_model=TransactionListResponse)
async def list_cabinet_transactions(
    cabinet_id: int,
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    tx_status: int | None = Query(None, alias="status"),
    preset: TimePreset | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    db: AsyncSession = Depends(get_db),
):
    await _get_cabinet_or_404(cabinet_id, db)

    conditions = [IdexTransaction.cabinet_id == cabinet_id]
    if tx_status is not None:
        conditions.append(IdexTransaction.status == tx_status)

    # approved_at is the panel's UTC string, so bounds compare as strings in the same format
    if preset is not None:
        start, end = preset_range(preset, datetime.now(timezone.utc))
        conditions.append(IdexTransaction.approved_at >= _panel_timestamp(start))
        conditions.append(IdexTransaction.approved_at <= _panel_timestamp(end))
    else:
        if start_date is not None:
            conditions.append(IdexTransaction.approved_at >= _panel_timestamp(start_date))
        if end_date is not None:
            conditions.append(IdexTransaction.approved_at <= _panel_timestamp(end_date))

    total = (
        await db.execute(select(func.count(IdexTransaction.id)).where(*conditions))
    ).scalar_one()
    result = await db.execute(
        select(IdexTransaction)
        .where(*conditions)
        .order_by(IdexTransaction.approved_at.desc(), IdexTransaction.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )

    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(t) for t in result.scalars().all()],
        total_count=total,
        total_pages=_total_pages(total, per_page),
        current_page=page,
    )


# ─── Sync orders ───────────────────────────────────────────────────────────────

@router.post("/sync", response_model=SyncOrderResponse, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit("10/minute")
async def sync_all_cabinets(
    request: Request,
    payload: SyncRequest,
    db: AsyncSession = Depends(get_db),
):
    """Queue a sync of every cabinet. Progress is visible via /idex/sync-orders."""
    return await _enqueue(None, payload.pages, db)


@router.post("/cabinets/{cabinet_id}/sync", response_model=SyncOrderResponse, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit("10/minute")
async def sync_cabinet(
    request: Request,
    cabinet_id: int,
    payload: SyncRequest,
    db: AsyncSession = Depends(get_db),
):
    await _get_cabinet_or_404(cabinet_id, db)
    return await _enqueue(cabinet_id, payload.pages, db)


@router.get("/sync-orders", response_model=SyncOrderListResponse)
async def list_sync_orders(
    order_status: SyncStatus | None = Query(None, alias="status"),
    cabinet_id: int | None = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Sync history, newest first. Polled by the UI for progress."""
    conditions = []
    if order_status is not None:
        conditions.append(IdexSyncOrder.status == order_status.value)
    if cabinet_id is not None:
        conditions.append(IdexSyncOrder.cabinet_id == cabinet_id)

    total = (
        await db.execute(select(func.count(IdexSyncOrder.id)).where(*conditions))
    ).scalar_one()
    result = await db.execute(
        select(IdexSyncOrder)
        .where(*conditions)
        .order_by(IdexSyncOrder.created_at.desc(), IdexSyncOrder.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )

    return SyncOrderListResponse(
        sync_orders=[SyncOrderResponse.model_validate(o) for o in result.scalars().all()],
        total_count=total,
        total_pages=_total_pages(total, per_page),
        current_page=page,
    )


@router.get("/sync-orders/{order_id}", response_model=SyncOrderResponse)
async def get_sync_order(order_id: int, db: AsyncSession = Depends(get_db)):
    order = await db.get(IdexSyncOrder, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Sync order not found")
    return order
