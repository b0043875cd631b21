"""
Storage seam for the IDEX sync core.

SyncStore is what the orchestrator and persister depend on; SqlSyncStore is
the production implementation over the async SQLAlchemy session factory.
Each call opens its own short session so cabinets synced concurrently never
share an AsyncSession.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.security import decrypt_value
from app.models.idex import IdexCabinet, IdexSyncOrder, IdexTransaction
from app.services.idex_types import (
    Cabinet,
    CabinetResult,
    ExternalTransaction,
    SyncOrder,
    SyncStatus,
    result_from_json,
    result_to_json,
)

logger = logging.getLogger(__name__)

_TERMINAL = [SyncStatus.COMPLETED.value, SyncStatus.FAILED.value]


class SyncStore(Protocol):
    # ── Job status ──
    async def list_pending_orders(self) -> list[SyncOrder]: ...

    async def get_order(self, order_id: int) -> SyncOrder | None: ...

    async def mark_in_progress(self, order_id: int, started_at: datetime) -> None: ...

    async def save_progress(
        self, order_id: int, processed: dict[int, CabinetResult], heartbeat_at: datetime
    ) -> None: ...

    async def finish_order(
        self,
        order_id: int,
        status: SyncStatus,
        ended_at: datetime,
        processed: dict[int, CabinetResult],
        error: str | None = None,
    ) -> None: ...

    async def fail_stale_orders(self, cutoff: datetime, ended_at: datetime, error: str) -> list[int]: ...

    # ── Credentials ──
    async def get_cabinet(self, cabinet_id: int) -> Cabinet | None: ...

    async def list_cabinets(self) -> list[Cabinet]: ...

    # ── Transactions ──
    async def transaction_exists(self, external_id: str, cabinet_id: int) -> bool: ...

    async def insert_transaction(self, tx: ExternalTransaction) -> bool: ...


# ─── Conversions ───────────────────────────────────────────────────────────────

def processed_to_json(processed: dict[int, CabinetResult]) -> dict[str, Any]:
    return {str(cabinet_id): result_to_json(r) for cabinet_id, r in processed.items()}


def processed_from_json(data: dict[str, Any] | None) -> dict[int, CabinetResult]:
    out: dict[int, CabinetResult] = {}
    for key, value in (data or {}).items():
        if isinstance(value, dict):
            out[int(key)] = result_from_json(value)
    return out


def order_from_row(row: IdexSyncOrder) -> SyncOrder:
    return SyncOrder(
        id=row.id,
        cabinet_id=row.cabinet_id,
        pages=row.pages,
        status=SyncStatus(row.status),
        created_at=row.created_at,
        start_sync_at=row.start_sync_at,
        end_sync_at=row.end_sync_at,
        heartbeat_at=row.heartbeat_at,
        processed=processed_from_json(row.processed),
        error=row.error,
    )


# ─── SQLAlchemy implementation ─────────────────────────────────────────────────

class SqlSyncStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        decrypt: Callable[[str], str] = decrypt_value,
    ):
        self._session_factory = session_factory
        self._decrypt = decrypt

    def _cabinet(self, row: IdexCabinet) -> Cabinet:
        return Cabinet(
            id=row.id,
            login=row.login,
            password=self._decrypt(row.encrypted_password),
            name=row.name,
        )

    # ── Job status ────────────────────────────────────────────────────────────

    async def list_pending_orders(self) -> list[SyncOrder]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(IdexSyncOrder)
                .where(IdexSyncOrder.status == SyncStatus.PENDING.value)
                .order_by(IdexSyncOrder.created_at.asc(), IdexSyncOrder.id.asc())
            )
            return [order_from_row(r) for r in result.scalars().all()]

    async def get_order(self, order_id: int) -> SyncOrder | None:
        async with self._session_factory() as db:
            row = await db.get(IdexSyncOrder, order_id)
            return order_from_row(row) if row else None

    async def mark_in_progress(self, order_id: int, started_at: datetime) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(IdexSyncOrder)
                .where(IdexSyncOrder.id == order_id, IdexSyncOrder.status.not_in(_TERMINAL))
                .values(
                    status=SyncStatus.IN_PROGRESS.value,
                    start_sync_at=started_at,
                    heartbeat_at=started_at,
                )
            )
            await db.commit()

    async def save_progress(
        self, order_id: int, processed: dict[int, CabinetResult], heartbeat_at: datetime
    ) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(IdexSyncOrder)
                .where(IdexSyncOrder.id == order_id, IdexSyncOrder.status.not_in(_TERMINAL))
                .values(processed=processed_to_json(processed), heartbeat_at=heartbeat_at)
            )
            await db.commit()

    async def finish_order(
        self,
        order_id: int,
        status: SyncStatus,
        ended_at: datetime,
        processed: dict[int, CabinetResult],
        error: str | None = None,
    ) -> None:
        if not status.is_terminal:
            raise ValueError(f"finish_order needs a terminal status, got {status.value}")
        async with self._session_factory() as db:
            result = await db.execute(
                update(IdexSyncOrder)
                .where(IdexSyncOrder.id == order_id, IdexSyncOrder.status.not_in(_TERMINAL))
                .values(
                    status=status.value,
                    end_sync_at=ended_at,
                    heartbeat_at=ended_at,
                    processed=processed_to_json(processed),
                    error=error,
                )
            )
            await db.commit()
            if result.rowcount == 0:
                logger.warning("Sync order %s already terminal, %s not recorded", order_id, status.value)

    async def fail_stale_orders(self, cutoff: datetime, ended_at: datetime, error: str) -> list[int]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(IdexSyncOrder.id).where(
                    IdexSyncOrder.status == SyncStatus.IN_PROGRESS.value,
                    or_(
                        IdexSyncOrder.heartbeat_at < cutoff,
                        IdexSyncOrder.heartbeat_at.is_(None) & (IdexSyncOrder.start_sync_at < cutoff),
                    ),
                )
            )
            stale_ids = list(result.scalars().all())
            if stale_ids:
                await db.execute(
                    update(IdexSyncOrder)
                    .where(
                        IdexSyncOrder.id.in_(stale_ids),
                        IdexSyncOrder.status == SyncStatus.IN_PROGRESS.value,
                    )
                    .values(status=SyncStatus.FAILED.value, end_sync_at=ended_at, error=error)
                )
                await db.commit()
            return stale_ids

    # ── Credentials ───────────────────────────────────────────────────────────

    async def get_cabinet(self, cabinet_id: int) -> Cabinet | None:
        async with self._session_factory() as db:
            row = await db.get(IdexCabinet, cabinet_id)
            return self._cabinet(row) if row else None

    async def list_cabinets(self) -> list[Cabinet]:
        async with self._session_factory() as db:
            result = await db.execute(select(IdexCabinet).order_by(IdexCabinet.id))
            return [self._cabinet(r) for r in result.scalars().all()]

    # ── Transactions ──────────────────────────────────────────────────────────

    async def transaction_exists(self, external_id: str, cabinet_id: int) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                select(IdexTransaction.id)
                .where(
                    IdexTransaction.external_id == external_id,
                    IdexTransaction.cabinet_id == cabinet_id,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def insert_transaction(self, tx: ExternalTransaction) -> bool:
        """Insert; False when the (external_id, cabinet_id) row already exists."""
        async with self._session_factory() as db:
            db.add(IdexTransaction(
                external_id=tx.external_id,
                cabinet_id=tx.cabinet_id,
                payment_method_id=tx.payment_method_id,
                wallet=tx.wallet,
                amount=tx.amount,
                total=tx.total,
                status=tx.status,
                approved_at=tx.approved_at,
                expired_at=tx.expired_at,
                created_at_external=tx.created_at_external,
                updated_at_external=tx.updated_at_external,
                extra_data=tx.extra_data,
            ))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                # Lost a race on the dedup key; anything else (e.g. cabinet deleted) is a real failure
                if await self.transaction_exists(tx.external_id, tx.cabinet_id):
                    return False
                raise
            return True
