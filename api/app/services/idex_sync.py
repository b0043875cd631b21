"""IDEX transaction sync: orchestrates sync orders end to end.

An order moves PENDING → IN_PROGRESS → COMPLETED | FAILED and never leaves a
terminal state. For each target cabinet the orchestrator logs in, walks the
transaction listing page by page until an empty page or the requested depth,
and hands the rows to the persister. Per-cabinet results land in the order's
``processed`` map as soon as each cabinet finishes.

Orders are drained one at a time, oldest first. Cabinets of an all-cabinets
order run in chunks of ``concurrency`` with a pause between chunks.

Runs as Celery beat tasks (see app.worker) or by hand via
``python -m app.scripts.process_sync_orders``.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from app.core.config import settings
from app.core.database import make_session_factory
from app.core.redis import sync_consumer_lock
from app.services.idex_client import IdexClient, PanelClient, SessionToken
from app.services.idex_errors import (
    AuthFailed,
    CabinetNotFound,
    CabinetTimeout,
    FetchFailed,
    NoCabinets,
    RetryExhausted,
    SyncCancelled,
)
from app.services.idex_persister import persist
from app.services.idex_store import SqlSyncStore, SyncStore
from app.services.idex_types import (
    Cabinet,
    CabinetFailed,
    CabinetResult,
    CabinetSynced,
    RawTransaction,
    SyncOrder,
    SyncStatus,
)
from app.services.retry import Sleep, with_retry
from app.worker import celery_app

logger = logging.getLogger(__name__)

STALE_LEASE_ERROR = "Sync lease expired: no progress from the worker"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    def __init__(
        self,
        store: SyncStore,
        client: PanelClient,
        *,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        default_pages: int = 25,
        max_pages: int = 100,
        concurrency: int = 3,
        page_delay: float = 1.0,
        chunk_delay: float = 2.0,
        cabinet_timeout: float | None = None,
        sleep: Sleep = asyncio.sleep,
        cancel_event: asyncio.Event | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._store = store
        self._client = client
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._default_pages = default_pages
        self._max_pages = max_pages
        self._concurrency = concurrency
        self._page_delay = page_delay
        self._chunk_delay = chunk_delay
        self._cabinet_timeout = cabinet_timeout
        self._sleep = sleep
        self._cancel_event = cancel_event
        self._clock = clock

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise SyncCancelled("Sync cancelled by worker shutdown")

    # ─── Single cabinet ───────────────────────────────────────────────────────

    async def login(self, cabinet: Cabinet) -> SessionToken:
        try:
            return await with_retry(
                lambda: self._client.authenticate(cabinet.login, cabinet.password),
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                description=f"login for cabinet {cabinet.id} ({cabinet.login})",
                sleep=self._sleep,
            )
        except RetryExhausted as exc:
            raise AuthFailed(str(exc)) from exc

    async def fetch_transactions(
        self, session: SessionToken, pages: int, cabinet_id: int | None = None
    ) -> list[RawTransaction]:
        """Fetch pages 1..pages in order, stopping at the first empty page."""
        rows: list[RawTransaction] = []
        for page in range(1, pages + 1):
            self._check_cancelled()
            try:
                batch = await with_retry(
                    lambda page=page: self._client.fetch_transaction_page(session, page),
                    max_attempts=self._max_attempts,
                    base_delay=self._base_delay,
                    description=f"page {page} for cabinet {cabinet_id}",
                    sleep=self._sleep,
                )
            except RetryExhausted as exc:
                raise FetchFailed(str(exc)) from exc
            if not batch:
                logger.info("Cabinet %s: page %d is empty, stopping", cabinet_id, page)
                break
            rows.extend(batch)
            if page < pages:
                await self._sleep(self._page_delay)
        return rows

    async def _sync_cabinet(self, cabinet: Cabinet, pages: int) -> CabinetSynced:
        logger.info("Syncing cabinet %s (%s), pages=%d", cabinet.id, cabinet.login, pages)
        session = await self.login(cabinet)
        rows = await self.fetch_transactions(session, pages, cabinet.id)
        logger.info("Cabinet %s: fetched %d transactions", cabinet.id, len(rows))
        result = await persist(self._store, rows, cabinet.id)
        return CabinetSynced(
            total_processed=result.total_processed,
            new_transactions=result.new_transactions,
            failed=result.failed,
        )

    async def sync_cabinet(self, cabinet: Cabinet, pages: int) -> CabinetSynced:
        """Login, fetch and persist one cabinet, bounded by the per-cabinet timeout."""
        if self._cabinet_timeout is None:
            return await self._sync_cabinet(cabinet, pages)
        try:
            return await asyncio.wait_for(self._sync_cabinet(cabinet, pages), self._cabinet_timeout)
        except asyncio.TimeoutError:
            raise CabinetTimeout(cabinet.id, self._cabinet_timeout) from None

    # ─── Progress bookkeeping ─────────────────────────────────────────────────

    async def _record(
        self,
        order: SyncOrder,
        cabinet_id: int,
        result: CabinetResult,
        processed: dict[int, CabinetResult],
        lock: asyncio.Lock,
    ) -> None:
        # Writes are serialised so a slower write can't overwrite a newer snapshot
        async with lock:
            processed[cabinet_id] = result
            try:
                await self._store.save_progress(order.id, dict(processed), self._clock())
            except Exception:
                logger.exception("Order %s: failed to record progress for cabinet %s", order.id, cabinet_id)

    async def _run_cabinet(
        self,
        order: SyncOrder,
        cabinet: Cabinet,
        pages: int,
        processed: dict[int, CabinetResult],
        lock: asyncio.Lock,
    ) -> CabinetResult:
        result: CabinetResult
        try:
            result = await self.sync_cabinet(cabinet, pages)
            logger.info(
                "Cabinet %s done: processed=%d new=%d failed=%d",
                cabinet.id, result.total_processed, result.new_transactions, result.failed,
            )
        except Exception as exc:
            logger.error("Order %s: cabinet %s (%s) failed: %s", order.id, cabinet.id, cabinet.login, exc)
            result = CabinetFailed(str(exc))
        await self._record(order, cabinet.id, result, processed, lock)
        return result

    async def _finish(
        self,
        order: SyncOrder,
        status: SyncStatus,
        processed: dict[int, CabinetResult],
        error: str | None = None,
    ) -> None:
        try:
            await self._store.finish_order(order.id, status, self._clock(), dict(processed), error)
        except Exception:
            # Left IN_PROGRESS; sweep_stale_orders fails it once the lease lapses
            logger.exception("Order %s: failed to record terminal status %s", order.id, status.value)

    # ─── Orders ───────────────────────────────────────────────────────────────

    async def process_order(self, order: SyncOrder) -> None:
        if order.status != SyncStatus.PENDING:
            logger.warning("Order %s is %s, not PENDING, skipping", order.id, order.status.value)
            return

        target = "all cabinets" if order.covers_all_cabinets else f"cabinet {order.cabinet_id}"
        logger.info("Processing sync order %s (%s)", order.id, target)

        pages = min(order.pages if order.pages > 0 else self._default_pages, self._max_pages)
        processed: dict[int, CabinetResult] = {}
        lock = asyncio.Lock()

        try:
            await self._store.mark_in_progress(order.id, self._clock())

            if order.covers_all_cabinets:
                cabinets = await self._store.list_cabinets()
                if not cabinets:
                    raise NoCabinets()
                chunks = [
                    cabinets[i:i + self._concurrency]
                    for i in range(0, len(cabinets), self._concurrency)
                ]
                for index, chunk in enumerate(chunks):
                    self._check_cancelled()
                    await asyncio.gather(
                        *(self._run_cabinet(order, c, pages, processed, lock) for c in chunk)
                    )
                    if index < len(chunks) - 1:
                        await self._sleep(self._chunk_delay)
            else:
                cabinet = await self._store.get_cabinet(order.cabinet_id)
                if cabinet is None:
                    raise CabinetNotFound(order.cabinet_id)
                result = await self._run_cabinet(order, cabinet, pages, processed, lock)
                if isinstance(result, CabinetFailed):
                    await self._finish(order, SyncStatus.FAILED, processed, result.error)
                    return
        except Exception as exc:
            logger.exception("Sync order %s failed", order.id)
            await self._finish(order, SyncStatus.FAILED, processed, str(exc))
            return

        await self._finish(order, SyncStatus.COMPLETED, processed)
        total = sum(r.total_processed for r in processed.values() if isinstance(r, CabinetSynced))
        new = sum(r.new_transactions for r in processed.values() if isinstance(r, CabinetSynced))
        failed = sum(1 for r in processed.values() if isinstance(r, CabinetFailed))
        logger.info(
            "Sync order %s completed: processed=%d new=%d failed_cabinets=%d",
            order.id, total, new, failed,
        )

    async def process_sync_orders(self) -> int:
        """Drain PENDING orders oldest first, strictly one at a time. Returns orders handled."""
        orders = await self._store.list_pending_orders()
        if not orders:
            logger.info("No pending sync orders")
            return 0

        logger.info("Found %d pending sync order(s)", len(orders))
        handled = 0
        for order in orders:
            if self._cancel_event is not None and self._cancel_event.is_set():
                logger.info("Cancellation requested, leaving %d order(s) pending", len(orders) - handled)
                break
            try:
                await self.process_order(order)
            except Exception:
                logger.exception("Unexpected error processing sync order %s", order.id)
            handled += 1
        return handled


async def sweep_stale_orders(
    store: SyncStore,
    lease_seconds: int,
    now: datetime | None = None,
) -> list[int]:
    """Fail IN_PROGRESS orders whose heartbeat is older than the lease."""
    now = now or _utcnow()
    cutoff = now - timedelta(seconds=lease_seconds)
    stale = await store.fail_stale_orders(cutoff, now, STALE_LEASE_ERROR)
    if stale:
        logger.warning("Marked %d stale sync order(s) FAILED: %s", len(stale), stale)
    return stale


# ─── Production wiring ─────────────────────────────────────────────────────────

def build_orchestrator(
    store: SyncStore,
    client: PanelClient,
    cancel_event: asyncio.Event | None = None,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        client,
        max_attempts=settings.idex_max_retries,
        base_delay=settings.idex_base_delay_seconds,
        default_pages=settings.idex_default_pages,
        max_pages=settings.idex_max_pages,
        concurrency=settings.idex_concurrent_requests,
        page_delay=settings.idex_page_delay_seconds,
        chunk_delay=settings.idex_chunk_delay_seconds,
        cabinet_timeout=settings.idex_cabinet_timeout_seconds,
        cancel_event=cancel_event,
    )


async def run_pending_orders(cancel_event: asyncio.Event | None = None) -> int:
    async with sync_consumer_lock(settings.idex_sync_lock_seconds) as acquired:
        if not acquired:
            logger.info("Another worker is draining the sync queue, skipping")
            return 0

        engine, session_factory = make_session_factory()
        try:
            async with IdexClient(
                settings.idex_base_url, timeout=settings.idex_request_timeout_seconds
            ) as client:
                orchestrator = build_orchestrator(SqlSyncStore(session_factory), client, cancel_event)
                return await orchestrator.process_sync_orders()
        finally:
            await engine.dispose()


async def run_stale_sweep() -> list[int]:
    engine, session_factory = make_session_factory()
    try:
        return await sweep_stale_orders(SqlSyncStore(session_factory), settings.idex_sync_lease_seconds)
    finally:
        await engine.dispose()


@celery_app.task(name="app.services.idex_sync.process_pending_orders")
def process_pending_orders() -> int:
    """Celery task: drain the sync order queue."""
    return asyncio.run(run_pending_orders())


@celery_app.task(name="app.services.idex_sync.sweep_stale")
def sweep_stale() -> int:
    """Celery task: fail sync orders abandoned by a crashed worker."""
    return len(asyncio.run(run_stale_sweep()))
