"""
Sync orchestrator tests.

The panel, the store and asyncio.sleep are all in-process fakes, so every
backoff and pacing delay is recorded rather than waited out.

Run with:
    python -m pytest api/tests/services/test_idex_sync.py -v
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.services.idex_errors import AuthFailed, AuthRejected, FetchFailed, RateLimited, RetryExhausted
from app.services.idex_sync import STALE_LEASE_ERROR, SyncOrchestrator, sweep_stale_orders
from app.services.idex_types import CabinetFailed, CabinetSynced, SyncStatus

from tests.helpers.fake_panel import tx

T0 = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Advances one second per reading."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def make_orchestrator(store, panel, sleep, **overrides) -> SyncOrchestrator:
    options = dict(
        max_attempts=5,
        base_delay=1.0,
        default_pages=25,
        concurrency=3,
        page_delay=1.0,
        chunk_delay=2.0,
        sleep=sleep,
        clock=Clock(),
    )
    options.update(overrides)
    return SyncOrchestrator(store, panel, **options)


# ─── Single-cabinet orders ─────────────────────────────────────────────────────


class TestSingleCabinet:
    async def test_new_transactions_are_stored(self, store, panel, sleep):
        store.add_cabinet(7, "ann", "pw")
        order = store.add_order(cabinet_id=7, pages=2)
        panel.add_pages("ann", [tx(100), tx(101)])

        await make_orchestrator(store, panel, sleep).process_order(order)

        done = store.orders[order.id]
        assert done.status == SyncStatus.COMPLETED
        assert done.processed == {7: CabinetSynced(total_processed=2, new_transactions=2)}
        assert done.start_sync_at is not None
        assert done.end_sync_at is not None
        assert done.error is None
        assert store.status_history[order.id] == [
            SyncStatus.PENDING, SyncStatus.IN_PROGRESS, SyncStatus.COMPLETED,
        ]
        assert set(store.transactions) == {("100", 7), ("101", 7)}

    async def test_resync_reports_no_new_transactions(self, store, panel, sleep):
        store.add_cabinet(7, "ann", "pw")
        panel.add_pages("ann", [tx(100), tx(101)])
        orchestrator = make_orchestrator(store, panel, sleep)

        await orchestrator.process_order(store.add_order(cabinet_id=7, pages=2))
        second = store.add_order(cabinet_id=7, pages=2)
        await orchestrator.process_order(second)

        assert store.orders[second.id].processed == {7: CabinetSynced(2, 0)}
        assert len(store.transactions) == 2

    async def test_credentials_are_passed_to_login(self, store, panel, sleep):
        store.add_cabinet(7, "ann", "s3cret")
        order = store.add_order(cabinet_id=7, pages=1)

        seen = []
        original = panel.authenticate

        async def spy(login, password):
            seen.append((login, password))
            return await original(login, password)

        panel.authenticate = spy
        await make_orchestrator(store, panel, sleep).process_order(order)

        assert seen == [("ann", "s3cret")]

    async def test_rejected_login_fails_the_order(self, store, panel, sleep):
        store.add_cabinet(7, "ann", "bad")
        order = store.add_order(cabinet_id=7, pages=2)
        panel.reject_auth("ann", AuthRejected("login rejected for ann (409 Conflict)"))

        await make_orchestrator(store, panel, sleep).process_order(order)

        done = store.orders[order.id]
        assert done.status == SyncStatus.FAILED
        assert "409" in done.error
        assert isinstance(done.processed[7], CabinetFailed)
        # Rejection is never retried
        assert panel.calls == [("auth", "ann")]
        assert sleep.delays == []

    async def test_unknown_cabinet_fails_without_panel_calls(self, store, panel, sleep):
        order = store.add_order(cabinet_id=99, pages=2)

        await make_orchestrator(store, panel, sleep).process_order(order)

        done = store.orders[order.id]
        assert done.status == SyncStatus.FAILED
        assert done.error == "Cabinet 99 not found"
        assert done.processed == {}
        assert panel.calls == []

    async def test_exhausted_page_retries_fail_the_cabinet(self, store, panel, sleep):
        store.add_cabinet(7, "ann")
        order = store.add_order(cabinet_id=7, pages=2)
        panel.add_pages("ann", [tx(100)])
        panel.fail_page("ann", 1, *[RateLimited("429")] * 5)

        await make_orchestrator(store, panel, sleep).process_order(order)

        done = store.orders[order.id]
        assert done.status == SyncStatus.FAILED
        assert "page 1 for cabinet 7 failed after 5 attempts" in done.error
        assert panel.page_calls("ann") == [1, 1, 1, 1, 1]
        assert sleep.delays == [1.0, 2.0, 4.0, 8.0]
        assert store.transactions == {}

    async def test_exhausted_login_raises_auth_failed(self, store, panel, sleep):
        cabinet = store.add_cabinet(7, "ann")
        panel.fail_auth("ann", *[AuthFailed("HTTP 503")] * 5)

        with pytest.raises(AuthFailed, match=r"login for cabinet 7 \(ann\) failed after 5 attempts") as exc_info:
            await make_orchestrator(store, panel, sleep).login(cabinet)

        assert isinstance(exc_info.value.__cause__, RetryExhausted)
        assert exc_info.value.__cause__.attempts == 5

    async def test_exhausted_page_raises_fetch_failed(self, store, panel, sleep):
        store.add_cabinet(7, "ann")
        panel.fail_page("ann", 1, *[FetchFailed("HTTP 502")] * 5)
        orchestrator = make_orchestrator(store, panel, sleep)
        session = await orchestrator.login(store.cabinets[7])

        with pytest.raises(FetchFailed, match="page 1 for cabinet 7 failed after 5 attempts") as exc_info:
            await orchestrator.fetch_transactions(session, 2, cabinet_id=7)

        assert isinstance(exc_info.value.__cause__, RetryExhausted)

    async def test_failed_writes_are_reported_apart_from_duplicates(self, store, panel, sleep):
        store.add_cabinet(7, "ann")
        store.fail_inserts_for.add("101")
        order = store.add_order(cabinet_id=7, pages=1)
        panel.add_pages("ann", [tx(100), tx(101), tx(102)])

        await make_orchestrator(store, panel, sleep).process_order(order)

        done = store.orders[order.id]
        assert done.status == SyncStatus.COMPLETED
        assert done.processed == {7: CabinetSynced(total_processed=3, new_transactions=2, failed=1)}

    async def test_cancel_between_pages_fails_the_order(self, store, panel, sleep):
        store.add_cabinet(7, "ann")
        order = store.add_order(cabinet_id=7, pages=3)
        panel.add_pages("ann", [tx(1)], [tx(2)], [tx(3)])
        cancel = asyncio.Event()

        async def cancelling_sleep(seconds: float) -> None:
            await sleep(seconds)
            cancel.set()

        await make_orchestrator(store, panel, cancelling_sleep, cancel_event=cancel).process_order(order)

        done = store.orders[order.id]
        assert panel.page_calls("ann") == [1]
        assert done.status == SyncStatus.FAILED
        assert "cancelled" in done.error
        assert store.transactions == {}
        assert store.transactions == {}


# ─── Pagination ────────────────────────────────────────────────────────────────


class TestPagination:
    async def test_stops_at_first_empty_page(self, store, panel, sleep):
        store.add_cabinet(7, "ann")
        order = store.add_order(cabinet_id=7, pages=10)
        panel.add_pages("ann", [tx(1), tx(2)], [tx(3)])

        await make_orchestrator(store, panel, sleep).process_order(order)

        assert panel.page_calls("ann") == [1, 2, 3]
        assert store.orders[order.id].processed[7] == CabinetSynced(3, 3)
        # Pause after pages 1 and 2 only
        assert sleep.delays == [1.0, 1.0]

    async def test_never_fetches_past_requested_depth(self, store, panel, sleep):
        store.add_cabinet(7, "ann")
        order = store.add_order(cabinet_id=7, pages=2)
        panel.add_pages("ann", [tx(1)], [tx(2)], [tx(3)], [tx(4)])

        await make_orchestrator(store, panel, sleep).process_order(order)

        assert panel.page_calls("ann") == [1, 2]
        assert store.orders[order.id].processed[7] == CabinetSynced(2, 2)
        # No pause after the last requested page
        assert sleep.delays == [1.0]

    async def test_non_positive_depth_uses_default(self, store, panel, sleep):
        store.add_cabinet(7, "ann")
        order = store.add_order(cabinet_id=7, pages=0)
        panel.add_pages("ann", *[[tx(i)] for i in range(1, 6)])

        await make_orchestrator(store, panel, sleep, default_pages=3).process_order(order)

        assert panel.page_calls("ann") == [1, 2, 3]

    async def test_depth_is_capped(self, store, panel, sleep):
        store.add_cabinet(7, "ann")
        order = store.add_order(cabinet_id=7, pages=50)
        panel.add_pages("ann", *[[tx(i)] for i in range(1, 6)])

        await make_orchestrator(store, panel, sleep, max_pages=2).process_order(order)

        assert panel.page_calls("ann") == [1, 2]

    async def test_transient_page_error_is_retried(self, store, panel, sleep):
        store.add_cabinet(7, "ann")
        order = store.add_order(cabinet_id=7, pages=2)
        panel.add_pages("ann", [tx(1)])
        panel.fail_page("ann", 1, FetchFailed("HTTP 502"))

        await make_orchestrator(store, panel, sleep, base_delay=0.5).process_order(order)

        assert panel.page_calls("ann") == [1, 1, 2]
        assert sleep.delays == [0.5, 1.0]
        assert store.orders[order.id].status == SyncStatus.COMPLETED

    async def test_transient_login_error_is_retried(self, store, panel, sleep):
        store.add_cabinet(7, "ann")
        order = store.add_order(cabinet_id=7, pages=1)
        panel.add_pages("ann", [tx(1)])
        panel.fail_auth("ann", RateLimited("429"), RateLimited("429"))

        await make_orchestrator(store, panel, sleep).process_order(order)

        assert [c for c in panel.calls if c[0] == "auth"] == [("auth", "ann")] * 3
        assert sleep.delays == [1.0, 2.0]
        assert store.orders[order.id].processed[7] == CabinetSynced(1, 1)


# ─── All-cabinets orders ───────────────────────────────────────────────────────


class TestAllCabinets:
    async def test_failed_cabinet_does_not_fail_the_order(self, store, panel, sleep):
        for cabinet_id, login in [(1, "a"), (2, "b"), (3, "c")]:
            store.add_cabinet(cabinet_id, login)
        panel.add_pages("a", [tx(10), tx(11)])
        panel.add_pages("c", [tx(30)])
        panel.reject_auth("b", AuthRejected("login rejected for b (409 Conflict)"))
        order = store.add_order(pages=5)

        await make_orchestrator(store, panel, sleep).process_order(order)

        done = store.orders[order.id]
        assert done.status == SyncStatus.COMPLETED
        assert done.error is None
        assert done.processed[1] == CabinetSynced(2, 2)
        assert done.processed[3] == CabinetSynced(1, 1)
        assert isinstance(done.processed[2], CabinetFailed)
        assert "409" in done.processed[2].error
        assert panel.page_calls("b") == []

    async def test_no_cabinets_fails_the_order(self, store, panel, sleep):
        order = store.add_order(pages=5)

        await make_orchestrator(store, panel, sleep).process_order(order)

        done = store.orders[order.id]
        assert done.status == SyncStatus.FAILED
        assert done.error == "No cabinets to synchronize"
        assert panel.calls == []

    async def test_chunks_bound_concurrency(self, store, panel, sleep):
        for cabinet_id in range(1, 8):
            store.add_cabinet(cabinet_id, f"user{cabinet_id}")
            panel.add_pages(f"user{cabinet_id}", [tx(cabinet_id)])
        order = store.add_order(pages=1)

        await make_orchestrator(store, panel, sleep).process_order(order)

        assert panel.max_active_logins == 3
        # 7 cabinets → chunks of 3, 3, 1 with a pause between chunks
        assert sleep.delays == [2.0, 2.0]
        assert len(store.orders[order.id].processed) == 7

        # The second chunk starts only after the first one is done
        auth_order = [c[1] for c in panel.calls if c[0] == "auth"]
        first_chunk_last_page = max(
            i for i, c in enumerate(panel.calls) if c[0] == "page" and c[1] in {"user1", "user2", "user3"}
        )
        second_chunk_first_auth = panel.calls.index(("auth", "user4"))
        assert first_chunk_last_page < second_chunk_first_auth
        assert set(auth_order[:3]) == {"user1", "user2", "user3"}

    async def test_concurrency_of_one_is_sequential(self, store, panel, sleep):
        for cabinet_id in range(1, 4):
            store.add_cabinet(cabinet_id, f"user{cabinet_id}")
        order = store.add_order(pages=1)

        await make_orchestrator(store, panel, sleep, concurrency=1).process_order(order)

        assert panel.max_active_logins == 1
        assert sleep.delays == [2.0, 2.0]

    async def test_progress_is_visible_per_cabinet(self, store, panel, sleep):
        for cabinet_id in range(1, 5):
            store.add_cabinet(cabinet_id, f"user{cabinet_id}")
            panel.add_pages(f"user{cabinet_id}", [tx(cabinet_id)])
        order = store.add_order(pages=1)

        await make_orchestrator(store, panel, sleep).process_order(order)

        snapshots = store.progress_snapshots[order.id]
        assert [len(s) for s in snapshots] == [1, 2, 3, 4]
        # Each snapshot extends the previous one
        for earlier, later in zip(snapshots, snapshots[1:]):
            assert earlier.items() <= later.items()

    async def test_progress_write_failure_does_not_fail_the_order(self, store, panel, sleep):
        store.add_cabinet(1, "a")
        panel.add_pages("a", [tx(1)])
        store.fail_progress_writes = True
        order = store.add_order(pages=1)

        await make_orchestrator(store, panel, sleep).process_order(order)

        done = store.orders[order.id]
        assert done.status == SyncStatus.COMPLETED
        assert done.processed == {1: CabinetSynced(1, 1)}

    async def test_slow_cabinet_times_out_alone(self, store, panel, sleep):
        store.add_cabinet(1, "fast")
        store.add_cabinet(2, "slow")
        panel.add_pages("fast", [tx(1)])
        panel.hang_logins.add("slow")
        order = store.add_order(pages=1)

        await make_orchestrator(store, panel, sleep, cabinet_timeout=0.05).process_order(order)

        done = store.orders[order.id]
        assert done.status == SyncStatus.COMPLETED
        assert done.processed[1] == CabinetSynced(1, 1)
        assert done.processed[2] == CabinetFailed("Cabinet 2 sync timed out after 0.05s")


# ─── Queue draining & cancellation ─────────────────────────────────────────────


class TestQueue:
    async def test_orders_processed_oldest_first(self, store, panel, sleep):
        store.add_cabinet(1, "a")
        store.add_cabinet(2, "b")
        newer = store.add_order(cabinet_id=1, pages=1, created_at=T0 + timedelta(minutes=10))
        older = store.add_order(cabinet_id=2, pages=1, created_at=T0)

        handled = await make_orchestrator(store, panel, sleep).process_sync_orders()

        assert handled == 2
        assert [c[1] for c in panel.calls if c[0] == "auth"] == ["b", "a"]
        assert store.orders[older.id].status == SyncStatus.COMPLETED
        assert store.orders[newer.id].status == SyncStatus.COMPLETED

    async def test_failed_order_does_not_block_the_queue(self, store, panel, sleep):
        store.add_cabinet(1, "a")
        bad = store.add_order(cabinet_id=42, pages=1)
        good = store.add_order(cabinet_id=1, pages=1)

        handled = await make_orchestrator(store, panel, sleep).process_sync_orders()

        assert handled == 2
        assert store.orders[bad.id].status == SyncStatus.FAILED
        assert store.orders[good.id].status == SyncStatus.COMPLETED

    async def test_empty_queue(self, store, panel, sleep):
        assert await make_orchestrator(store, panel, sleep).process_sync_orders() == 0

    async def test_only_pending_orders_are_picked_up(self, store, panel, sleep):
        store.add_cabinet(1, "a")
        store.add_order(cabinet_id=1, status=SyncStatus.COMPLETED)
        store.add_order(cabinet_id=1, status=SyncStatus.IN_PROGRESS)

        assert await make_orchestrator(store, panel, sleep).process_sync_orders() == 0
        assert panel.calls == []

    async def test_non_pending_order_is_left_alone(self, store, panel, sleep):
        store.add_cabinet(1, "a")
        order = store.add_order(cabinet_id=1, status=SyncStatus.FAILED, error="earlier failure")

        await make_orchestrator(store, panel, sleep).process_order(order)

        assert store.orders[order.id].error == "earlier failure"
        assert store.status_history[order.id] == [SyncStatus.FAILED]
        assert panel.calls == []

    async def test_cancel_before_start_leaves_orders_pending(self, store, panel, sleep):
        store.add_cabinet(1, "a")
        order = store.add_order(cabinet_id=1, pages=1)
        cancel = asyncio.Event()
        cancel.set()

        handled = await make_orchestrator(store, panel, sleep, cancel_event=cancel).process_sync_orders()

        assert handled == 0
        assert store.orders[order.id].status == SyncStatus.PENDING

    async def test_cancel_after_last_chunk_keeps_the_order_completed(self, store, panel, sleep):
        store.add_cabinet(1, "a")
        order = store.add_order(pages=1)
        panel.add_pages("a", [tx(100)])
        cancel = asyncio.Event()
        original = panel.fetch_transaction_page

        async def fetch_then_cancel(session, page):
            rows = await original(session, page)
            cancel.set()
            return rows

        panel.fetch_transaction_page = fetch_then_cancel
        await make_orchestrator(store, panel, sleep, cancel_event=cancel).process_order(order)

        done = store.orders[order.id]
        assert done.status == SyncStatus.COMPLETED
        assert done.error is None
        assert done.processed == {1: CabinetSynced(1, 1)}

    async def test_cancel_between_chunks_fails_the_order(self, store, panel, sleep):
        for cabinet_id in range(1, 5):
            store.add_cabinet(cabinet_id, f"user{cabinet_id}")
        order = store.add_order(pages=1)
        cancel = asyncio.Event()

        async def cancelling_sleep(seconds: float) -> None:
            await sleep(seconds)
            if seconds == 2.0:
                cancel.set()

        orchestrator = make_orchestrator(store, panel, cancelling_sleep, cancel_event=cancel)
        await orchestrator.process_order(order)

        done = store.orders[order.id]
        assert done.status == SyncStatus.FAILED
        assert "cancelled" in done.error
        # First chunk results survive, fourth cabinet never started
        assert set(done.processed) == {1, 2, 3}
        assert ("auth", "user4") not in panel.calls


# ─── Stale lease sweeper ───────────────────────────────────────────────────────


class TestStaleSweep:
    async def test_unrecorded_finish_is_swept_after_lease(self, store, panel, sleep):
        store.add_cabinet(1, "a")
        order = store.add_order(cabinet_id=1, pages=1)
        store.fail_finish_writes = True

        await make_orchestrator(store, panel, sleep).process_order(order)

        stuck = store.orders[order.id]
        assert stuck.status == SyncStatus.IN_PROGRESS

        fresh = await sweep_stale_orders(store, lease_seconds=900, now=stuck.heartbeat_at + timedelta(minutes=5))
        assert fresh == []

        swept = await sweep_stale_orders(store, lease_seconds=900, now=stuck.heartbeat_at + timedelta(minutes=16))
        assert swept == [order.id]
        done = store.orders[order.id]
        assert done.status == SyncStatus.FAILED
        assert done.error == STALE_LEASE_ERROR
        assert done.end_sync_at is not None

    async def test_terminal_and_pending_orders_untouched(self, store):
        pending = store.add_order(cabinet_id=1)
        completed = store.add_order(
            cabinet_id=1, status=SyncStatus.COMPLETED, heartbeat_at=T0 - timedelta(days=1)
        )

        assert await sweep_stale_orders(store, lease_seconds=60, now=T0) == []
        assert store.orders[pending.id].status == SyncStatus.PENDING
        assert store.orders[completed.id].status == SyncStatus.COMPLETED
