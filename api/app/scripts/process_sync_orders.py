"""
Drain the IDEX sync-order queue once, outside Celery.

    docker exec p2padmin-api-1 bash -c \\
        "export PYTHONPATH=/app && python -m app.scripts.process_sync_orders"

Pass --sweep to first fail IN_PROGRESS orders whose worker lease expired.
Ctrl-C stops between pages; the current order is recorded FAILED.
"""
import argparse
import asyncio
import logging
import signal
import sys

from app.services.idex_sync import run_pending_orders, run_stale_sweep

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("process_sync_orders")


async def _run(sweep: bool) -> int:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel.set)
        except NotImplementedError:  # Windows
            logger.warning("Cannot install %s handler; interrupting will abort mid-order", sig.name)

    if sweep:
        stale = await run_stale_sweep()
        logger.info("Stale orders failed: %d", len(stale))

    return await run_pending_orders(cancel_event=cancel)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="process_sync_orders")
    parser.add_argument("--sweep", action="store_true", help="fail stale IN_PROGRESS orders first")
    args = parser.parse_args(argv)

    logger.info("Starting sync order processing...")
    handled = asyncio.run(_run(args.sweep))
    logger.info("Sync order processing finished. Orders handled=%d", handled)
    return 0


if __name__ == "__main__":
    sys.exit(main())
