"""
Transaction deduplicator & persister.

Writes exactly the transactions not yet stored for a cabinet. The dedup key
is (external_id, cabinet_id): the panel's ids are only unique per account.
Stored rows are never updated from here.
"""

import logging

from app.services.idex_store import SyncStore
from app.services.idex_types import ExternalTransaction, PersistResult, RawTransaction

logger = logging.getLogger(__name__)


def _optional_str(value) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _optional_int(value) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def to_external_transaction(raw: RawTransaction, cabinet_id: int) -> ExternalTransaction:
    """Map a raw panel record; amount/total stay as the panel's money objects."""
    external_id = raw.get("id")
    if external_id is None or str(external_id).strip() == "":
        raise ValueError("transaction has no id")

    return ExternalTransaction(
        external_id=str(external_id).strip(),
        cabinet_id=cabinet_id,
        payment_method_id=_optional_str(raw.get("payment_method_id")),
        wallet=raw.get("wallet") or "",
        amount=raw.get("amount"),
        total=raw.get("total"),
        status=_optional_int(raw.get("status")),
        approved_at=_optional_str(raw.get("approved_at")),
        expired_at=_optional_str(raw.get("expired_at")),
        created_at_external=_optional_str(raw.get("created_at")),
        updated_at_external=_optional_str(raw.get("updated_at")),
        extra_data=dict(raw),
    )


async def persist(
    store: SyncStore,
    raw_transactions: list[RawTransaction],
    cabinet_id: int,
) -> PersistResult:
    """
    Insert new transactions for ``cabinet_id`` and count the outcome.

    ``total_processed`` counts every input record, ``new_transactions`` only
    inserts. A record that cannot be mapped or written is logged and counted
    in ``failed``; the rest of the batch still goes through.
    """
    total = new = failed = 0
    logger.info("Saving %d transactions for cabinet %s", len(raw_transactions), cabinet_id)

    for raw in raw_transactions:
        total += 1
        try:
            tx = to_external_transaction(raw, cabinet_id)
            if await store.transaction_exists(tx.external_id, cabinet_id):
                continue
            if await store.insert_transaction(tx):
                new += 1
        except Exception:
            failed += 1
            logger.exception(
                "Failed to store transaction %r for cabinet %s",
                raw.get("id") if isinstance(raw, dict) else raw, cabinet_id,
            )

    result = PersistResult(total_processed=total, new_transactions=new, failed=failed)
    logger.info(
        "Cabinet %s: processed=%d new=%d duplicates=%d failed=%d",
        cabinet_id, total, new, result.duplicates_skipped, failed,
    )
    return result
