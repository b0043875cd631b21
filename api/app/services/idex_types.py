"""
Domain types for the IDEX sync core: plain dataclasses, no ORM, no HTTP.

The orchestrator and persister only ever see these types; the SQL store
converts to and from the ORM models in app.models.idex.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class SyncStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED)


# A record exactly as the panel returned it
RawTransaction = dict[str, Any]


@dataclass(frozen=True)
class Cabinet:
    id: int
    login: str
    password: str = field(repr=False)
    name: str | None = None


@dataclass(frozen=True)
class ExternalTransaction:
    external_id: str
    cabinet_id: int
    payment_method_id: str | None
    wallet: str
    amount: Any
    total: Any
    status: int | None
    approved_at: str | None
    expired_at: str | None
    created_at_external: str | None
    updated_at_external: str | None
    extra_data: RawTransaction


# ── Per-cabinet outcome ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class CabinetSynced:
    total_processed: int
    new_transactions: int
    failed: int = 0             # records whose write raised


@dataclass(frozen=True)
class CabinetFailed:
    error: str


CabinetResult = CabinetSynced | CabinetFailed


def result_to_json(result: CabinetResult) -> dict[str, Any]:
    if isinstance(result, CabinetFailed):
        return {"error": result.error, "total_processed": 0, "new_transactions": 0}
    return {
        "total_processed": result.total_processed,
        "new_transactions": result.new_transactions,
        "failed": result.failed,
    }


def result_from_json(data: dict[str, Any]) -> CabinetResult:
    if data.get("error") is not None:
        return CabinetFailed(str(data["error"]))
    return CabinetSynced(
        total_processed=int(data.get("total_processed", 0)),
        new_transactions=int(data.get("new_transactions", 0)),
        failed=int(data.get("failed", 0)),
    )


@dataclass(frozen=True)
class SyncOrder:
    id: int
    cabinet_id: int | None      # None = every cabinet
    pages: int
    status: SyncStatus
    created_at: datetime | None = None
    start_sync_at: datetime | None = None
    end_sync_at: datetime | None = None
    heartbeat_at: datetime | None = None
    processed: dict[int, CabinetResult] = field(default_factory=dict)
    error: str | None = None

    @property
    def covers_all_cabinets(self) -> bool:
        return self.cabinet_id is None


@dataclass(frozen=True)
class PersistResult:
    total_processed: int
    new_transactions: int
    failed: int = 0

    @property
    def duplicates_skipped(self) -> int:
        return self.total_processed - self.new_transactions - self.failed
