from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
_JSON = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys
_BIGINT_PK = BigInteger().with_variant(Integer(), "sqlite")


class IdexCabinet(Base):
    """One IDEX panel account; credentials are Fernet-encrypted at rest."""
    __tablename__ = "idex_cabinets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    idex_id: Mapped[int] = mapped_column(Integer, unique=True)
    login: Mapped[str] = mapped_column(String(255), unique=True)
    encrypted_password: Mapped[str] = mapped_column(Text)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    transactions: Mapped[list["IdexTransaction"]] = relationship(
        back_populates="cabinet", cascade="all, delete-orphan", passive_deletes=True
    )


class IdexTransaction(Base):
    """A transaction as reported by the panel. Insert-only from the sync path."""
    __tablename__ = "idex_transactions"
    __table_args__ = (
        UniqueConstraint("external_id", "cabinet_id", name="uq_idex_tx_external_cabinet"),
    )

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    # Unique per cabinet only, not globally
    external_id: Mapped[str] = mapped_column(String(64))
    cabinet_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("idex_cabinets.id", ondelete="CASCADE"), index=True
    )
    payment_method_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    wallet: Mapped[str] = mapped_column(String(255), default="")
    amount: Mapped[Any] = mapped_column(_JSON, nullable=True)
    total: Mapped[Any] = mapped_column(_JSON, nullable=True)
    status: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    # Timestamps as the panel reports them (strings, not parsed)
    approved_at: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    expired_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at_external: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at_external: Mapped[str | None] = mapped_column(String(64), nullable=True)
    extra_data: Mapped[Any] = mapped_column(_JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    cabinet: Mapped[IdexCabinet] = relationship(back_populates="transactions")


class IdexSyncOrder(Base):
    """One request to sync a cabinet (or all cabinets when cabinet_id is NULL)."""
    __tablename__ = "idex_sync_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # No FK: history survives cabinet deletion
    cabinet_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    pages: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", index=True)  # PENDING | IN_PROGRESS | COMPLETED | FAILED
    # {cabinet_id: {total_processed, new_transactions, failed} | {error, total_processed: 0, new_transactions: 0}}
    processed: Mapped[dict] = mapped_column(_JSON, default=dict)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    start_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Refreshed on every progress write; the sweeper fails orders whose lease lapsed
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
