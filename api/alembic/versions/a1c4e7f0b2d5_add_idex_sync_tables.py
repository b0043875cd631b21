"""add_idex_sync_tables

Revision ID: a1c4e7f0b2d5
Revises:
Create Date: 2026-10-17 12:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "a1c4e7f0b2d5"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "idex_cabinets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("idex_id", sa.Integer(), nullable=False),
        sa.Column("login", sa.String(length=255), nullable=False),
        sa.Column("encrypted_password", sa.Text(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idex_id"),
        sa.UniqueConstraint("login"),
    )

    op.create_table(
        "idex_transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("external_id", sa.String(length=64), nullable=False),
        sa.Column("cabinet_id", sa.Integer(), nullable=False),
        sa.Column("payment_method_id", sa.String(length=64), nullable=True),
        sa.Column("wallet", sa.String(length=255), nullable=False),
        sa.Column("amount", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("total", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("status", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.String(length=64), nullable=True),
        sa.Column("expired_at", sa.String(length=64), nullable=True),
        sa.Column("created_at_external", sa.String(length=64), nullable=True),
        sa.Column("updated_at_external", sa.String(length=64), nullable=True),
        sa.Column("extra_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["cabinet_id"], ["idex_cabinets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_id", "cabinet_id", name="uq_idex_tx_external_cabinet"),
    )
    op.create_index(op.f("ix_idex_transactions_cabinet_id"), "idex_transactions", ["cabinet_id"], unique=False)
    op.create_index(op.f("ix_idex_transactions_status"), "idex_transactions", ["status"], unique=False)
    op.create_index(op.f("ix_idex_transactions_approved_at"), "idex_transactions", ["approved_at"], unique=False)

    op.create_table(
        "idex_sync_orders",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("cabinet_id", sa.Integer(), nullable=True),
        sa.Column("pages", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("processed", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("start_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_idex_sync_orders_cabinet_id"), "idex_sync_orders", ["cabinet_id"], unique=False)
    op.create_index(op.f("ix_idex_sync_orders_status"), "idex_sync_orders", ["status"], unique=False)
    op.create_index(op.f("ix_idex_sync_orders_created_at"), "idex_sync_orders", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_idex_sync_orders_created_at"), table_name="idex_sync_orders")
    op.drop_index(op.f("ix_idex_sync_orders_status"), table_name="idex_sync_orders")
    op.drop_index(op.f("ix_idex_sync_orders_cabinet_id"), table_name="idex_sync_orders")
    op.drop_table("idex_sync_orders")
    op.drop_index(op.f("ix_idex_transactions_approved_at"), table_name="idex_transactions")
    op.drop_index(op.f("ix_idex_transactions_status"), table_name="idex_transactions")
    op.drop_index(op.f("ix_idex_transactions_cabinet_id"), table_name="idex_transactions")
    op.drop_table("idex_transactions")
    op.drop_table("idex_cabinets")
