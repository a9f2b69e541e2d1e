"""Initial schema for raffles, trade and stake events and ticket balances.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "raffles",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("ca", sa.String(200), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("started", sa.Boolean(), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("minimum_purchase", sa.Numeric(38, 9), nullable=True),
        sa.Column("tickets_per_token", sa.Numeric(20, 6), nullable=True),
        sa.Column("staking_bonus_percent", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_raffles_status_end", "raffles", ["status", "end_time"])

    op.create_table(
        "trade_events",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("raffle_id", sa.String(36), nullable=False),
        sa.Column("side", sa.String(4), nullable=False),
        sa.Column("event_key", sa.String(300), nullable=False),
        sa.Column("tx_digest", sa.String(100), nullable=False),
        sa.Column("wallet_address", sa.String(100), nullable=False),
        sa.Column("token_amount", sa.String(80), nullable=False),
        sa.Column("amount_raw", sa.String(80), nullable=False),
        sa.Column("decimals", sa.Integer(), nullable=False),
        sa.Column("ticket_count", sa.BigInteger(), nullable=False),
        sa.Column("source", sa.String(30), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("side", "event_key", name="uq_trade_events_side_key"),
    )
    op.create_index("idx_trade_events_raffle_wallet", "trade_events", ["raffle_id", "wallet_address"])
    op.create_index("idx_trade_events_side_digest", "trade_events", ["side", "tx_digest"])

    op.create_table(
        "stake_events",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("raffle_id", sa.String(36), nullable=False),
        sa.Column("stake_type", sa.String(10), nullable=False),
        sa.Column("event_key", sa.String(300), nullable=False),
        sa.Column("tx_digest", sa.String(100), nullable=False),
        sa.Column("wallet_address", sa.String(100), nullable=False),
        sa.Column("token_amount", sa.String(80), nullable=False),
        sa.Column("amount_raw", sa.String(80), nullable=False),
        sa.Column("decimals", sa.Integer(), nullable=False),
        sa.Column("ticket_count", sa.BigInteger(), nullable=False),
        sa.Column("staking_pool", sa.String(100), nullable=True),
        sa.Column("staking_account", sa.String(100), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_key"),
    )
    op.create_index("idx_stake_events_raffle_wallet", "stake_events", ["raffle_id", "wallet_address"])

    op.create_table(
        "tickets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("raffle_id", sa.String(36), nullable=False),
        sa.Column("wallet_address", sa.String(100), nullable=False),
        sa.Column("ticket_count", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("raffle_id", "wallet_address", name="uq_tickets_raffle_wallet"),
    )

    op.create_table(
        "ledger_applications",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(64), nullable=False),
        sa.Column("event_id", sa.String(36), nullable=False),
        sa.Column("delta", sa.BigInteger(), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id"),
    )

    # Owned by the chat bot; created here so a fresh database is complete.
    op.create_table(
        "wallet_users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(100), nullable=False),
        sa.Column("telegram_user_id", sa.String(40), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_address"),
    )


def downgrade() -> None:
    op.drop_table("wallet_users")
    op.drop_table("ledger_applications")
    op.drop_table("tickets")
    op.drop_index("idx_stake_events_raffle_wallet", table_name="stake_events")
    op.drop_table("stake_events")
    op.drop_index("idx_trade_events_side_digest", table_name="trade_events")
    op.drop_index("idx_trade_events_raffle_wallet", table_name="trade_events")
    op.drop_table("trade_events")
    op.drop_index("idx_raffles_status_end", table_name="raffles")
    op.drop_table("raffles")
