"""Initial schema: events, streams, withdrawals, indexer_state.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

from streampay_indexer.storage.models import UINT256, UINT256_INT

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("id", sa.String(200), nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("stream_id", sa.String(78), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=False),
        sa.Column("transaction_hash", sa.String(66), nullable=False),
        sa.Column("transaction_index", sa.Integer(), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("args_json", sa.Text(), nullable=False),
        sa.Column("block_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "chain_id",
            "contract_address",
            "transaction_hash",
            "log_index",
            name="uq_events_log",
        ),
    )
    op.create_index("idx_events_tx_hash", "events", ["transaction_hash"])
    op.create_index("idx_events_stream", "events", ["chain_id", "contract_address", "stream_id"])
    op.create_index("idx_events_block_timestamp", "events", ["block_timestamp"])

    op.create_table(
        "streams",
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("id", sa.String(78), nullable=False),
        sa.Column("sender", sa.String(42), nullable=False),
        sa.Column("recipient", sa.String(42), nullable=False),
        sa.Column("token", sa.String(42), nullable=False),
        sa.Column("start", UINT256_INT, nullable=False),
        sa.Column("end", UINT256_INT, nullable=False),
        sa.Column("cliff", UINT256_INT, nullable=False),
        sa.Column("amount", UINT256, nullable=False),
        sa.Column("withdrawn", UINT256, nullable=False),
        sa.Column("canceled", sa.Boolean(), nullable=False),
        sa.Column("refundable", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("chain_id", "contract_address", "id"),
    )
    op.create_index("idx_streams_sender", "streams", ["sender"])
    op.create_index("idx_streams_recipient", "streams", ["recipient"])
    op.create_index("idx_streams_created_at", "streams", ["created_at"])

    op.create_table(
        "withdrawals",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(200), nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("stream_id", sa.String(78), nullable=False),
        sa.Column("recipient", sa.String(42), nullable=False),
        sa.Column("amount", UINT256, nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", name="uq_withdrawals_event"),
        sa.ForeignKeyConstraint(
            ["chain_id", "contract_address", "stream_id"],
            ["streams.chain_id", "streams.contract_address", "streams.id"],
            name="fk_withdrawals_stream",
        ),
    )
    op.create_index(
        "idx_withdrawals_stream", "withdrawals", ["chain_id", "contract_address", "stream_id"]
    )
    op.create_index("idx_withdrawals_recipient", "withdrawals", ["recipient"])

    op.create_table(
        "indexer_state",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("last_processed_block", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("chain_id", "contract_address", name="uq_indexer_state_contract"),
    )


def downgrade() -> None:
    op.drop_table("indexer_state")
    op.drop_index("idx_withdrawals_recipient", table_name="withdrawals")
    op.drop_index("idx_withdrawals_stream", table_name="withdrawals")
    op.drop_table("withdrawals")
    op.drop_index("idx_streams_created_at", table_name="streams")
    op.drop_index("idx_streams_recipient", table_name="streams")
    op.drop_index("idx_streams_sender", table_name="streams")
    op.drop_table("streams")
    op.drop_index("idx_events_block_timestamp", table_name="events")
    op.drop_index("idx_events_stream", table_name="events")
    op.drop_index("idx_events_tx_hash", table_name="events")
    op.drop_table("events")
