"""Create launches, lp_positions and scan_cursors.

uint256 amounts (raised, sold, liquidity, owed amounts, token ids) are
stored as decimal strings so no backend loses precision.

Revision ID: a1c4e7f2b9d0
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "a1c4e7f2b9d0"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "launches",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("token", sa.String(42), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("symbol", sa.String(64), nullable=False, server_default=""),
        sa.Column("media_uri", sa.String(1000), nullable=True),
        sa.Column("creator", sa.String(42), nullable=False, server_default=""),
        sa.Column("quote_asset", sa.String(42), nullable=False, server_default=""),
        sa.Column("timestamp", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("block_number", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("raised", sa.String(80), nullable=False, server_default="0"),
        sa.Column("base_sold", sa.String(80), nullable=False, server_default="0"),
        sa.Column("progress", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("chain_id", "token"),
    )
    op.create_index("idx_launches_status", "launches", ["chain_id", "status"])
    op.create_index("idx_launches_timestamp", "launches", ["chain_id", "timestamp"])

    op.create_table(
        "lp_positions",
        sa.Column("owner", sa.String(42), nullable=False),
        sa.Column("token_id", sa.String(80), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("token0", sa.String(42), nullable=False, server_default=""),
        sa.Column("token1", sa.String(42), nullable=False, server_default=""),
        sa.Column("fee", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tick_lower", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tick_upper", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("liquidity", sa.String(80), nullable=False, server_default="0"),
        sa.Column("tokens_owed0", sa.String(80), nullable=False, server_default="0"),
        sa.Column("tokens_owed1", sa.String(80), nullable=False, server_default="0"),
        sa.Column("pool", sa.String(42), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("last_seen_block", sa.BigInteger(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("owner", "token_id", "chain_id"),
    )
    op.create_index(
        "idx_lp_positions_owner_status", "lp_positions", ["chain_id", "owner", "status"]
    )

    op.create_table(
        "scan_cursors",
        sa.Column("index_key", sa.String(128), primary_key=True),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("scan_cursors")
    op.drop_index("idx_lp_positions_owner_status", table_name="lp_positions")
    op.drop_table("lp_positions")
    op.drop_index("idx_launches_timestamp", table_name="launches")
    op.drop_index("idx_launches_status", table_name="launches")
    op.drop_table("launches")
