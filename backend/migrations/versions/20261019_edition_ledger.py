"""Edition ledger tables

Revision ID: 20261019_edition_ledger
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_edition_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "product_editions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("edition_size", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_id", name="uq_product_editions_product_id"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("line_item_id", sa.String(64), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("order_name", sa.String(64), nullable=True),
        sa.Column("title", sa.String(255), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="inactive"),
        sa.Column("status_reason", sa.String(32), nullable=False, server_default="order_unpaid"),
        sa.Column("edition_number", sa.Integer(), nullable=True),
        sa.Column("edition_total", sa.Integer(), nullable=True),
        sa.Column("manual_override", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("refunded_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_restocked", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("financial_status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("order_cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("owner_email", sa.String(255), nullable=True),
        sa.Column("owner_name", sa.String(255), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("line_item_id", name="uq_ledger_entries_line_item_id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("ledger_entries", schema=None) as batch_op:
        batch_op.create_index("ix_ledger_entries_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_ledger_entries_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_ledger_entries_owner_email", ["owner_email"], unique=False)
        batch_op.create_index("ix_ledger_entries_product_status", ["product_id", "status"], unique=False)
        batch_op.create_index("ix_ledger_entries_product_edition", ["product_id", "edition_number"], unique=False)

    op.create_table(
        "edition_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("line_item_id", sa.String(64), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("status_reason", sa.String(32), nullable=True),
        sa.Column("edition_number", sa.Integer(), nullable=True),
        sa.Column("source", sa.String(32), nullable=True),
        sa.Column("actor", sa.String(255), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("edition_events", schema=None) as batch_op:
        batch_op.create_index("ix_edition_events_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_edition_events_event_type", ["event_type"], unique=False)
        batch_op.create_index("ix_edition_events_line_item_created", ["line_item_id", "created_at"], unique=False)

    op.create_table(
        "order_snapshots",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("order_name", sa.String(64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", name="uq_order_snapshots_order_id"),
        sqlite_autoincrement=True,
    )


def downgrade():
    op.drop_table("order_snapshots")

    with op.batch_alter_table("edition_events", schema=None) as batch_op:
        batch_op.drop_index("ix_edition_events_line_item_created")
        batch_op.drop_index("ix_edition_events_event_type")
        batch_op.drop_index("ix_edition_events_product_id")
    op.drop_table("edition_events")

    with op.batch_alter_table("ledger_entries", schema=None) as batch_op:
        batch_op.drop_index("ix_ledger_entries_product_edition")
        batch_op.drop_index("ix_ledger_entries_product_status")
        batch_op.drop_index("ix_ledger_entries_owner_email")
        batch_op.drop_index("ix_ledger_entries_order_id")
        batch_op.drop_index("ix_ledger_entries_product_id")
    op.drop_table("ledger_entries")

    op.drop_table("product_editions")
