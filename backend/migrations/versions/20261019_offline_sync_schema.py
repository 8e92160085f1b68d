"""Offline sync local store: staged, authoritative, id mapping and abandoned records

Revision ID: 20261019_offline_sync
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_offline_sync"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "staged_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity", sa.String(length=32), nullable=False),
        sa.Column("operation", sa.String(length=8), nullable=False),
        sa.Column("local_id", sa.String(length=64), nullable=True),
        sa.Column("server_id", sa.String(length=64), nullable=True),
        sa.Column("transaction_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("sync_retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("last_sync_attempt", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_modified", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity", "operation", "local_id", name="uq_staged_entity_op_local"),
        sa.UniqueConstraint("entity", "operation", "server_id", name="uq_staged_entity_op_server"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("staged_records", schema=None) as batch_op:
        batch_op.create_index("ix_staged_entity_op", ["entity", "operation"], unique=False)
        batch_op.create_index("ix_staged_entity_txn", ["entity", "transaction_id"], unique=False)

    op.create_table(
        "authoritative_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity", sa.String(length=32), nullable=False),
        sa.Column("server_id", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity", "server_id", name="uq_authoritative_entity_server"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("authoritative_records", schema=None) as batch_op:
        batch_op.create_index("ix_authoritative_records_entity", ["entity"], unique=False)
        batch_op.create_index("ix_authoritative_entity_updated", ["entity", "updated_at"], unique=False)

    op.create_table(
        "id_mappings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity", sa.String(length=32), nullable=False),
        sa.Column("local_id", sa.String(length=64), nullable=False),
        sa.Column("server_id", sa.String(length=64), nullable=False),
        sa.Column("synced_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity", "local_id", name="uq_id_mappings_entity_local"),
        sa.UniqueConstraint("entity", "server_id", name="uq_id_mappings_entity_server"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("id_mappings", schema=None) as batch_op:
        batch_op.create_index("ix_id_mappings_entity", ["entity"], unique=False)

    op.create_table(
        "abandoned_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity", sa.String(length=32), nullable=False),
        sa.Column("operation", sa.String(length=8), nullable=False),
        sa.Column("local_id", sa.String(length=64), nullable=True),
        sa.Column("server_id", sa.String(length=64), nullable=True),
        sa.Column("transaction_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("reason", sa.String(length=32), nullable=False),
        sa.Column("staged_at", sa.DateTime(), nullable=True),
        sa.Column("abandoned_at", sa.DateTime(), nullable=False),
        sa.Column("requeued_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("abandoned_records", schema=None) as batch_op:
        batch_op.create_index("ix_abandoned_records_entity", ["entity"], unique=False)
        batch_op.create_index("ix_abandoned_records_abandoned_at", ["abandoned_at"], unique=False)
        batch_op.create_index("ix_abandoned_entity_at", ["entity", "abandoned_at"], unique=False)


def downgrade():
    op.drop_table("abandoned_records")
    op.drop_table("id_mappings")
    op.drop_table("authoritative_records")
    op.drop_table("staged_records")
