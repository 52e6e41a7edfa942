"""Initial schema: preference registry, delivery records, brief queue

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

NOTIFY_CHANNEL = "user_preferences_changed"


def upgrade() -> None:
    op.create_table(
        "user_preferences",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("delivery_time", sa.String(8), nullable=True),
        sa.Column("recipient_id", sa.String(64), nullable=True),
        sa.Column("contact_address", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_preferences_user_id", "user_preferences", ["user_id"], unique=True)

    op.create_table(
        "delivery_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("source", sa.String(20), nullable=False, server_default="trigger"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_delivery_records_user_created", "delivery_records", ["user_id", "created_at"]
    )

    op.create_table(
        "brief_queue",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "scheduled_at", name="uq_brief_queue_user_minute"),
    )
    op.create_index("ix_brief_queue_user_id", "brief_queue", ["user_id"])
    op.create_index("ix_brief_queue_scheduled_at", "brief_queue", ["scheduled_at"])
    op.create_index("ix_brief_queue_status", "brief_queue", ["status"])

    # Change notifications for the scheduler's LISTEN stream (PostgreSQL only)
    if op.get_bind().dialect.name == "postgresql":
        op.execute(f"""
            CREATE OR REPLACE FUNCTION notify_user_preferences_changed() RETURNS trigger AS $$
            BEGIN
                PERFORM pg_notify('{NOTIFY_CHANNEL}', COALESCE(NEW.user_id, OLD.user_id));
                RETURN NULL;
            END;
            $$ LANGUAGE plpgsql;
        """)
        op.execute("""
            CREATE TRIGGER user_preferences_changed
            AFTER INSERT OR UPDATE OR DELETE ON user_preferences
            FOR EACH ROW EXECUTE FUNCTION notify_user_preferences_changed();
        """)


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS user_preferences_changed ON user_preferences")
        op.execute("DROP FUNCTION IF EXISTS notify_user_preferences_changed()")

    op.drop_index("ix_brief_queue_status", table_name="brief_queue")
    op.drop_index("ix_brief_queue_scheduled_at", table_name="brief_queue")
    op.drop_index("ix_brief_queue_user_id", table_name="brief_queue")
    op.drop_table("brief_queue")
    op.drop_index("ix_delivery_records_user_created", table_name="delivery_records")
    op.drop_table("delivery_records")
    op.drop_index("ix_user_preferences_user_id", table_name="user_preferences")
    op.drop_table("user_preferences")
