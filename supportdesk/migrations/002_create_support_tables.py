"""Create conversations, messages, presence and rate limit buckets."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "002_create_support_tables"
down_revision = "001_create_company_tables"
branch_labels = None
depends_on = None


_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
_AGENTS = sa.JSON().with_variant(postgresql.ARRAY(sa.Uuid()), "postgresql")
_REQUESTS = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_OPEN_ONLY = sa.text("status <> 'resolved'")


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create the raw-SQL tables used by the psycopg repositories."""

    op.create_table(
        "conversations",
        sa.Column("id", _ID, primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "company_id",
            sa.Uuid(),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'ai_handling'"),
        ),
        sa.Column(
            "participating_agents",
            _AGENTS,
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column("ai_processing", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("ai_processing_started_at", nullable=True),
        sa.Column("ai_failure_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("handoff_triggered_at", nullable=True),
        sa.Column("handoff_reason", sa.Text(), nullable=True),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("first_message_at", nullable=True),
        _timestamp("last_message_at", nullable=True),
        _timestamp("last_agent_message", nullable=True),
        _timestamp("resolved_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    # one open conversation per customer and company
    op.create_index(
        "ix_conversations_open_customer_unique",
        "conversations",
        ["company_id", "customer_id"],
        unique=True,
        postgresql_where=_OPEN_ONLY,
        sqlite_where=_OPEN_ONLY,
    )
    op.create_index(
        "ix_conversations_company_status_updated",
        "conversations",
        ["company_id", "status", "updated_at"],
    )

    op.create_table(
        "messages",
        sa.Column("id", _ID, primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "conversation_id",
            _ID,
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        _timestamp("timestamp"),
        sa.Column("attachment_url", sa.Text(), nullable=True),
        sa.Column("attachment_type", sa.String(length=128), nullable=True),
        _timestamp("read_by_agent_at", nullable=True),
        _timestamp("read_by_customer_at", nullable=True),
        sa.Column("ai_model", sa.String(length=64), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("agent_id", sa.Uuid(), nullable=True),
        sa.Column("agent_name", sa.String(length=255), nullable=True),
        sa.Column("system_message_type", sa.String(length=32), nullable=True),
    )
    op.create_index(
        "ix_messages_conversation_timestamp",
        "messages",
        ["company_id", "conversation_id", "timestamp", "id"],
    )

    op.create_table(
        "presence",
        sa.Column("user_id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("user_role", sa.String(length=32), nullable=False),
        sa.Column("is_typing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("typing_in_conversation", _ID, nullable=True),
        _timestamp("typing_started_at", nullable=True),
        sa.Column("viewing_conversation", _ID, nullable=True),
        _timestamp("heartbeat_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_presence_company_expires", "presence", ["company_id", "expires_at"])
    op.create_index("ix_presence_expires", "presence", ["expires_at"])

    op.create_table(
        "rate_limit_buckets",
        sa.Column("key", sa.String(length=255), primary_key=True, nullable=False),
        sa.Column("limit_type", sa.String(length=32), nullable=False),
        sa.Column("identifier", sa.String(length=255), nullable=False),
        sa.Column("requests", _REQUESTS, nullable=False),
        _timestamp("blocked_until", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_rate_limit_buckets_updated_at", "rate_limit_buckets", ["updated_at"])


def downgrade() -> None:
    """Drop the support tables."""

    op.drop_index("ix_rate_limit_buckets_updated_at", table_name="rate_limit_buckets")
    op.drop_table("rate_limit_buckets")
    op.drop_index("ix_presence_expires", table_name="presence")
    op.drop_index("ix_presence_company_expires", table_name="presence")
    op.drop_table("presence")
    op.drop_index("ix_messages_conversation_timestamp", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_company_status_updated", table_name="conversations")
    op.drop_index("ix_conversations_open_customer_unique", table_name="conversations")
    op.drop_table("conversations")
