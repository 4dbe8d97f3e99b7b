"""Create plans, companies, users, memberships and usage counters."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "001_create_company_tables"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create the tables the ORM models in ``supportdesk.models`` map onto."""

    op.create_table(
        "plans",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column(
            "ai_responses_per_month",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
    )

    op.create_table(
        "companies",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "plan_id",
            sa.Uuid(),
            sa.ForeignKey("plans.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "ai_personality",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'professional'"),
        ),
        sa.Column(
            "ai_response_length",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'medium'"),
        ),
        sa.Column("ai_system_prompt", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("ai_handoff_triggers", sa.JSON(), nullable=False),
        sa.Column("company_context", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("selected_ai_model", sa.String(length=64), nullable=True),
        sa.Column(
            "ai_responses_this_month",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "usage_warning_sent",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_companies_plan_id", "companies", ["plan_id"])

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        _timestamp("created_at"),
    )

    op.create_table(
        "user_companies",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "company_id",
            sa.Uuid(),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "role",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'customer'"),
        ),
        _timestamp("joined_at"),
    )
    op.create_index(
        "ix_user_companies_user_company_unique",
        "user_companies",
        ["user_id", "company_id"],
        unique=True,
    )
    op.create_index(
        "ix_user_companies_company_role", "user_companies", ["company_id", "role"]
    )

    counters = [
        sa.Column(name, sa.Integer(), nullable=False, server_default=sa.text("0"))
        for name in (
            "ai_response_count",
            "customer_message_count",
            "agent_message_count",
            "conversation_count",
            "handoff_count",
        )
    ]
    op.create_table(
        "usage_records",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            "company_id",
            sa.Uuid(),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("period", sa.String(length=16), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        *counters,
    )
    op.create_index(
        "ix_usage_records_bucket_unique",
        "usage_records",
        ["company_id", "period", "period_start"],
        unique=True,
    )
    op.create_index(
        "ix_usage_records_period_start", "usage_records", ["period", "period_start"]
    )


def downgrade() -> None:
    """Drop the company tables in dependency order."""

    op.drop_index("ix_usage_records_period_start", table_name="usage_records")
    op.drop_index("ix_usage_records_bucket_unique", table_name="usage_records")
    op.drop_table("usage_records")
    op.drop_index("ix_user_companies_company_role", table_name="user_companies")
    op.drop_index("ix_user_companies_user_company_unique", table_name="user_companies")
    op.drop_table("user_companies")
    op.drop_table("users")
    op.drop_index("ix_companies_plan_id", table_name="companies")
    op.drop_table("companies")
    op.drop_table("plans")
