"""finance assistant schema

Revision ID: 20261001_000001
Revises:
Create Date: 2026-10-01 09:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261001_000001"
down_revision = None
branch_labels = None
depends_on = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    # --- expense_categories / income_sources (referenced by entries) ---
    op.create_table(
        "expense_categories",
        _id_column(),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("color", sa.String(7), nullable=False, server_default=sa.text("'#B8B8B8'")),
        sa.Column("icon", sa.String(50), nullable=False, server_default=sa.text("'other'")),
        sa.Column("budget_limit", sa.Numeric(12, 2)),
        _created_at(),
        sa.UniqueConstraint("user_id", "name", name="uniq_category_user_name"),
    )
    op.create_index("idx_expense_categories_user", "expense_categories", ["user_id"])

    op.create_table(
        "income_sources",
        _id_column(),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("source_type", sa.String(50), nullable=False, server_default=sa.text("'other'")),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
    )
    op.create_index("idx_income_sources_user", "income_sources", ["user_id"])

    # --- expenses / income ---
    op.create_table(
        "expenses",
        _id_column(),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "category_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("expense_categories.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("merchant", sa.String(255)),
        sa.Column("location", sa.String(255)),
        sa.Column("provenance", sa.String(16), nullable=False, server_default=sa.text("'chat'")),
        sa.Column("ai_confidence", sa.Numeric(3, 2)),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("expense_date", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.CheckConstraint("amount > 0", name="chk_expense_amount_positive"),
        sa.CheckConstraint(
            "provenance IN ('manual','chat','voice','receipt','import')",
            name="chk_expense_provenance",
        ),
    )
    op.create_index("idx_expenses_user_date", "expenses", ["user_id", "expense_date"])
    op.create_index("idx_expenses_category", "expenses", ["category_id"])

    op.create_table(
        "income",
        _id_column(),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "source_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("income_sources.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("provenance", sa.String(16), nullable=False, server_default=sa.text("'chat'")),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("income_date", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.CheckConstraint("amount > 0", name="chk_income_amount_positive"),
    )
    op.create_index("idx_income_user_date", "income", ["user_id", "income_date"])

    # --- budgets / financial_goals ---
    op.create_table(
        "budgets",
        _id_column(),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "category_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("expense_categories.id", ondelete="SET NULL"),
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("period_type", sa.String(20), nullable=False, server_default=sa.text("'monthly'")),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("alert_threshold", sa.Numeric(3, 2), nullable=False, server_default=sa.text("0.80")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.CheckConstraint("amount > 0", name="chk_budget_amount_positive"),
        sa.CheckConstraint("period_type IN ('weekly','monthly','yearly')", name="chk_budget_period"),
    )
    op.create_index("idx_budgets_user", "budgets", ["user_id"])

    op.create_table(
        "financial_goals",
        _id_column(),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("target_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("current_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("target_date", sa.Date()),
        sa.Column("goal_type", sa.String(50), nullable=False, server_default=sa.text("'savings'")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("2")),
        sa.Column("is_achieved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
        sa.CheckConstraint("target_amount > 0", name="chk_goal_target_positive"),
        sa.CheckConstraint("priority BETWEEN 1 AND 3", name="chk_goal_priority"),
    )
    op.create_index("idx_goals_user", "financial_goals", ["user_id"])

    # --- conversation ---
    op.create_table(
        "chat_messages",
        _id_column(),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("response", sa.Text()),
        sa.Column("intent", sa.String(100)),
        sa.Column("context", postgresql.JSONB()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_chat_messages_user_date", "chat_messages", ["user_id", "created_at"])

    op.create_table(
        "pending_operations",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column("fields", postgresql.JSONB(), nullable=False),
        sa.Column("missing_fields", postgresql.JSONB(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_pending_operations_expires", "pending_operations", ["expires_at"])

    # --- ai_interactions ---
    op.create_table(
        "ai_interactions",
        _id_column(),
        sa.Column("user_id", sa.String(64)),
        sa.Column("task", sa.String(64), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("completion_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("latency_ms", sa.Numeric(10, 2)),
        sa.Column("error_message", sa.Text()),
        sa.Column("metadata", postgresql.JSONB()),
        _created_at(),
    )
    op.create_index("idx_ai_interactions_user", "ai_interactions", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_ai_interactions_user", table_name="ai_interactions")
    op.drop_table("ai_interactions")
    op.drop_index("idx_pending_operations_expires", table_name="pending_operations")
    op.drop_table("pending_operations")
    op.drop_index("idx_chat_messages_user_date", table_name="chat_messages")
    op.drop_table("chat_messages")
    op.drop_index("idx_goals_user", table_name="financial_goals")
    op.drop_table("financial_goals")
    op.drop_index("idx_budgets_user", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("idx_income_user_date", table_name="income")
    op.drop_table("income")
    op.drop_index("idx_expenses_category", table_name="expenses")
    op.drop_index("idx_expenses_user_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("idx_income_sources_user", table_name="income_sources")
    op.drop_table("income_sources")
    op.drop_index("idx_expense_categories_user", table_name="expense_categories")
    op.drop_table("expense_categories")
