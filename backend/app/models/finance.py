import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")

# User ids come from the identity provider's token subject and are not owned here.
USER_ID_TYPE = String(64)


def _pk():
    return Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )


class ExpenseCategory(Base):
    __tablename__ = "expense_categories"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uniq_category_user_name"),
        Index("idx_expense_categories_user", "user_id"),
    )

    id = _pk()
    user_id = Column(USER_ID_TYPE, nullable=False)
    name = Column(String(100), nullable=False)
    color = Column(String(7), nullable=False, default="#B8B8B8", server_default=text("'#B8B8B8'"))
    icon = Column(String(50), nullable=False, default="other", server_default=text("'other'"))
    budget_limit = Column(Numeric(12, 2))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class IncomeSource(Base):
    __tablename__ = "income_sources"
    __table_args__ = (Index("idx_income_sources_user", "user_id"),)

    id = _pk()
    user_id = Column(USER_ID_TYPE, nullable=False)
    name = Column(String(100), nullable=False)
    source_type = Column(String(50), nullable=False, default="other", server_default=text("'other'"))
    is_recurring = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Expense(Base):
    __tablename__ = "expenses"
    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_expense_amount_positive"),
        CheckConstraint(
            "provenance IN ('manual','chat','voice','receipt','import')",
            name="chk_expense_provenance",
        ),
        Index("idx_expenses_user_date", "user_id", "expense_date"),
        Index("idx_expenses_category", "category_id"),
    )

    id = _pk()
    user_id = Column(USER_ID_TYPE, nullable=False)
    category_id = Column(UUID_TYPE, ForeignKey("expense_categories.id", ondelete="SET NULL"))
    name = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    description = Column(Text)
    merchant = Column(String(255))
    location = Column(String(255))
    provenance = Column(String(16), nullable=False, default="chat", server_default=text("'chat'"))
    ai_confidence = Column(Numeric(3, 2))
    is_recurring = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    expense_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Income(Base):
    __tablename__ = "income"
    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_income_amount_positive"),
        Index("idx_income_user_date", "user_id", "income_date"),
    )

    id = _pk()
    user_id = Column(USER_ID_TYPE, nullable=False)
    source_id = Column(UUID_TYPE, ForeignKey("income_sources.id", ondelete="SET NULL"))
    name = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    description = Column(Text)
    provenance = Column(String(16), nullable=False, default="chat", server_default=text("'chat'"))
    is_recurring = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    income_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Budget(Base):
    __tablename__ = "budgets"
    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_budget_amount_positive"),
        CheckConstraint("period_type IN ('weekly','monthly','yearly')", name="chk_budget_period"),
        Index("idx_budgets_user", "user_id"),
    )

    id = _pk()
    user_id = Column(USER_ID_TYPE, nullable=False)
    category_id = Column(UUID_TYPE, ForeignKey("expense_categories.id", ondelete="SET NULL"))
    name = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    period_type = Column(String(20), nullable=False, default="monthly", server_default=text("'monthly'"))
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    alert_threshold = Column(Numeric(3, 2), nullable=False, default=0.8, server_default=text("0.80"))
    is_active = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class FinancialGoal(Base):
    __tablename__ = "financial_goals"
    __table_args__ = (
        CheckConstraint("target_amount > 0", name="chk_goal_target_positive"),
        CheckConstraint("priority BETWEEN 1 AND 3", name="chk_goal_priority"),
        Index("idx_goals_user", "user_id"),
    )

    id = _pk()
    user_id = Column(USER_ID_TYPE, nullable=False)
    name = Column(String(255), nullable=False)
    target_amount = Column(Numeric(12, 2), nullable=False)
    current_amount = Column(Numeric(12, 2), nullable=False, default=0, server_default=text("0"))
    target_date = Column(Date)
    goal_type = Column(String(50), nullable=False, default="savings", server_default=text("'savings'"))
    priority = Column(Integer, nullable=False, default=2, server_default=text("2"))
    is_achieved = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (Index("idx_chat_messages_user_date", "user_id", "created_at"),)

    id = _pk()
    user_id = Column(USER_ID_TYPE, nullable=False)
    message = Column(Text, nullable=False)
    response = Column(Text)
    intent = Column(String(100))
    context = Column(JSON_TYPE)
    created_at = Column(DateTime(timezone=True), nullable=False)


class AiInteraction(Base):
    __tablename__ = "ai_interactions"
    __table_args__ = (Index("idx_ai_interactions_user", "user_id", "created_at"),)

    id = _pk()
    user_id = Column(USER_ID_TYPE)
    task = Column(String(64), nullable=False)
    provider = Column(String(32), nullable=False)
    model = Column(String(100), nullable=False)
    success = Column(Boolean, nullable=False, default=True, server_default=text("true"))
    prompt_tokens = Column(Integer, nullable=False, default=0, server_default=text("0"))
    completion_tokens = Column(Integer, nullable=False, default=0, server_default=text("0"))
    latency_ms = Column(Numeric(10, 2))
    error_message = Column(Text)
    interaction_meta = Column("metadata", JSON_TYPE)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PendingOperationRow(Base):
    __tablename__ = "pending_operations"
    __table_args__ = (Index("idx_pending_operations_expires", "expires_at"),)

    user_id = Column(USER_ID_TYPE, primary_key=True)
    fields = Column(JSON_TYPE, nullable=False)
    missing_fields = Column(JSON_TYPE, nullable=False)
    expires_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), nullable=False)
