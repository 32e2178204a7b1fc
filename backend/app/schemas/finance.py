from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class EntryKind(StrEnum):
    EXPENSE = "expense"
    INCOME = "income"


class Provenance(StrEnum):
    MANUAL = "manual"
    CHAT = "chat"
    VOICE = "voice"
    RECEIPT = "receipt"
    IMPORT = "import"


class SpendingCategory(StrEnum):
    FOOD = "food"
    TRANSPORT = "transport"
    ENTERTAINMENT = "entertainment"
    SHOPPING = "shopping"
    BILLS = "bills"
    HEALTHCARE = "healthcare"
    UTILITIES = "utilities"
    EDUCATION = "education"
    OTHER = "other"


FALLBACK_CATEGORY = SpendingCategory.OTHER.value


class IncomeSourceType(StrEnum):
    SALARY = "salary"
    FREELANCE = "freelance"
    BUSINESS = "business"
    INVESTMENT = "investment"
    RENTAL = "rental"
    OTHER = "other"


# --- Entries ---


class FinancialEntry(BaseModel):
    """A committed expense or income record."""

    id: Optional[str] = None
    kind: EntryKind
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    category: str = FALLBACK_CATEGORY
    name: str
    description: Optional[str] = None
    merchant: Optional[str] = None
    occurred_at: datetime
    provenance: Provenance = Provenance.CHAT
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    is_recurring: bool = False


class BudgetEntry(BaseModel):
    id: Optional[str] = None
    name: str
    amount: Decimal = Field(..., gt=0)
    category: Optional[str] = None
    period_type: Literal["weekly", "monthly", "yearly"] = "monthly"
    start_date: date
    alert_threshold: float = Field(default=0.8, gt=0.0, le=1.0)


class GoalEntry(BaseModel):
    id: Optional[str] = None
    name: str
    target_amount: Decimal = Field(..., gt=0)
    current_amount: Decimal = Field(default=Decimal("0"), ge=0)
    target_date: date
    goal_type: str = "savings"
    priority: int = Field(default=2, ge=1, le=3)


class AggregateSnapshot(BaseModel):
    balance: Decimal
    total_income: Decimal
    total_expenses: Decimal
    expense_count: int = 0
    income_count: int = 0


class ConversationTurn(BaseModel):
    user_text: str
    response_text: str
    intent: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


# --- Statement import ---


class ImportTotals(BaseModel):
    expenses: Decimal = Decimal("0")
    income: Decimal = Decimal("0")
    per_category: dict[str, Decimal] = Field(default_factory=dict)


class ImportSummary(BaseModel):
    success: bool = False
    processed_count: int = 0
    imported_count: int = 0
    skipped_count: int = 0
    errors: list[str] = Field(default_factory=list)
    totals: ImportTotals = Field(default_factory=ImportTotals)


class StatementImportResponse(BaseModel):
    summary: ImportSummary
    report: str


# --- Chat surface ---


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    source: Literal["chat", "voice"] = "chat"


class ReceiptRequest(BaseModel):
    image_base64: str = Field(..., min_length=16)


class ChatResponse(BaseModel):
    response: str
    action: str
    data: Optional[dict[str, Any]] = None


class ChatHistoryResponse(BaseModel):
    items: list[ConversationTurn]
