"""Intent contracts: the discriminated union every model reply is validated into."""

from __future__ import annotations

from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from app.services.categorization import normalize_category
from app.utils.amounts import is_storable, parse_amount_phrase, to_money

EXPENSE_REQUIRED_FIELDS = ("amount", "description", "category")


def coerce_amount(value: Any) -> Optional[Decimal]:
    """Storable money amount or None; the model may send numbers, strings or junk."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            amount = to_money(stripped)
        except ValueError:
            amount = parse_amount_phrase(stripped)
            if amount is None:
                return None
            amount = to_money(amount)
    else:
        try:
            amount = to_money(value)
        except ValueError:
            return None
    return amount if is_storable(amount) else None


def _blank_to_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ExpenseDraft(_Lenient):
    """One expense as extracted; any field may still be missing."""

    name: Optional[str] = None
    amount: Optional[Decimal] = None
    category: Optional[str] = None
    description: Optional[str] = None
    merchant: Optional[str] = None
    location: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Optional[Decimal]:
        return coerce_amount(v)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v: Any) -> Optional[str]:
        return normalize_category(_blank_to_none(v))

    @field_validator("name", "description", "merchant", "location", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Optional[str]:
        return _blank_to_none(v)

    def missing_fields(self) -> list[str]:
        """Required fields still absent, always in amount -> description -> category order."""
        missing = []
        if self.amount is None:
            missing.append("amount")
        if not (self.name or self.description):
            missing.append("description")
        if self.category is None:
            missing.append("category")
        return missing

    @property
    def label(self) -> str:
        return self.name or self.description or "Expense"


class ExpenseIntent(_Lenient):
    type: Literal["expense"] = "expense"
    items: list[ExpenseDraft] = Field(..., min_length=1)
    is_multiple: bool = False


class IncomeIntent(_Lenient):
    type: Literal["income"] = "income"
    amount: Optional[Decimal] = None
    source: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    frequency: Optional[str] = None
    is_recurring: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("is_recurring", "isRecurring")
    )

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Optional[Decimal]:
        return coerce_amount(v)

    @field_validator("source", "name", "description", "frequency", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Optional[str]:
        return _blank_to_none(v)


class BudgetIntent(_Lenient):
    type: Literal["budget"] = "budget"
    amount: Optional[Decimal] = None
    category: Optional[str] = None
    name: Optional[str] = None
    period: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("period", "periodType", "period_type")
    )
    alert_threshold: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("alert_threshold", "alertThreshold")
    )

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Optional[Decimal]:
        return coerce_amount(v)

    @field_validator("category", "name", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Optional[str]:
        return _blank_to_none(v)

    @field_validator("period", mode="before")
    @classmethod
    def _period(cls, v: Any) -> Optional[str]:
        text = _blank_to_none(v)
        if text is None:
            return None
        text = text.lower()
        return text if text in {"weekly", "monthly", "yearly"} else None

    @field_validator("alert_threshold", mode="before")
    @classmethod
    def _threshold(cls, v: Any) -> Optional[float]:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        if value > 1:
            value /= 100
        return value if 0 < value <= 1 else None


class GoalIntent(_Lenient):
    type: Literal["goal"] = "goal"
    name: Optional[str] = None
    target_amount: Optional[Decimal] = Field(
        default=None, validation_alias=AliasChoices("target_amount", "targetAmount", "amount")
    )
    current_amount: Optional[Decimal] = Field(
        default=None, validation_alias=AliasChoices("current_amount", "currentAmount")
    )
    target_date: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("target_date", "targetDate", "deadline")
    )
    goal_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("goal_type", "goalType"))
    priority: Optional[int] = None

    @field_validator("target_amount", "current_amount", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Optional[Decimal]:
        return coerce_amount(v)

    @field_validator("name", "target_date", "goal_type", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Optional[str]:
        return _blank_to_none(v)

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, v: Any) -> Optional[int]:
        try:
            value = int(v)
        except (TypeError, ValueError):
            return None
        return value if 1 <= value <= 3 else None


class AnalyticsRequest(StrEnum):
    SUMMARY = "summary"
    DASHBOARD = "dashboard"
    BALANCE = "balance"
    SPENDING_ANALYSIS = "spending_analysis"
    INSIGHTS = "insights"


class AdviceRequest(StrEnum):
    INVESTMENT = "investment"
    SAVINGS = "savings"
    BUDGET_RECOMMENDATION = "budget_recommendation"
    FINANCIAL_PLANNING = "financial_planning"
    AFFORDABILITY = "affordability"
    SAVINGS_TIMELINE = "savings_timeline"
    GENERAL = "general"


class AnalyticsIntent(_Lenient):
    type: Literal["analytics"] = "analytics"
    request_type: AnalyticsRequest = Field(
        default=AnalyticsRequest.SUMMARY,
        validation_alias=AliasChoices("request_type", "requestType"),
    )

    @field_validator("request_type", mode="before")
    @classmethod
    def _request_type(cls, v: Any) -> str:
        text = (_blank_to_none(v) or "").lower()
        valid = {r.value for r in AnalyticsRequest}
        return text if text in valid else AnalyticsRequest.SUMMARY.value


class AdviceIntent(_Lenient):
    type: Literal["advice"] = "advice"
    request_type: AdviceRequest = Field(
        default=AdviceRequest.GENERAL,
        validation_alias=AliasChoices("request_type", "requestType"),
    )
    amount: Optional[Decimal] = None
    item: Optional[str] = None

    @field_validator("request_type", mode="before")
    @classmethod
    def _request_type(cls, v: Any) -> str:
        text = (_blank_to_none(v) or "").lower()
        valid = {r.value for r in AdviceRequest}
        return text if text in valid else AdviceRequest.GENERAL.value

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Optional[Decimal]:
        return coerce_amount(v)

    @field_validator("item", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Optional[str]:
        return _blank_to_none(v)


class NoIntent(_Lenient):
    type: Literal["none"] = "none"


FinancialIntent = Annotated[
    Union[ExpenseIntent, IncomeIntent, BudgetIntent, GoalIntent, AnalyticsIntent, AdviceIntent, NoIntent],
    Field(discriminator="type"),
]

INTENT_ADAPTER: TypeAdapter[FinancialIntent] = TypeAdapter(FinancialIntent)

INTENT_TYPES = ("expense", "income", "budget", "goal", "analytics", "advice", "none")


def intent_from_model_output(payload: Any) -> FinancialIntent:
    """Validate a decoded model reply into a ``FinancialIntent``.

    Accepts the envelope ``{"type", "hasData", "data", "isMultiple"}``.
    Raises ``pydantic.ValidationError`` (or ``ValueError``) on shapes that
    cannot be trusted; callers treat that as no intent.
    """
    if not isinstance(payload, dict):
        raise ValueError("Model reply is not a JSON object")

    kind = str(payload.get("type") or "none").strip().lower()
    if kind not in INTENT_TYPES:
        raise ValueError(f"Unknown intent type {kind!r}")
    if kind == "none" or payload.get("hasData") is False:
        return NoIntent()

    data = payload.get("data")
    if kind == "expense":
        items = data if isinstance(data, list) else [data if isinstance(data, dict) else {}]
        candidate: dict[str, Any] = {
            "type": "expense",
            "items": items,
            "is_multiple": bool(payload.get("isMultiple")) or len(items) > 1,
        }
    else:
        candidate = {**(data if isinstance(data, dict) else {}), "type": kind}

    return INTENT_ADAPTER.validate_python(candidate)
