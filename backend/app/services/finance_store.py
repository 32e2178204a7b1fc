"""Persistence collaborator for committed entries, budgets, goals and turns.

``SqlFinanceStore`` is the production strategy; ``InMemoryFinanceStore`` is the
test double that follows the same contract.
"""

from __future__ import annotations

import abc
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.finance import (
    Budget,
    ChatMessage,
    Expense,
    ExpenseCategory,
    FinancialGoal,
    Income,
    IncomeSource,
)
from app.schemas.finance import (
    FALLBACK_CATEGORY,
    AggregateSnapshot,
    BudgetEntry,
    ConversationTurn,
    EntryKind,
    FinancialEntry,
    GoalEntry,
    IncomeSourceType,
)
from app.utils.amounts import to_money

logger = logging.getLogger(__name__)

CATEGORY_STYLE = {
    "food": ("#FF6B6B", "utensils"),
    "transport": ("#4ECDC4", "car"),
    "entertainment": ("#45B7D1", "film"),
    "shopping": ("#96CEB4", "bag"),
    "bills": ("#FFEAA7", "receipt"),
    "healthcare": ("#DDA0DD", "hospital"),
    "utilities": ("#98D8C8", "bolt"),
    "education": ("#F7B267", "book"),
    FALLBACK_CATEGORY: ("#B8B8B8", "card"),
}

ZERO = Decimal("0.00")


class PersistenceError(Exception):
    """A storage write or read failed; the message is safe to show to users."""


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timezone-aware UTC; naive values (SQLite) are taken to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FinanceStore(abc.ABC):
    @abc.abstractmethod
    def save_expense(self, user_id: str, entry: FinancialEntry) -> FinancialEntry: ...

    @abc.abstractmethod
    def save_income(self, user_id: str, entry: FinancialEntry) -> FinancialEntry: ...

    @abc.abstractmethod
    def save_budget(self, user_id: str, budget: BudgetEntry) -> BudgetEntry: ...

    @abc.abstractmethod
    def save_goal(self, user_id: str, goal: GoalEntry) -> GoalEntry: ...

    @abc.abstractmethod
    def list_expenses(
        self, user_id: str, *, category: Optional[str] = None, limit: Optional[int] = None
    ) -> list[FinancialEntry]:
        """Newest first."""

    @abc.abstractmethod
    def list_income(self, user_id: str, *, limit: Optional[int] = None) -> list[FinancialEntry]:
        """Newest first."""

    @abc.abstractmethod
    def aggregate_snapshot(self, user_id: str) -> AggregateSnapshot: ...

    @abc.abstractmethod
    def count_budgets(self, user_id: str) -> int: ...

    @abc.abstractmethod
    def count_goals(self, user_id: str) -> int: ...

    @abc.abstractmethod
    def append_turn(self, user_id: str, turn: ConversationTurn) -> None: ...

    @abc.abstractmethod
    def recent_turns(self, user_id: str, limit: int) -> list[ConversationTurn]:
        """The last *limit* turns, oldest first."""

    def save_entry(self, user_id: str, entry: FinancialEntry) -> FinancialEntry:
        if entry.kind == EntryKind.INCOME:
            return self.save_income(user_id, entry)
        return self.save_expense(user_id, entry)


def _normalized(entry: FinancialEntry) -> dict[str, Any]:
    return {
        "amount": to_money(entry.amount),
        "occurred_at": as_utc(entry.occurred_at),
        "category": (entry.category or FALLBACK_CATEGORY).strip().lower(),
    }


class SqlFinanceStore(FinanceStore):
    def __init__(self, db: Session) -> None:
        self._db = db

    def _commit(self, what: str) -> None:
        try:
            self._db.commit()
        except SQLAlchemyError as exc:
            self._db.rollback()
            logger.exception("Failed to save %s", what)
            raise PersistenceError(f"could not save the {what}") from exc

    def _category(self, user_id: str, name: str) -> ExpenseCategory:
        row = self._db.execute(
            select(ExpenseCategory).where(
                ExpenseCategory.user_id == user_id,
                func.lower(ExpenseCategory.name) == name.lower(),
            )
        ).scalar_one_or_none()
        if row is None:
            color, icon = CATEGORY_STYLE.get(name, CATEGORY_STYLE[FALLBACK_CATEGORY])
            row = ExpenseCategory(id=uuid.uuid4(), user_id=user_id, name=name, color=color, icon=icon)
            self._db.add(row)
            self._db.flush()
        return row

    def _source(self, user_id: str, source_type: str, is_recurring: bool) -> IncomeSource:
        row = self._db.execute(
            select(IncomeSource).where(
                IncomeSource.user_id == user_id,
                IncomeSource.source_type == source_type,
            )
        ).scalars().first()
        if row is None:
            row = IncomeSource(
                id=uuid.uuid4(),
                user_id=user_id,
                name=source_type,
                source_type=source_type,
                is_recurring=is_recurring,
            )
            self._db.add(row)
            self._db.flush()
        return row

    def save_expense(self, user_id: str, entry: FinancialEntry) -> FinancialEntry:
        values = _normalized(entry)
        try:
            category = self._category(user_id, values["category"])
            row = Expense(
                id=uuid.uuid4(),
                user_id=user_id,
                category_id=category.id,
                name=entry.name[:255],
                amount=values["amount"],
                description=entry.description,
                merchant=entry.merchant,
                provenance=entry.provenance.value,
                ai_confidence=entry.confidence,
                is_recurring=entry.is_recurring,
                expense_date=values["occurred_at"],
            )
            self._db.add(row)
        except SQLAlchemyError as exc:
            self._db.rollback()
            raise PersistenceError("could not save the expense") from exc
        self._commit("expense")
        logger.info("Saved expense id=%s user=%s amount=%s", row.id, user_id, values["amount"])
        return entry.model_copy(update={"id": str(row.id), **values})

    def save_income(self, user_id: str, entry: FinancialEntry) -> FinancialEntry:
        values = _normalized(entry)
        source_type = values["category"] or IncomeSourceType.OTHER.value
        try:
            source = self._source(user_id, source_type, entry.is_recurring)
            row = Income(
                id=uuid.uuid4(),
                user_id=user_id,
                source_id=source.id,
                name=entry.name[:255],
                amount=values["amount"],
                description=entry.description,
                provenance=entry.provenance.value,
                is_recurring=entry.is_recurring,
                income_date=values["occurred_at"],
            )
            self._db.add(row)
        except SQLAlchemyError as exc:
            self._db.rollback()
            raise PersistenceError("could not save the income") from exc
        self._commit("income")
        logger.info("Saved income id=%s user=%s amount=%s", row.id, user_id, values["amount"])
        return entry.model_copy(update={"id": str(row.id), **values})

    def save_budget(self, user_id: str, budget: BudgetEntry) -> BudgetEntry:
        try:
            category_id = self._category(user_id, budget.category.lower()).id if budget.category else None
            row = Budget(
                id=uuid.uuid4(),
                user_id=user_id,
                category_id=category_id,
                name=budget.name[:255],
                amount=to_money(budget.amount),
                period_type=budget.period_type,
                start_date=budget.start_date,
                alert_threshold=Decimal(str(budget.alert_threshold)),
            )
            self._db.add(row)
        except SQLAlchemyError as exc:
            self._db.rollback()
            raise PersistenceError("could not save the budget") from exc
        self._commit("budget")
        return budget.model_copy(update={"id": str(row.id), "amount": to_money(budget.amount)})

    def save_goal(self, user_id: str, goal: GoalEntry) -> GoalEntry:
        row = FinancialGoal(
            id=uuid.uuid4(),
            user_id=user_id,
            name=goal.name[:255],
            target_amount=to_money(goal.target_amount),
            current_amount=to_money(goal.current_amount),
            target_date=goal.target_date,
            goal_type=goal.goal_type,
            priority=goal.priority,
        )
        self._db.add(row)
        self._commit("goal")
        return goal.model_copy(update={"id": str(row.id), "target_amount": to_money(goal.target_amount)})

    def list_expenses(
        self, user_id: str, *, category: Optional[str] = None, limit: Optional[int] = None
    ) -> list[FinancialEntry]:
        stmt = (
            select(Expense, ExpenseCategory.name)
            .outerjoin(ExpenseCategory, Expense.category_id == ExpenseCategory.id)
            .where(Expense.user_id == user_id)
            .order_by(Expense.expense_date.desc())
        )
        if category:
            stmt = stmt.where(func.lower(ExpenseCategory.name) == category.lower())
        if limit:
            stmt = stmt.limit(limit)
        try:
            rows = self._db.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise PersistenceError("could not load expenses") from exc
        return [
            FinancialEntry(
                id=str(row.id),
                kind=EntryKind.EXPENSE,
                amount=to_money(row.amount),
                category=category_name or FALLBACK_CATEGORY,
                name=row.name,
                description=row.description,
                merchant=row.merchant,
                occurred_at=as_utc(row.expense_date),
                provenance=row.provenance,
                confidence=float(row.ai_confidence) if row.ai_confidence is not None else None,
                is_recurring=bool(row.is_recurring),
            )
            for row, category_name in rows
        ]

    def list_income(self, user_id: str, *, limit: Optional[int] = None) -> list[FinancialEntry]:
        stmt = (
            select(Income, IncomeSource.source_type)
            .outerjoin(IncomeSource, Income.source_id == IncomeSource.id)
            .where(Income.user_id == user_id)
            .order_by(Income.income_date.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        try:
            rows = self._db.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise PersistenceError("could not load income") from exc
        return [
            FinancialEntry(
                id=str(row.id),
                kind=EntryKind.INCOME,
                amount=to_money(row.amount),
                category=source_type or IncomeSourceType.OTHER.value,
                name=row.name,
                description=row.description,
                occurred_at=as_utc(row.income_date),
                provenance=row.provenance,
                is_recurring=bool(row.is_recurring),
            )
            for row, source_type in rows
        ]

    def aggregate_snapshot(self, user_id: str) -> AggregateSnapshot:
        try:
            expense_total, expense_count = self._db.execute(
                select(func.coalesce(func.sum(Expense.amount), 0), func.count(Expense.id)).where(
                    Expense.user_id == user_id
                )
            ).one()
            income_total, income_count = self._db.execute(
                select(func.coalesce(func.sum(Income.amount), 0), func.count(Income.id)).where(
                    Income.user_id == user_id
                )
            ).one()
        except SQLAlchemyError as exc:
            raise PersistenceError("could not load your totals") from exc
        total_expenses = to_money(expense_total)
        total_income = to_money(income_total)
        return AggregateSnapshot(
            balance=total_income - total_expenses,
            total_income=total_income,
            total_expenses=total_expenses,
            expense_count=expense_count,
            income_count=income_count,
        )

    def count_budgets(self, user_id: str) -> int:
        return self._db.execute(
            select(func.count(Budget.id)).where(Budget.user_id == user_id, Budget.is_active.is_(True))
        ).scalar_one()

    def count_goals(self, user_id: str) -> int:
        return self._db.execute(
            select(func.count(FinancialGoal.id)).where(
                FinancialGoal.user_id == user_id, FinancialGoal.is_achieved.is_(False)
            )
        ).scalar_one()

    def append_turn(self, user_id: str, turn: ConversationTurn) -> None:
        dumped = turn.model_dump(mode="json")
        self._db.add(
            ChatMessage(
                id=uuid.uuid4(),
                user_id=user_id,
                message=turn.user_text,
                response=turn.response_text,
                intent=turn.intent,
                context=dumped["payload"],
                created_at=as_utc(turn.created_at),
            )
        )
        self._commit("conversation turn")

    def recent_turns(self, user_id: str, limit: int) -> list[ConversationTurn]:
        if limit <= 0:
            return []
        rows = self._db.execute(
            select(ChatMessage)
            .where(ChatMessage.user_id == user_id)
            .order_by(ChatMessage.created_at.desc())
            .limit(limit)
        ).scalars().all()
        return [
            ConversationTurn(
                user_text=row.message,
                response_text=row.response or "",
                intent=row.intent,
                payload=row.context or {},
                created_at=as_utc(row.created_at),
            )
            for row in reversed(rows)
        ]


class InMemoryFinanceStore(FinanceStore):
    """Dict-backed store with the same contract, for tests and local runs."""

    def __init__(self) -> None:
        self.expenses: dict[str, list[FinancialEntry]] = {}
        self.income: dict[str, list[FinancialEntry]] = {}
        self.budgets: dict[str, list[BudgetEntry]] = {}
        self.goals: dict[str, list[GoalEntry]] = {}
        self.turns: dict[str, list[ConversationTurn]] = {}

    def save_expense(self, user_id: str, entry: FinancialEntry) -> FinancialEntry:
        saved = entry.model_copy(update={"id": str(uuid.uuid4()), **_normalized(entry)})
        self.expenses.setdefault(user_id, []).append(saved)
        return saved

    def save_income(self, user_id: str, entry: FinancialEntry) -> FinancialEntry:
        saved = entry.model_copy(update={"id": str(uuid.uuid4()), **_normalized(entry)})
        self.income.setdefault(user_id, []).append(saved)
        return saved

    def save_budget(self, user_id: str, budget: BudgetEntry) -> BudgetEntry:
        saved = budget.model_copy(update={"id": str(uuid.uuid4()), "amount": to_money(budget.amount)})
        self.budgets.setdefault(user_id, []).append(saved)
        return saved

    def save_goal(self, user_id: str, goal: GoalEntry) -> GoalEntry:
        saved = goal.model_copy(update={"id": str(uuid.uuid4()), "target_amount": to_money(goal.target_amount)})
        self.goals.setdefault(user_id, []).append(saved)
        return saved

    def list_expenses(
        self, user_id: str, *, category: Optional[str] = None, limit: Optional[int] = None
    ) -> list[FinancialEntry]:
        items = sorted(self.expenses.get(user_id, []), key=lambda e: e.occurred_at, reverse=True)
        if category:
            items = [e for e in items if e.category == category.lower()]
        return items[:limit] if limit else items

    def list_income(self, user_id: str, *, limit: Optional[int] = None) -> list[FinancialEntry]:
        items = sorted(self.income.get(user_id, []), key=lambda e: e.occurred_at, reverse=True)
        return items[:limit] if limit else items

    def aggregate_snapshot(self, user_id: str) -> AggregateSnapshot:
        expenses = self.expenses.get(user_id, [])
        income = self.income.get(user_id, [])
        total_expenses = sum((e.amount for e in expenses), ZERO)
        total_income = sum((i.amount for i in income), ZERO)
        return AggregateSnapshot(
            balance=total_income - total_expenses,
            total_income=total_income,
            total_expenses=total_expenses,
            expense_count=len(expenses),
            income_count=len(income),
        )

    def count_budgets(self, user_id: str) -> int:
        return len(self.budgets.get(user_id, []))

    def count_goals(self, user_id: str) -> int:
        return len(self.goals.get(user_id, []))

    def append_turn(self, user_id: str, turn: ConversationTurn) -> None:
        self.turns.setdefault(user_id, []).append(turn)

    def recent_turns(self, user_id: str, limit: int) -> list[ConversationTurn]:
        if limit <= 0:
            return []
        return list(self.turns.get(user_id, [])[-limit:])
