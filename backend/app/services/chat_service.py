"""Chat orchestration: one utterance in, one response text + action tag out.

Flow per message: pending clarification -> greeting -> intent classification
-> commit / clarify / analytics / advice. Messages from the same user are
processed one at a time; every path appends a conversation turn.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.schemas.finance import (
    AggregateSnapshot,
    BudgetEntry,
    ChatResponse,
    ConversationTurn,
    EntryKind,
    FinancialEntry,
    GoalEntry,
    IncomeSourceType,
    Provenance,
)
from app.services.ai.common.gateway import InferenceGateway, ProviderUnavailableError
from app.services.ai.common.router import TASK_DEEP_ANALYSIS
from app.services.ai.intent.contracts import (
    AdviceIntent,
    AdviceRequest,
    AnalyticsIntent,
    AnalyticsRequest,
    BudgetIntent,
    ExpenseDraft,
    ExpenseIntent,
    GoalIntent,
    IncomeIntent,
)
from app.services.ai.intent.service import classify_intent, render_transcript
from app.services.ai.receipt.service import ReceiptExtractionError, extract_receipt
from app.services.anomaly import AnomalyAlert, AnomalyDetector
from app.services.calculators import (
    AffordabilityResult,
    AffordabilityVerdict,
    SavingsTimeline,
    assess_affordability,
    format_months,
    project_savings_timeline,
)
from app.services.categorization import (
    RECURRING_FREQUENCIES,
    categorize_expense,
    detect_income_source,
    detect_recurring,
    normalize_category,
)
from app.services.conversation import state_machine
from app.services.conversation.locks import UserLockRegistry, user_locks
from app.services.conversation.pending_store import PendingStore, build_pending_store
from app.services.finance_store import FinanceStore, PersistenceError, SqlFinanceStore
from app.utils.amounts import parse_amount_phrase

logger = logging.getLogger(__name__)

GREETING_RE = re.compile(
    r"^(hi|hello|hey|good morning|good afternoon|good evening|greetings|what's up|sup|howdy)[!. ]*$",
    re.IGNORECASE,
)
CANCEL_WORDS = frozenset({"cancel", "nevermind", "never mind", "stop", "reset"})

_ITEM_RE = re.compile(
    r"(?:buy|purchase|afford)\s+(?:an?\s+|the\s+)?([a-zA-Z][a-zA-Z0-9\s]*?)\s+(?:worth|costs?|costing|for|of|at)\b",
    re.IGNORECASE,
)
COMMON_ITEMS = ("iphone", "phone", "car", "laptop", "bike", "house", "flat")

CAPABILITIES = (
    "- Track expenses: 'I spent 150 on coffee'\n"
    "- Add income: 'Got 50000 salary'\n"
    "- Set budgets: 'Set 5000 food budget'\n"
    "- Create goals: 'Save 100000 for vacation'\n"
    "- Get insights: 'Show my spending analysis'\n"
    "- Get advice: 'Can I afford an iPhone worth 50k?'"
)
GREETING_TEXT = (
    "Hello! I'm your AI financial assistant. I'm here to help you manage your money better!\n\n"
    "Here's what I can do for you:\n"
    f"{CAPABILITIES}\n"
    "- Upload receipts: use the receipt button\n\n"
    "Just tell me what you'd like to do with your finances!"
)
HELP_TEXT = f"I didn't understand that. You can:\n{CAPABILITIES}"
TECHNICAL_DIFFICULTIES = (
    "I'm having technical difficulties reaching the AI service right now. Please try again in a moment."
)
GENERIC_ERROR = "Sorry, I encountered an error. Please try again!"

ADVICE_TEXTS = {
    AdviceRequest.INVESTMENT: (
        "**Investment Guidance**\n\n"
        "**Basic Investment Rules:**\n"
        "- Emergency Fund: 6 months of expenses\n"
        "- Investment: 20% of monthly income\n"
        "- Start with a SIP in diversified mutual funds\n"
        "- Diversify across asset classes\n\n"
        "**Safe Start:** begin with a {c}1000-5000/month SIP\n\n"
        "**Recommended Allocation:**\n"
        "- 60% Equity Mutual Funds\n"
        "- 30% Debt/Hybrid Funds\n"
        "- 10% Direct Stocks (if experienced)"
    ),
    AdviceRequest.SAVINGS: (
        "**Savings Strategy**\n\n"
        "**Savings Goals:**\n"
        "- Emergency Fund: 6 months expenses\n"
        "- Short-term goals: 20% of income\n"
        "- Long-term goals: 30% of income\n\n"
        "**Action Steps:**\n"
        "1. Automate savings on salary day\n"
        "2. Use high-interest savings accounts\n"
        "3. Consider liquid funds for emergency money"
    ),
    AdviceRequest.BUDGET_RECOMMENDATION: (
        "**Budget Planning (50-30-20 Rule)**\n\n"
        "**Income Allocation:**\n"
        "- 50% Needs (rent, food, utilities)\n"
        "- 30% Wants (entertainment, dining)\n"
        "- 20% Savings & Investments\n\n"
        "**Category Guidelines:**\n"
        "- Housing: 25-30% of income\n"
        "- Food: 10-15% of income\n"
        "- Transportation: 10-15% of income"
    ),
    AdviceRequest.FINANCIAL_PLANNING: (
        "**Financial Planning Roadmap**\n\n"
        "**Priority Order:**\n"
        "1. Build emergency fund (6 months expenses)\n"
        "2. Pay off high-interest debt\n"
        "3. Start systematic investments\n"
        "4. Plan for major goals\n"
        "5. Get adequate insurance\n\n"
        "**Key Principles:**\n"
        "- Start early with small amounts\n"
        "- Diversify investments\n"
        "- Review annually"
    ),
    AdviceRequest.GENERAL: (
        "I can help you with investment advice, savings recommendations, budget planning, "
        "affordability checks, savings timelines, and general financial guidance. "
        "What specific financial advice do you need?"
    ),
}

_PRIORITY_LABELS = {1: "High", 2: "Medium", 3: "Low"}


@dataclass
class ChatResult:
    response_text: str
    action: str
    data: Optional[dict[str, Any]] = None
    intent: Optional[str] = None

    def as_response(self) -> ChatResponse:
        return ChatResponse(response=self.response_text, action=self.action, data=self.data)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extract_item(text: str) -> Optional[str]:
    """Best-effort purchase item name from an affordability question."""
    match = _ITEM_RE.search(text or "")
    if match:
        return match.group(1).strip()
    lowered = (text or "").lower()
    for item in COMMON_ITEMS:
        if item in lowered:
            return "iPhone" if item == "iphone" else item.capitalize()
    return None


def amount_from_transcript(turns: Sequence[ConversationTurn]) -> Optional[Decimal]:
    """Most recent amount mentioned in the conversation, user text before replies."""
    for turn in reversed(list(turns)):
        for text in (turn.user_text, turn.response_text):
            amount = parse_amount_phrase(text)
            if amount is not None:
                return amount
    return None


def item_from_transcript(turns: Sequence[ConversationTurn]) -> Optional[str]:
    for turn in reversed(list(turns)):
        item = extract_item(turn.user_text)
        if item:
            return item
    return None


def _parse_target_date(value: Optional[str], today: date) -> date:
    if value:
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            logger.debug("Unreadable goal target date %r; defaulting to one year ahead", value)
    return today + timedelta(days=365)


class ChatService:
    """Per-request orchestrator; collaborators are injected so tests can swap them."""

    def __init__(
        self,
        store: FinanceStore,
        pending_store: PendingStore,
        *,
        gateway_factory: Callable[[str], InferenceGateway],
        detector: Optional[AnomalyDetector] = None,
        locks: UserLockRegistry = user_locks,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._pending = pending_store
        self._gateway_factory = gateway_factory
        self._detector = detector or AnomalyDetector()
        self._locks = locks
        self._clock = clock
        self._currency = get_settings().currency_symbol

    def _money(self, value: Decimal) -> str:
        return f"{self._currency}{value:,.2f}"

    # --- public operations ---

    async def chat(self, user_id: str, text: str, provenance: Provenance = Provenance.CHAT) -> ChatResult:
        """Process one utterance. Never raises; failures become an ``error`` action."""
        async with self._locks.hold(user_id):
            try:
                result = await self._dispatch(user_id, text, provenance)
            except ProviderUnavailableError as exc:
                logger.warning("Chat for user=%s degraded: %s", user_id, exc)
                result = ChatResult(TECHNICAL_DIFFICULTIES, "error", intent="error")
            except PersistenceError as exc:
                result = ChatResult(f"Sorry, I {exc}. Please try again.", "save_failed", intent="error")
            except Exception:
                logger.exception("Chat processing failed for user=%s", user_id)
                result = ChatResult(GENERIC_ERROR, "error", intent="error")
            self._remember(user_id, text, result)
            return result

    async def process_receipt(self, user_id: str, image_base64: str) -> ChatResult:
        """Read a receipt image and commit it as one expense."""
        async with self._locks.hold(user_id):
            try:
                result = await self._receipt(user_id, image_base64)
            except ReceiptExtractionError as exc:
                result = ChatResult(
                    f"I couldn't read that receipt: {exc}. "
                    "Please try a clearer photo or type the expense instead.",
                    "receipt_error",
                )
            except ProviderUnavailableError as exc:
                logger.warning("Receipt scan for user=%s degraded: %s", user_id, exc)
                result = ChatResult(TECHNICAL_DIFFICULTIES, "receipt_error")
            except PersistenceError as exc:
                result = ChatResult(f"I read the receipt but {exc}. Please try again.", "save_failed")
            except Exception:
                logger.exception("Receipt processing failed for user=%s", user_id)
                result = ChatResult("Sorry, I couldn't process that receipt. Please try again!", "receipt_error")
            result.intent = "receipt"
            self._remember(user_id, "[receipt image]", result)
            return result

    async def reset(self, user_id: str) -> bool:
        async with self._locks.hold(user_id):
            cleared = self._pending.clear(user_id)
        if cleared:
            logger.info("Pending operation reset for user=%s", user_id)
        return cleared

    def history(self, user_id: str, limit: int = 20) -> list[ConversationTurn]:
        return self._store.recent_turns(user_id, limit)

    # --- dispatch ---

    async def _dispatch(self, user_id: str, text: str, provenance: Provenance) -> ChatResult:
        pending = self._pending.get(user_id)
        if pending is not None:
            return self._continue_pending(user_id, pending, text, provenance)

        if GREETING_RE.match(text.strip()):
            return ChatResult(GREETING_TEXT, "greeting", intent="greeting")

        history = self._store.recent_turns(user_id, get_settings().chat_context_turns)
        gateway = self._gateway_factory(user_id)
        classified = await classify_intent(text, gateway, history=history)
        intent = classified.intent

        if isinstance(intent, ExpenseIntent):
            result = self._handle_expense(user_id, intent, provenance)
        elif isinstance(intent, IncomeIntent):
            result = self._handle_income(user_id, intent, provenance)
        elif isinstance(intent, BudgetIntent):
            result = self._handle_budget(user_id, intent)
        elif isinstance(intent, GoalIntent):
            result = self._handle_goal(user_id, intent)
        elif isinstance(intent, AnalyticsIntent):
            result = await self._handle_analytics(user_id, intent, text, gateway, history)
        elif isinstance(intent, AdviceIntent):
            result = self._handle_advice(user_id, intent, text, history)
        else:
            result = ChatResult(HELP_TEXT, "unknown")
        result.intent = result.intent or intent.type
        return result

    # --- expenses ---

    def _continue_pending(
        self, user_id: str, pending: state_machine.PendingOperation, text: str, provenance: Provenance
    ) -> ChatResult:
        if text.strip().lower().rstrip("!.") in CANCEL_WORDS:
            self._pending.clear(user_id)
            return ChatResult("Okay, I've cancelled that expense.", "cancelled", intent="expense")

        transition = state_machine.advance(pending, text)
        if transition.completed is None:
            if transition.accepted:
                self._pending.put(user_id, transition.pending)
            return ChatResult(
                transition.question,
                "pending",
                data={"state": transition.state.value, "missing_fields": transition.pending.missing_fields},
                intent="expense",
            )

        self._pending.clear(user_id)
        return self._commit_single(user_id, transition.completed, provenance, lead="Perfect! I've saved your expense:")

    def _handle_expense(self, user_id: str, intent: ExpenseIntent, provenance: Provenance) -> ChatResult:
        if intent.is_multiple:
            return self._save_many(user_id, intent.items, provenance)

        transition = state_machine.start(intent.items[0])
        if transition.completed is not None:
            return self._commit_single(user_id, transition.completed, provenance, lead="**Expense Saved!**")

        self._pending.put(user_id, transition.pending)
        return ChatResult(
            transition.question,
            "pending",
            data={"state": transition.state.value, "missing_fields": transition.pending.missing_fields},
        )

    def _commit_expense(
        self,
        user_id: str,
        draft: ExpenseDraft,
        provenance: Provenance,
        *,
        confidence: Optional[float] = None,
        occurred_at: Optional[datetime] = None,
        time_known: bool = True,
    ) -> tuple[FinancialEntry, list[AnomalyAlert]]:
        """Validate, save and check one expense.

        Raises ``ValidationError`` for drafts the entry model rejects and
        ``PersistenceError`` when the store fails.
        """
        entry = FinancialEntry(
            kind=EntryKind.EXPENSE,
            amount=draft.amount,
            category=draft.category or categorize_expense(draft.name, draft.description, draft.merchant),
            name=draft.label,
            description=draft.description,
            merchant=draft.merchant,
            occurred_at=occurred_at or self._clock(),
            provenance=provenance,
            confidence=confidence,
            is_recurring=detect_recurring(draft.name, draft.description),
        )
        saved = self._store.save_expense(user_id, entry)
        return saved, self._anomalies(user_id, saved, time_known=time_known)

    def _anomalies(self, user_id: str, saved: FinancialEntry, *, time_known: bool = True) -> list[AnomalyAlert]:
        try:
            history = self._store.list_expenses(user_id, category=saved.category)
        except PersistenceError as exc:
            logger.warning("Skipping anomaly check for expense %s: %s", saved.id, exc)
            return []
        alerts = self._detector.check(saved, history, time_known=time_known)
        if alerts:
            logger.info("Expense %s raised alerts: %s", saved.id, [a.kind for a in alerts])
        return alerts

    def _expense_text(self, saved: FinancialEntry, alerts: list[AnomalyAlert], lead: str) -> str:
        lines = [
            lead,
            f"**{saved.name}**",
            f"Amount: {self._money(saved.amount)}",
            f"Category: {saved.category}",
            f"Date: {saved.occurred_at.date().isoformat()}",
        ]
        if alerts:
            lines.append("")
            lines += [alert.message for alert in alerts]
        return "\n".join(lines)

    def _commit_single(self, user_id: str, draft: ExpenseDraft, provenance: Provenance, *, lead: str) -> ChatResult:
        try:
            saved, alerts = self._commit_expense(user_id, draft, provenance)
        except (PersistenceError, ValidationError) as exc:
            reason = str(exc) if isinstance(exc, PersistenceError) else "could not save an invalid expense"
            logger.warning("Expense for user=%s not saved: %s", user_id, exc)
            amount = self._money(draft.amount) if draft.amount is not None else "an unknown amount"
            return ChatResult(
                f"Sorry, I {reason}: {draft.label} for {amount}. Please try again.",
                "save_failed",
                data={"draft": draft.model_dump(mode="json")},
                intent="expense",
            )
        return ChatResult(
            self._expense_text(saved, alerts, lead),
            "expense_saved",
            data={"expense": saved.model_dump(mode="json"), "alerts": [a.as_dict() for a in alerts]},
            intent="expense",
        )

    def _save_many(self, user_id: str, items: list[ExpenseDraft], provenance: Provenance) -> ChatResult:
        successful: list[FinancialEntry] = []
        failed: list[dict[str, str]] = []
        alerts: list[AnomalyAlert] = []
        for index, draft in enumerate(items, start=1):
            label = draft.name or draft.description or f"Expense {index}"
            missing = [f for f in draft.missing_fields() if f != "category"]
            if missing:
                failed.append({"name": label, "error": f"missing {', '.join(missing)}"})
                continue
            try:
                saved, item_alerts = self._commit_expense(user_id, draft, provenance)
            except PersistenceError as exc:
                failed.append({"name": label, "error": str(exc)})
                continue
            except ValidationError as exc:
                logger.warning("Expense item %r rejected: %s", label, exc)
                failed.append({"name": label, "error": "invalid expense"})
                continue
            successful.append(saved)
            alerts.extend(item_alerts)

        total = sum((e.amount for e in successful), Decimal("0"))
        lines: list[str] = []
        if successful:
            plural = "s" if len(successful) > 1 else ""
            lines.append(f"**{len(successful)} Expense{plural} Saved!**")
            lines += [
                f"{i}. {e.name}: {self._money(e.amount)} ({e.category})" for i, e in enumerate(successful, start=1)
            ]
            lines.append(f"**Total:** {self._money(total)}")
        if failed:
            if lines:
                lines.append("")
            plural = "s" if len(failed) > 1 else ""
            lines.append(f"**{len(failed)} Expense{plural} Failed:**")
            lines += [f"{i}. {f['name']}: {f['error']}" for i, f in enumerate(failed, start=1)]
        if alerts:
            lines.append("")
            lines += [alert.message for alert in alerts]

        return ChatResult(
            "\n".join(lines),
            "expense_saved" if successful else "save_failed",
            data={
                "successful": [e.model_dump(mode="json") for e in successful],
                "failed": failed,
                "total_saved": len(successful),
                "total_failed": len(failed),
                "total_amount": str(total),
                "alerts": [a.as_dict() for a in alerts],
            },
        )

    # --- income / budget / goal ---

    def _handle_income(self, user_id: str, intent: IncomeIntent, provenance: Provenance) -> ChatResult:
        if intent.amount is None:
            return ChatResult(
                "How much income did you receive, and from where?",
                "needs_details",
                data={"missing_fields": ["amount"]},
            )

        declared = (intent.source or "").strip().lower()
        if declared in {s.value for s in IncomeSourceType}:
            source_type = declared
        else:
            source_type = detect_income_source(intent.source, intent.name, intent.description)
        frequency = (intent.frequency or "").lower()
        is_recurring = bool(intent.is_recurring) or frequency in RECURRING_FREQUENCIES or detect_recurring(
            intent.source, intent.name
        )
        name = intent.source or intent.name or "Income"
        entry = FinancialEntry(
            kind=EntryKind.INCOME,
            amount=intent.amount,
            category=source_type,
            name=name,
            description=intent.description or f"Income from {intent.source or 'unspecified source'}",
            occurred_at=self._clock(),
            provenance=provenance,
            is_recurring=is_recurring,
        )
        try:
            saved = self._store.save_income(user_id, entry)
        except PersistenceError as exc:
            return ChatResult(f"Failed to save income: {exc}", "save_failed", data={"income": entry.model_dump(mode="json")})

        text = (
            f"**Income Added!**\n{saved.name}: {self._money(saved.amount)}\n"
            f"Source: {saved.category}\nRecurring: {'Yes' if saved.is_recurring else 'No'}"
        )
        return ChatResult(text, "income_saved", data={"income": saved.model_dump(mode="json")})

    def _handle_budget(self, user_id: str, intent: BudgetIntent) -> ChatResult:
        if intent.amount is None:
            return ChatResult(
                "How much would you like to budget, and for which category?",
                "needs_details",
                data={"missing_fields": ["amount"]},
            )

        category = normalize_category(intent.category)
        budget = BudgetEntry(
            name=intent.name or f"{(category or 'general').capitalize()} budget",
            amount=intent.amount,
            category=category,
            period_type=intent.period or "monthly",
            start_date=self._clock().date(),
            alert_threshold=intent.alert_threshold or 0.8,
        )
        try:
            saved = self._store.save_budget(user_id, budget)
        except PersistenceError as exc:
            return ChatResult(f"Failed to create budget: {exc}", "save_failed", data={"budget": budget.model_dump(mode="json")})

        text = (
            f"**Budget Created!**\n{saved.name}: {self._money(saved.amount)}\n"
            f"Category: {saved.category or 'general'}\nPeriod: {saved.period_type}\n"
            f"Alert at {saved.alert_threshold * 100:.0f}%"
        )
        return ChatResult(text, "budget_saved", data={"budget": saved.model_dump(mode="json")})

    def _handle_goal(self, user_id: str, intent: GoalIntent) -> ChatResult:
        if intent.target_amount is None:
            return ChatResult(
                "How much do you want to save for this goal?",
                "needs_details",
                data={"missing_fields": ["target_amount"]},
            )

        goal = GoalEntry(
            name=intent.name or "Savings goal",
            target_amount=intent.target_amount,
            current_amount=intent.current_amount or Decimal("0"),
            target_date=_parse_target_date(intent.target_date, self._clock().date()),
            goal_type=intent.goal_type or "savings",
            priority=intent.priority or 2,
        )
        try:
            saved = self._store.save_goal(user_id, goal)
        except PersistenceError as exc:
            return ChatResult(f"Failed to create goal: {exc}", "save_failed", data={"goal": goal.model_dump(mode="json")})

        progress = saved.current_amount / saved.target_amount * 100
        text = (
            f"**Financial Goal Created!**\n{saved.name}: {self._money(saved.target_amount)}\n"
            f"Current: {self._money(saved.current_amount)} ({progress:.1f}%)\n"
            f"Target: {saved.target_date.isoformat()}\n"
            f"Priority: {_PRIORITY_LABELS[saved.priority]}"
        )
        return ChatResult(text, "goal_saved", data={"goal": saved.model_dump(mode="json")})

    # --- analytics ---

    async def _handle_analytics(
        self,
        user_id: str,
        intent: AnalyticsIntent,
        text: str,
        gateway: InferenceGateway,
        history: Sequence[ConversationTurn],
    ) -> ChatResult:
        request = intent.request_type
        if request is AnalyticsRequest.BALANCE:
            return self._balance_breakdown(user_id)
        if request is AnalyticsRequest.SPENDING_ANALYSIS:
            return await self._spending_analysis(user_id, text, gateway, history)
        if request is AnalyticsRequest.INSIGHTS:
            return await self._insights(user_id, gateway)
        return self._summary(user_id)

    def _summary(self, user_id: str) -> ChatResult:
        snapshot = self._store.aggregate_snapshot(user_id)
        budgets = self._store.count_budgets(user_id)
        goals = self._store.count_goals(user_id)
        text = (
            "**Financial Summary**\n"
            f"Balance: {self._money(snapshot.balance)}\n"
            f"Income: {self._money(snapshot.total_income)}\n"
            f"Expenses: {self._money(snapshot.total_expenses)}\n"
            f"Active Goals: {goals}\n"
            f"Active Budgets: {budgets}"
        )
        data = snapshot.model_dump(mode="json")
        data.update(
            budget_count=budgets,
            goal_count=goals,
            financial_health="Positive" if snapshot.balance > 0 else "Needs Attention",
        )
        return ChatResult(text, "analytics", data=data)

    def _balance_breakdown(self, user_id: str) -> ChatResult:
        expenses = self._store.list_expenses(user_id)
        income = self._store.list_income(user_id)
        by_category: dict[str, Decimal] = {}
        for entry in expenses:
            by_category[entry.category] = by_category.get(entry.category, Decimal("0")) + entry.amount
        by_source: dict[str, Decimal] = {}
        for entry in income:
            by_source[entry.category] = by_source.get(entry.category, Decimal("0")) + entry.amount

        total_expenses = sum(by_category.values(), Decimal("0"))
        total_income = sum(by_source.values(), Decimal("0"))
        balance = total_income - total_expenses
        lines = [
            "**Your Financial Summary**",
            "",
            f"**Balance:** {self._money(balance)}",
            "",
            f"**Total Income:** {self._money(total_income)}",
        ]
        if by_source:
            lines.append("   " + ", ".join(f"{k}: {self._money(v)}" for k, v in by_source.items()))
        lines.append(f"**Total Expenses:** {self._money(total_expenses)}")
        if by_category:
            lines.append("   " + ", ".join(f"{k}: {self._money(v)}" for k, v in by_category.items()))
        lines += [
            "",
            "**Financial Health:** "
            + ("Good - you have a positive balance!" if balance >= 0 else "Attention needed - expenses exceed income"),
        ]
        return ChatResult(
            "\n".join(lines),
            "analytics",
            data={
                "balance": str(balance),
                "total_income": str(total_income),
                "total_expenses": str(total_expenses),
                "expenses_by_category": {k: str(v) for k, v in by_category.items()},
                "income_by_source": {k: str(v) for k, v in by_source.items()},
            },
        )

    async def _spending_analysis(
        self, user_id: str, text: str, gateway: InferenceGateway, history: Sequence[ConversationTurn]
    ) -> ChatResult:
        expenses = self._store.list_expenses(user_id, limit=50)
        if not expenses:
            return ChatResult("No spending data available for analysis.", "analytics")

        totals: dict[str, Decimal] = {}
        for entry in expenses:
            totals[entry.category] = totals.get(entry.category, Decimal("0")) + entry.amount
        spending = {
            "total_expenses": str(sum(totals.values(), Decimal("0"))),
            "expense_count": len(expenses),
            "categories": {k: str(v) for k, v in totals.items()},
            "recent_expenses": [
                {"name": e.name, "amount": str(e.amount), "category": e.category, "date": e.occurred_at.date().isoformat()}
                for e in expenses[:5]
            ],
            "time_range": "last 50 transactions",
        }
        prompt = (
            f"Analyze this real spending data and give insights with amounts in {self._currency}:\n"
            f"{json.dumps(spending, indent=2)}\n\n"
            f'User\'s question: "{text}"\n'
        )
        transcript = render_transcript(history, get_settings().chat_context_turns)
        if transcript:
            prompt += f"\nConversation context:\n{transcript}\n"
        prompt += (
            "\nCover: a direct answer to the question, spending patterns, top categories with amounts, "
            "and savings recommendations. Keep it concise and actionable."
        )
        result = await gateway.call(TASK_DEEP_ANALYSIS, [{"role": "user", "content": prompt}])
        return ChatResult(
            result.raw_text.strip() or "Unable to analyze your spending right now.",
            "analytics",
            data=spending,
        )

    async def _insights(self, user_id: str, gateway: InferenceGateway) -> ChatResult:
        snapshot = self._store.aggregate_snapshot(user_id)
        expenses = self._store.list_expenses(user_id, limit=5)
        income = self._store.list_income(user_id, limit=3)
        summary = {
            **snapshot.model_dump(mode="json"),
            "budget_count": self._store.count_budgets(user_id),
            "goal_count": self._store.count_goals(user_id),
        }
        prompt = (
            "Analyze this financial data and provide actionable insights:\n"
            f"{json.dumps(summary, indent=2)}\n\n"
            f"Recent expenses: {', '.join(f'{self._money(e.amount)} - {e.name}' for e in expenses) or 'none'}\n"
            f"Recent income: {', '.join(f'{self._money(i.amount)} - {i.name}' for i in income) or 'none'}\n\n"
            "Cover: income vs expense ratio, budget adherence, goal progress, financial warnings "
            "and recommendations. Keep it concise and actionable."
        )
        result = await gateway.call(TASK_DEEP_ANALYSIS, [{"role": "user", "content": prompt}])
        return ChatResult(
            result.raw_text.strip() or "Unable to generate insights at the moment.",
            "analytics",
            data=summary,
        )

    # --- advice ---

    def _handle_advice(
        self, user_id: str, intent: AdviceIntent, text: str, history: Sequence[ConversationTurn]
    ) -> ChatResult:
        request = intent.request_type
        if request is AdviceRequest.AFFORDABILITY:
            return self._affordability(user_id, intent, text)
        if request is AdviceRequest.SAVINGS_TIMELINE:
            return self._savings_timeline(user_id, intent, text, history)
        return ChatResult(ADVICE_TEXTS[request].format(c=self._currency), "advice")

    def _snapshot_or_guide(self, user_id: str, guide: str) -> tuple[Optional[AggregateSnapshot], Optional[ChatResult]]:
        snapshot = self._store.aggregate_snapshot(user_id)
        if snapshot.expense_count == 0 and snapshot.income_count == 0:
            return None, ChatResult(guide, "advice")
        return snapshot, None

    def _affordability(self, user_id: str, intent: AdviceIntent, text: str) -> ChatResult:
        amount = intent.amount or parse_amount_phrase(text)
        item = intent.item or extract_item(text) or "Purchase"
        if amount is None:
            return ChatResult(
                "I need to know the amount to check affordability. "
                "Please tell me the price of the item you want to buy.",
                "advice",
                data={"missing_fields": ["amount"]},
            )

        snapshot, guide = self._snapshot_or_guide(
            user_id,
            "**General Affordability Guide**\n\n"
            "**Safe Purchase Criteria:**\n"
            "- Keep 6 months of expenses as an emergency fund\n"
            "- A purchase should be under 30% of monthly income\n"
            "- Keep a positive balance after the purchase\n\n"
            "Add your income and expenses for personalized advice!",
        )
        if guide:
            return guide

        result = assess_affordability(
            balance=snapshot.balance,
            monthly_income=snapshot.total_income,
            monthly_expenses=snapshot.total_expenses,
            purchase_amount=amount,
        )
        return ChatResult(
            self._affordability_text(item, result),
            "advice",
            data={
                "affordable": result.affordable,
                "verdict": result.verdict.value,
                "risk_level": result.risk.value,
                "purchase_amount": str(result.purchase_amount),
                "remaining_balance": str(result.remaining_balance),
                "shortfall": str(result.shortfall) if result.shortfall is not None else None,
            },
        )

    def _affordability_text(self, item: str, result: AffordabilityResult) -> str:
        verdict = result.verdict
        if verdict is AffordabilityVerdict.NOT_AFFORDABLE and result.shortfall is None:
            advice = (
                "You currently have no positive balance. "
                "Focus on improving your finances before making this purchase."
            )
        elif verdict is AffordabilityVerdict.NOT_AFFORDABLE:
            advice = (
                f"The {item} costs more than your total balance. "
                f"You would need an additional {self._money(result.shortfall)}."
            )
        elif verdict is AffordabilityVerdict.RISKY:
            advice = (
                f"This purchase would leave you with only {self._money(result.remaining_balance)}, "
                "which is below the recommended emergency buffer."
            )
        elif verdict is AffordabilityVerdict.EXPENSIVE_FOR_INCOME:
            share = f"{result.income_share_pct}%" if result.income_share_pct is not None else "a large share"
            advice = f"This purchase is {share} of your monthly income, which is quite high. Consider if it's truly necessary."
        else:
            advice = f"You can afford this purchase! You'll have {self._money(result.remaining_balance)} remaining."

        share_line = (
            f"- {result.income_share_pct}% of monthly income"
            if result.income_share_pct is not None
            else "- No income recorded"
        )
        return (
            f"**Affordability Analysis: {item} ({self._money(result.purchase_amount)})**\n\n"
            f"**{verdict.value.replace('_', ' ')}** ({result.risk.value} risk)\n\n"
            "**Your Financial Snapshot:**\n"
            f"- Current Balance: {self._money(result.balance)}\n"
            f"- Monthly Income: {self._money(result.monthly_income)}\n"
            f"- Monthly Expenses: {self._money(result.monthly_expenses)}\n"
            f"- After Purchase: {self._money(result.remaining_balance)}\n\n"
            "**Purchase Analysis:**\n"
            f"{share_line}\n"
            f"- Safe spending limit: {self._money(result.safe_spending_limit)}\n"
            f"- Recommended emergency fund: {self._money(result.emergency_fund)}\n\n"
            f"**Recommendation:**\n{advice}"
        )

    def _savings_timeline(
        self, user_id: str, intent: AdviceIntent, text: str, history: Sequence[ConversationTurn]
    ) -> ChatResult:
        amount = intent.amount or parse_amount_phrase(text) or amount_from_transcript(history)
        item = intent.item or extract_item(text) or item_from_transcript(history) or "Purchase"
        if amount is None:
            return ChatResult(
                "I need to know the target amount to calculate the savings timeline. "
                "Please tell me how much you want to save for.",
                "advice",
                data={"missing_fields": ["amount"]},
            )

        snapshot, guide = self._snapshot_or_guide(
            user_id,
            "**Savings Timeline Calculator**\n\n"
            "To calculate when you can afford a purchase, I need:\n"
            "- Your monthly income\n"
            "- Your monthly expenses\n"
            "- The target purchase amount\n\n"
            "Add your financial data first for a personalized timeline!",
        )
        if guide:
            return guide

        timeline = project_savings_timeline(
            balance=snapshot.balance,
            monthly_income=snapshot.total_income,
            monthly_expenses=snapshot.total_expenses,
            target_amount=amount,
        )
        balanced = timeline.option("balanced")
        return ChatResult(
            self._timeline_text(item, timeline),
            "advice",
            data={
                "target_amount": str(timeline.target_amount),
                "shortfall": str(max(timeline.shortfall, Decimal("0"))),
                "monthly_surplus": str(timeline.monthly_surplus),
                "timeline_months": balanced.months if balanced else None,
                "feasible": timeline.feasible,
                "affordable_now": timeline.affordable_now,
            },
        )

    def _timeline_text(self, item: str, timeline: SavingsTimeline) -> str:
        if not timeline.feasible:
            deficit = self._money(timeline.deficit)
            return (
                "**Cannot Save Currently**\n\n"
                f"You're spending {deficit} more than you earn monthly. You need to:\n"
                f"1. Reduce expenses by at least {deficit}\n"
                "2. Increase income\n"
                "3. Create a positive cash flow before saving"
            )

        header = f"**Savings Timeline for {item} ({self._money(timeline.target_amount)})**\n\n"
        if timeline.affordable_now:
            return (
                header
                + "**You can afford it now!**\n"
                f"Current balance: {self._money(timeline.balance)}\n"
                f"Remaining after purchase: {self._money(timeline.balance - timeline.target_amount)}"
            )

        lines = [
            f"**Shortfall:** {self._money(timeline.shortfall)}",
            f"**Monthly Surplus:** {self._money(timeline.monthly_surplus)}",
            "",
            "**Timeline Options:**",
        ]
        for option in timeline.options:
            label = option.label
            if option.key == "with_emergency_fund":
                label = f"{label} ({self._money(timeline.emergency_fund)})"
            lines.append(f"- {label}: {option.months} months ({format_months(option.months)})")

        balanced = timeline.option("balanced")
        lines += [
            "",
            "**Savings Strategy:**",
            f"- Set up an automatic transfer of {self._money(balanced.monthly_contribution)}/month",
            "- Use a high-yield savings account or liquid funds",
            "- Track progress monthly",
            "",
            "**Recommendation:**",
        ]
        if balanced.months <= 6:
            lines.append(f"Good news! You can save for this {item} in just {format_months(balanced.months)}.")
        elif balanced.months <= 12:
            lines.append(
                f"Achievable goal! Save {self._money(balanced.monthly_contribution)}/month "
                f"and you'll have it in {format_months(balanced.months)}."
            )
        else:
            lines.append("This is a long-term goal. Consider increasing income, reducing expenses, or cheaper alternatives.")
        return header + "\n".join(lines)

    # --- receipts ---

    async def _receipt(self, user_id: str, image_base64: str) -> ChatResult:
        receipt = await extract_receipt(image_base64, self._gateway_factory(user_id))
        item_names = [item.name for item in receipt.items]
        draft = ExpenseDraft(
            name=receipt.entry_name,
            amount=receipt.total,
            category=receipt.category or categorize_expense(receipt.merchant, *item_names),
            description=receipt.entry_description,
            merchant=receipt.merchant,
        )
        occurred_at, time_known = self._receipt_timestamp(receipt.date)

        saved, alerts = self._commit_expense(
            user_id,
            draft,
            Provenance.RECEIPT,
            confidence=receipt.confidence_score,
            occurred_at=occurred_at,
            time_known=time_known,
        )
        text = self._expense_text(saved, alerts, "**Receipt Scanned!**")
        text += f"\nMerchant: {receipt.merchant}\nConfidence: {receipt.confidence}"
        return ChatResult(
            text,
            "expense_saved",
            data={
                "expense": saved.model_dump(mode="json"),
                "receipt": receipt.model_dump(mode="json"),
                "alerts": [a.as_dict() for a in alerts],
            },
        )

    def _receipt_timestamp(self, value: Optional[str]) -> tuple[datetime, bool]:
        """Purchase time printed on a receipt, and whether it included a time of day.

        A date-only receipt keeps the current time of day so it is not read
        as a midnight purchase.
        """
        now = self._clock()
        text = (value or "").strip()
        if not text:
            return now, True
        if "T" in text or ":" in text:
            try:
                stamped = datetime.fromisoformat(text)
            except ValueError:
                logger.debug("Unreadable receipt timestamp %r; trying the date part", value)
            else:
                if stamped.tzinfo is None:
                    stamped = stamped.replace(tzinfo=self._detector.tz)
                return stamped, True
        try:
            day = date.fromisoformat(text[:10])
        except ValueError:
            logger.debug("Unreadable receipt date %r; using now", value)
            return now, True
        return datetime.combine(day, now.timetz()), False

    # --- history ---

    def _remember(self, user_id: str, text: str, result: ChatResult) -> None:
        turn = ConversationTurn(
            user_text=text,
            response_text=result.response_text,
            intent=result.intent or result.action,
            payload={"action": result.action, "data": result.data},
            created_at=self._clock(),
        )
        try:
            self._store.append_turn(user_id, turn)
        except PersistenceError as exc:
            logger.warning("Conversation turn for user=%s not stored: %s", user_id, exc)


def build_chat_service(db: Optional[Session]) -> ChatService:
    """Production wiring: SQL store, configured pending store, audited gateway."""
    return ChatService(
        SqlFinanceStore(db),
        build_pending_store(db),
        gateway_factory=lambda user_id: InferenceGateway(db=db, user_id=user_id),
    )
