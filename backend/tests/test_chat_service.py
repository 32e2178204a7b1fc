"""ChatService tests with in-memory stores and scripted model replies."""

import asyncio
import json
import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

from app.schemas.finance import EntryKind, FinancialEntry, Provenance
from app.services.ai.common.gateway import InferenceGateway, RetryPolicy
from app.services.ai.common.providers.base import BaseProvider, ProviderResult
from app.services.ai.intent.contracts import ExpenseDraft
from app.services.anomaly import LATE_NIGHT, UNUSUAL_AMOUNT, AnomalyDetector
from app.services.chat_service import (
    GREETING_TEXT,
    HELP_TEXT,
    TECHNICAL_DIFFICULTIES,
    ChatService,
    amount_from_transcript,
    extract_item,
)
from app.services.conversation.locks import UserLockRegistry
from app.services.conversation.pending_store import InMemoryPendingStore
from app.services.finance_store import InMemoryFinanceStore, PersistenceError

NOON = datetime(2026, 10, 5, 12, 0, tzinfo=timezone.utc)


class ScriptedProvider(BaseProvider):
    """Returns queued replies in order; raises when *error* is set."""

    name = "scripted"

    def __init__(self, *replies, error=None):
        self.replies = list(replies)
        self.error = error
        self.calls = []

    async def generate(self, messages, *, model="", temperature=0.1, max_tokens=1024, timeout_seconds=20.0, tools=None):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return ProviderResult(raw_text=self.replies.pop(0), model=model or "scripted-1", provider=self.name)


class FailingStore(InMemoryFinanceStore):
    def save_expense(self, user_id, entry):
        raise PersistenceError("could not save the expense")


def envelope(kind, data, **extra):
    return json.dumps({"type": kind, "hasData": True, "data": data, **extra})


def entry(kind, amount, category, name="seed"):
    return FinancialEntry(
        kind=kind,
        amount=Decimal(amount),
        category=category,
        name=name,
        occurred_at=datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
    )


class ChatServiceTestCase(unittest.TestCase):
    user_id = "user-1"

    def setUp(self):
        self.store = InMemoryFinanceStore()
        self.pending = InMemoryPendingStore()
        self.provider = ScriptedProvider()

    def service(self, store=None):
        return ChatService(
            store or self.store,
            self.pending,
            gateway_factory=lambda _uid: InferenceGateway(
                policy=RetryPolicy(max_attempts=1),
                provider_factory=lambda _name: self.provider,
            ),
            detector=AnomalyDetector(timezone_name="UTC", currency_symbol="₹"),
            locks=UserLockRegistry(),
            clock=lambda: NOON,
        )

    def chat(self, text, *replies, service=None, provenance=Provenance.CHAT):
        self.provider.replies.extend(replies)
        return asyncio.run((service or self.service()).chat(self.user_id, text, provenance))

    def seed(self, income=None, *expenses):
        if income:
            self.store.save_income(self.user_id, entry(EntryKind.INCOME, income, "salary"))
        for amount, category in expenses:
            self.store.save_expense(self.user_id, entry(EntryKind.EXPENSE, amount, category))


class GreetingAndFailureTests(ChatServiceTestCase):
    def test_greeting_skips_the_model(self):
        result = self.chat("Hello!")

        self.assertEqual(result.action, "greeting")
        self.assertEqual(result.response_text, GREETING_TEXT)
        self.assertEqual(self.provider.calls, [])
        self.assertEqual(self.store.turns[self.user_id][0].intent, "greeting")

    def test_provider_failure_degrades_to_error_action(self):
        self.provider.error = RuntimeError("HTTP 503")

        result = self.chat("I spent 150 on coffee")

        self.assertEqual(result.action, "error")
        self.assertEqual(result.response_text, TECHNICAL_DIFFICULTIES)
        self.assertEqual(self.store.list_expenses(self.user_id), [])
        [turn] = self.store.turns[self.user_id]
        self.assertEqual(turn.user_text, "I spent 150 on coffee")
        self.assertEqual(turn.payload["action"], "error")

    def test_malformed_reply_returns_help(self):
        result = self.chat("blah", "sorry, I am not sure")

        self.assertEqual(result.action, "unknown")
        self.assertEqual(result.response_text, HELP_TEXT)

    def test_recent_turns_are_sent_to_the_model(self):
        self.chat("Hi")
        self.chat("what now?", '{"type": "none"}')

        prompt = self.provider.calls[0][-1]["content"]
        self.assertIn("User: Hi", prompt)


class ExpenseFlowTests(ChatServiceTestCase):
    def test_complete_expense_is_saved(self):
        reply = envelope("expense", {"name": "coffee", "amount": 150, "category": "food"})

        result = self.chat("I spent 150 on coffee", reply, provenance=Provenance.VOICE)

        self.assertEqual(result.action, "expense_saved")
        self.assertIn("**Expense Saved!**", result.response_text)
        self.assertIn("₹150.00", result.response_text)
        [saved] = self.store.list_expenses(self.user_id)
        self.assertEqual(saved.provenance, Provenance.VOICE)
        self.assertEqual(saved.occurred_at, NOON)
        self.assertEqual(result.data["alerts"], [])

    def test_missing_fields_are_asked_one_at_a_time(self):
        first = self.chat("I bought something", envelope("expense", {}))
        self.assertEqual(first.action, "pending")
        self.assertEqual(first.data["state"], "awaiting_amount")

        second = self.chat("250")
        self.assertEqual(second.data["state"], "awaiting_description")

        third = self.chat("groceries")
        self.assertEqual(third.data["state"], "awaiting_category")
        self.assertIn("₹250.00", third.response_text)

        final = self.chat("food")
        self.assertEqual(final.action, "expense_saved")
        self.assertTrue(final.response_text.startswith("Perfect! I've saved your expense:"))

        self.assertEqual(len(self.provider.calls), 1)
        self.assertIsNone(self.pending.get(self.user_id))
        [saved] = self.store.list_expenses(self.user_id)
        self.assertEqual((saved.name, saved.amount, saved.category), ("groceries", Decimal("250.00"), "food"))

    def test_unanswered_question_is_asked_again(self):
        self.chat("I paid for a taxi", envelope("expense", {"name": "taxi", "category": "transport"}))

        result = self.chat("I don't remember exactly")

        self.assertEqual(result.action, "pending")
        self.assertEqual(result.data["state"], "awaiting_amount")
        self.assertEqual(self.pending.get(self.user_id).missing_fields, ["amount"])
        self.assertEqual(self.store.list_expenses(self.user_id), [])

    def test_cancel_clears_pending_operation(self):
        self.chat("I bought something", envelope("expense", {}))

        result = self.chat("cancel")

        self.assertEqual(result.action, "cancelled")
        self.assertIsNone(self.pending.get(self.user_id))

    def test_reset_reports_whether_anything_was_pending(self):
        service = self.service()
        self.chat("I bought something", envelope("expense", {}), service=service)

        self.assertTrue(asyncio.run(service.reset(self.user_id)))
        self.assertFalse(asyncio.run(service.reset(self.user_id)))

    def test_multiple_expenses_partial_success(self):
        reply = envelope(
            "expense",
            [
                {"name": "lunch", "amount": 500, "category": "food"},
                {"name": "uber", "amount": 200},
                {"name": "snacks"},
            ],
            isMultiple=True,
        )

        result = self.chat("500 on lunch, 200 on uber and some snacks", reply)

        self.assertEqual(result.action, "expense_saved")
        self.assertEqual(result.data["total_saved"], 2)
        self.assertEqual(result.data["total_failed"], 1)
        self.assertEqual(result.data["total_amount"], "700.00")
        self.assertEqual(result.data["failed"], [{"name": "snacks", "error": "missing amount"}])
        categories = sorted(e.category for e in self.store.list_expenses(self.user_id))
        self.assertEqual(categories, ["food", "transport"])

    def test_unusual_amount_alert_does_not_block_commit(self):
        self.seed(None, ("100", "food"), ("100", "food"))

        result = self.chat("dinner 900", envelope("expense", {"name": "dinner", "amount": 900, "category": "food"}))

        self.assertEqual(result.action, "expense_saved")
        self.assertEqual([a["kind"] for a in result.data["alerts"]], [UNUSUAL_AMOUNT])
        self.assertIn("UNUSUAL", result.response_text)
        self.assertEqual(len(self.store.list_expenses(self.user_id)), 3)

    def test_persistence_failure_reports_save_failed(self):
        store = FailingStore()
        reply = envelope("expense", {"name": "coffee", "amount": 150, "category": "food"})

        result = self.chat("I spent 150 on coffee", reply, service=self.service(store))

        self.assertEqual(result.action, "save_failed")
        self.assertEqual(result.data["draft"]["name"], "coffee")
        self.assertIn("could not save the expense", result.response_text)


class RecordTests(ChatServiceTestCase):
    def test_income_is_saved(self):
        reply = envelope("income", {"source": "salary", "amount": "50000", "frequency": "monthly"})

        result = self.chat("Got 50000 salary", reply)

        self.assertEqual(result.action, "income_saved")
        [saved] = self.store.list_income(self.user_id)
        self.assertEqual(saved.category, "salary")
        self.assertTrue(saved.is_recurring)

    def test_income_without_amount_asks_for_details(self):
        result = self.chat("I got paid", envelope("income", {"source": "salary"}))

        self.assertEqual(result.action, "needs_details")
        self.assertEqual(self.store.list_income(self.user_id), [])

    def test_budget_is_saved_with_defaults(self):
        result = self.chat("Set 5000 food budget", envelope("budget", {"category": "Food", "amount": 5000}))

        self.assertEqual(result.action, "budget_saved")
        [budget] = self.store.budgets[self.user_id]
        self.assertEqual(budget.name, "Food budget")
        self.assertEqual(budget.period_type, "monthly")
        self.assertEqual(budget.alert_threshold, 0.8)
        self.assertEqual(budget.start_date, NOON.date())

    def test_goal_is_saved(self):
        reply = envelope("goal", {"name": "Vacation", "targetAmount": 100000, "deadline": "2027-06-01"})

        result = self.chat("Save 100000 for vacation", reply)

        self.assertEqual(result.action, "goal_saved")
        [goal] = self.store.goals[self.user_id]
        self.assertEqual(goal.target_date, date(2027, 6, 1))
        self.assertIn("(0.0%)", result.response_text)

    def test_goal_without_deadline_defaults_to_a_year(self):
        self.chat("Save for a bike", envelope("goal", {"targetAmount": "80k"}))

        [goal] = self.store.goals[self.user_id]
        self.assertEqual(goal.name, "Savings goal")
        self.assertEqual(goal.target_amount, Decimal("80000.00"))
        self.assertEqual(goal.target_date, date(2027, 10, 5))


class AnalyticsTests(ChatServiceTestCase):
    def test_summary(self):
        self.seed("50000", ("1200", "food"))

        result = self.chat("How am I doing?", envelope("analytics", {"requestType": "summary"}))

        self.assertEqual(result.action, "analytics")
        self.assertEqual(result.data["balance"], "48800.00")
        self.assertEqual(result.data["financial_health"], "Positive")

    def test_balance_breakdown(self):
        self.seed("50000", ("1200", "food"), ("300", "transport"))

        result = self.chat("What's my balance?", envelope("analytics", {"requestType": "balance"}))

        self.assertEqual(result.data["expenses_by_category"], {"food": "1200.00", "transport": "300.00"})
        self.assertEqual(result.data["income_by_source"], {"salary": "50000.00"})

    def test_spending_analysis_without_data(self):
        result = self.chat("Analyse my spending", envelope("analytics", {"requestType": "spending_analysis"}))

        self.assertEqual(result.response_text, "No spending data available for analysis.")
        self.assertEqual(len(self.provider.calls), 1)

    def test_spending_analysis_uses_deep_analysis_reply(self):
        self.seed(None, ("1200", "food"))

        result = self.chat(
            "Analyse my spending",
            envelope("analytics", {"requestType": "spending_analysis"}),
            "You spend most on food.",
        )

        self.assertEqual(result.response_text, "You spend most on food.")
        self.assertEqual(result.data["categories"], {"food": "1200.00"})
        self.assertIn('"total_expenses": "1200.00"', self.provider.calls[1][0]["content"])


class AdviceTests(ChatServiceTestCase):
    def affordability(self, amount):
        return envelope("advice", {"requestType": "affordability", "amount": amount, "item": "iPhone"})

    def test_negative_balance_is_not_affordable(self):
        self.seed("1000", ("1100", "bills"))

        result = self.chat("Can I afford an iPhone worth 500?", self.affordability(500))

        self.assertEqual(result.data["verdict"], "NOT_AFFORDABLE")
        self.assertFalse(result.data["affordable"])
        self.assertIn("no positive balance", result.response_text)

    def test_risky_purchase(self):
        self.seed("100000", ("20000", "bills"))

        result = self.chat("Can I afford an iPhone worth 30k?", self.affordability(30000))

        self.assertEqual(result.data["verdict"], "RISKY")
        self.assertEqual(result.data["risk_level"], "medium")

    def test_amount_read_from_text_when_model_omits_it(self):
        self.seed("500000", ("20000", "bills"))

        result = self.chat(
            "Can I afford a laptop worth 50k?",
            envelope("advice", {"requestType": "affordability"}),
        )

        self.assertEqual(result.data["purchase_amount"], "50000")
        self.assertIn("laptop", result.response_text)

    def test_no_records_returns_general_guide(self):
        result = self.chat("Can I afford an iPhone worth 50k?", self.affordability(50000))

        self.assertEqual(result.action, "advice")
        self.assertIn("General Affordability Guide", result.response_text)

    def test_savings_timeline_reuses_amount_from_conversation(self):
        self.seed("50000", ("30000", "bills"))
        self.chat("Can I afford an iPhone worth 50k?", self.affordability(50000))

        result = self.chat("When can I afford it?", envelope("advice", {"requestType": "savings_timeline"}))

        self.assertEqual(result.data["target_amount"], "50000")
        self.assertEqual(result.data["timeline_months"], 3)
        self.assertIn("Savings Timeline for iPhone", result.response_text)

    def test_savings_timeline_without_amount_asks(self):
        self.seed("50000", ("30000", "bills"))

        result = self.chat("How long to save?", envelope("advice", {"requestType": "savings_timeline"}))

        self.assertEqual(result.data, {"missing_fields": ["amount"]})

    def test_static_advice(self):
        result = self.chat("How should I invest?", envelope("advice", {"requestType": "investment"}))

        self.assertIn("₹1000-5000/month SIP", result.response_text)


class OversizedAmountTests(ChatServiceTestCase):
    def test_oversized_amount_reply_is_asked_again(self):
        self.chat("I had coffee", envelope("expense", {"name": "coffee", "category": "food"}))

        result = self.chat("9999999999999")

        self.assertEqual(result.action, "pending")
        self.assertEqual(result.data["state"], "awaiting_amount")
        pending = self.pending.get(self.user_id)
        self.assertEqual((pending.draft.name, pending.draft.category), ("coffee", "food"))
        self.assertEqual(self.store.list_expenses(self.user_id), [])

        final = self.chat("150")
        self.assertEqual(final.action, "expense_saved")

    def test_draft_rejected_by_entry_model_is_echoed(self):
        draft = ExpenseDraft.model_construct(name="yacht", amount=Decimal("99999999999999"), category="other")

        result = self.service()._commit_single(self.user_id, draft, Provenance.CHAT, lead="**Expense Saved!**")

        self.assertEqual(result.action, "save_failed")
        self.assertIn("yacht", result.response_text)
        self.assertEqual(result.data["draft"]["name"], "yacht")
        self.assertEqual(self.store.list_expenses(self.user_id), [])

    def test_oversized_item_fails_alone_in_a_batch(self):
        reply = envelope(
            "expense",
            [
                {"name": "coffee", "amount": 100, "category": "food"},
                {"name": "yacht", "amount": "9999999999999", "category": "other"},
            ],
            isMultiple=True,
        )

        result = self.chat("coffee 100 and a yacht", reply)

        self.assertEqual(result.action, "expense_saved")
        self.assertEqual(result.data["total_saved"], 1)
        self.assertEqual(result.data["failed"], [{"name": "yacht", "error": "missing amount"}])
        self.assertEqual(len(self.store.list_expenses(self.user_id)), 1)

    def test_invalid_item_is_isolated_from_the_rest_of_the_batch(self):
        items = [
            ExpenseDraft(name="coffee", amount=100, category="food"),
            ExpenseDraft.model_construct(name="yacht", amount=Decimal("99999999999999"), category="other"),
            ExpenseDraft(name="taxi", amount=200, category="transport"),
        ]

        result = self.service()._save_many(self.user_id, items, Provenance.CHAT)

        self.assertEqual(result.action, "expense_saved")
        self.assertEqual(result.data["total_saved"], 2)
        self.assertEqual(result.data["failed"], [{"name": "yacht", "error": "invalid expense"}])
        self.assertEqual(len(self.store.list_expenses(self.user_id)), 2)


class ReceiptTests(ChatServiceTestCase):
    def test_receipt_is_saved_as_expense(self):
        self.provider.replies.append(
            json.dumps(
                {
                    "merchant": "Big Bazaar",
                    "total": "1,250.00",
                    "items": [{"name": "Rice", "price": 500}, {"name": "Oil", "price": 750}],
                    "category": "food",
                    "date": "2026-10-02",
                    "confidence": "high",
                }
            )
        )

        result = asyncio.run(self.service().process_receipt(self.user_id, "aGVsbG8gd29ybGQgaW1hZ2U="))

        self.assertEqual(result.action, "expense_saved")
        [saved] = self.store.list_expenses(self.user_id)
        self.assertEqual(saved.provenance, Provenance.RECEIPT)
        self.assertEqual(saved.confidence, 0.9)
        self.assertEqual(saved.name, "Big Bazaar - Rice")
        self.assertEqual(saved.occurred_at.date(), date(2026, 10, 2))
        self.assertEqual(result.data["alerts"], [])
        image_part = self.provider.calls[0][0]["content"][1]
        self.assertTrue(image_part["image_url"]["url"].startswith("data:image/jpeg;base64,"))
        self.assertEqual(self.store.turns[self.user_id][0].user_text, "[receipt image]")

    def _receipt_reply(self, when):
        return json.dumps(
            {"merchant": "Cafe", "total": 120, "items": [{"name": "Tea", "price": 120}], "category": "food", "date": when}
        )

    def test_date_only_receipt_raises_no_late_night_alert(self):
        self.provider.replies.append(self._receipt_reply("2026-10-02"))

        result = asyncio.run(self.service().process_receipt(self.user_id, "aGVsbG8gd29ybGQgaW1hZ2U="))

        self.assertEqual(result.data["alerts"], [])
        [saved] = self.store.list_expenses(self.user_id)
        self.assertEqual(saved.occurred_at, datetime(2026, 10, 2, 12, 0, tzinfo=timezone.utc))

    def test_receipt_time_of_day_is_checked(self):
        self.provider.replies.append(self._receipt_reply("2026-10-02T02:15:00"))

        result = asyncio.run(self.service().process_receipt(self.user_id, "aGVsbG8gd29ybGQgaW1hZ2U="))

        self.assertEqual([a["kind"] for a in result.data["alerts"]], [LATE_NIGHT])
        [saved] = self.store.list_expenses(self.user_id)
        self.assertEqual(saved.occurred_at, datetime(2026, 10, 2, 2, 15, tzinfo=timezone.utc))

    def test_unreadable_receipt(self):
        self.provider.replies.append('{"merchant": "Unknown", "total": null}')

        result = asyncio.run(self.service().process_receipt(self.user_id, "aGVsbG8gd29ybGQgaW1hZ2U="))

        self.assertEqual(result.action, "receipt_error")
        self.assertEqual(self.store.list_expenses(self.user_id), [])


class HelperTests(unittest.TestCase):
    def test_extract_item(self):
        self.assertEqual(extract_item("Can I afford a gaming laptop worth 80k?"), "gaming laptop")
        self.assertEqual(extract_item("thinking about an iphone"), "iPhone")
        self.assertIsNone(extract_item("how am I doing"))

    def test_amount_from_transcript_prefers_latest(self):
        from app.schemas.finance import ConversationTurn

        turns = [
            ConversationTurn(user_text="iPhone worth 50k", response_text="", created_at=NOON),
            ConversationTurn(user_text="what about a bike for 80000", response_text="", created_at=NOON),
        ]

        self.assertEqual(amount_from_transcript(turns), Decimal("80000"))
        self.assertIsNone(amount_from_transcript([]))
