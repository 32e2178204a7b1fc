import unittest
from datetime import datetime, timezone
from decimal import Decimal

from app.schemas.finance import EntryKind, FinancialEntry
from app.services.anomaly import LATE_NIGHT, UNUSUAL_AMOUNT, AnomalyDetector

NOON = datetime(2026, 10, 5, 12, 0, tzinfo=timezone.utc)


def _expense(amount, *, category="food", occurred_at=NOON, entry_id=None):
    return FinancialEntry(
        id=entry_id,
        kind=EntryKind.EXPENSE,
        amount=Decimal(amount),
        category=category,
        name="test",
        occurred_at=occurred_at,
    )


class AnomalyDetectorTests(unittest.TestCase):
    def setUp(self):
        self.detector = AnomalyDetector(timezone_name="UTC", currency_symbol="₹")

    def test_more_than_twice_the_mean_is_flagged(self):
        history = [_expense("100"), _expense("200")]

        alerts = self.detector.check(_expense("301"), history)

        self.assertEqual([a.kind for a in alerts], [UNUSUAL_AMOUNT])
        self.assertIn("₹301", alerts[0].message)
        self.assertIn("food", alerts[0].message)

    def test_exactly_twice_the_mean_is_not_flagged(self):
        history = [_expense("100"), _expense("200")]

        self.assertEqual(self.detector.check(_expense("300"), history), [])

    def test_no_history_means_no_amount_alert(self):
        self.assertIsNone(self.detector.check_amount(_expense("99999"), []))

    def test_other_categories_are_ignored(self):
        history = [_expense("10", category="transport")]

        self.assertIsNone(self.detector.check_amount(_expense("5000"), history))

    def test_saved_expense_excluded_from_its_own_baseline(self):
        saved = _expense("1000", entry_id="e-3")
        history = [_expense("100", entry_id="e-1"), _expense("100", entry_id="e-2"), saved]

        alert = self.detector.check_amount(saved, history)

        self.assertIsNotNone(alert)

    def test_early_morning_purchase_is_flagged(self):
        alerts = self.detector.check(_expense("50", occurred_at=datetime(2026, 10, 5, 2, 30, tzinfo=timezone.utc)), [])

        self.assertEqual([a.kind for a in alerts], [LATE_NIGHT])
        self.assertIn("02:00", alerts[0].message)

    def test_daytime_and_late_evening_are_not_flagged(self):
        for hour in (6, 12, 23):
            with self.subTest(hour=hour):
                expense = _expense("50", occurred_at=datetime(2026, 10, 5, hour, 15, tzinfo=timezone.utc))
                self.assertIsNone(self.detector.check_time(expense))

    def test_local_timezone_is_used_for_night_check(self):
        detector = AnomalyDetector(timezone_name="Asia/Kolkata")
        # 21:00 UTC is 02:30 in India
        expense = _expense("50", occurred_at=datetime(2026, 10, 5, 21, 0, tzinfo=timezone.utc))

        self.assertIsNotNone(detector.check_time(expense))

    def test_unknown_timezone_falls_back_to_utc(self):
        detector = AnomalyDetector(timezone_name="Mars/Olympus_Mons")

        self.assertEqual(str(detector.tz), "UTC")

    def test_both_alerts_can_fire(self):
        expense = _expense("900", occurred_at=datetime(2026, 10, 5, 1, 0, tzinfo=timezone.utc))

        alerts = self.detector.check(expense, [_expense("100")])

        self.assertEqual([a.kind for a in alerts], [UNUSUAL_AMOUNT, LATE_NIGHT])
        self.assertEqual(alerts[0].as_dict()["kind"], UNUSUAL_AMOUNT)

    def test_time_check_skipped_when_only_the_date_is_known(self):
        expense = _expense("50", occurred_at=datetime(2026, 10, 5, 0, 0, tzinfo=timezone.utc))

        self.assertEqual(self.detector.check(expense, [], time_known=False), [])
