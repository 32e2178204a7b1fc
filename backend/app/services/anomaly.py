"""Advisory alerts for a just-committed expense."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.config import get_settings
from app.schemas.finance import FinancialEntry

logger = logging.getLogger(__name__)

UNUSUAL_AMOUNT = "unusual_amount"
LATE_NIGHT = "late_night"


@dataclass(frozen=True)
class AnomalyAlert:
    kind: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class AnomalyDetector:
    """Flags an expense that is more than ``multiplier`` times the category mean,
    or that happened between midnight and 6am local time.

    Alerts never block or undo the commit they describe.
    """

    def __init__(
        self,
        *,
        multiplier: float = 2.0,
        night_start_hour: int = 23,
        night_end_hour: int = 6,
        timezone_name: Optional[str] = None,
        currency_symbol: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        self.multiplier = multiplier
        self.night_start_hour = night_start_hour
        self.night_end_hour = night_end_hour
        self.currency_symbol = currency_symbol or settings.currency_symbol
        tz_name = timezone_name or settings.default_timezone
        try:
            self.tz = ZoneInfo(tz_name)
        except ZoneInfoNotFoundError:
            logger.warning("Unknown timezone %r, using UTC for late-night checks", tz_name)
            self.tz = ZoneInfo("UTC")

    def check(
        self, expense: FinancialEntry, history: Iterable[FinancialEntry], *, time_known: bool = True
    ) -> list[AnomalyAlert]:
        """Run both checks. Pass ``time_known=False`` when only the date was recorded."""
        alerts: list[AnomalyAlert] = []
        amount_alert = self.check_amount(expense, history)
        if amount_alert:
            alerts.append(amount_alert)
        time_alert = self.check_time(expense) if time_known else None
        if time_alert:
            alerts.append(time_alert)
        return alerts

    def check_amount(self, expense: FinancialEntry, history: Iterable[FinancialEntry]) -> Optional[AnomalyAlert]:
        prior = [
            entry.amount
            for entry in history
            if entry.category == expense.category and (expense.id is None or entry.id != expense.id)
        ]
        if not prior:
            return None
        mean = sum(prior, Decimal("0")) / len(prior)
        if expense.amount > Decimal(str(self.multiplier)) * mean:
            return AnomalyAlert(
                UNUSUAL_AMOUNT,
                f"UNUSUAL: {self.currency_symbol}{expense.amount} is more than "
                f"{self.multiplier:g}x your usual {expense.category} spending",
            )
        return None

    def check_time(self, expense: FinancialEntry) -> Optional[AnomalyAlert]:
        occurred = expense.occurred_at
        local = occurred.astimezone(self.tz) if occurred.tzinfo else occurred.replace(tzinfo=self.tz)
        hour = local.hour
        # hour > 23 never happens; the late evening bound is kept for symmetry.
        if hour < self.night_end_hour or hour > self.night_start_hour:
            return AnomalyAlert(
                LATE_NIGHT,
                f"LATE NIGHT: Purchase at {hour:02d}:00 - was this intentional?",
            )
        return None
