"""Pure affordability and savings-timeline arithmetic over aggregate figures."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
from enum import StrEnum
from typing import Optional

EMERGENCY_FUND_MONTHS = Decimal("6")
RESERVE_MONTHS = Decimal("3")
INCOME_SHARE_LIMIT = Decimal("0.5")

AGGRESSIVE_RATE = Decimal("1.0")
BALANCED_RATE = Decimal("0.7")
CONSERVATIVE_RATE = Decimal("0.5")

ZERO = Decimal("0")


class AffordabilityVerdict(StrEnum):
    AFFORDABLE = "AFFORDABLE"
    RISKY = "RISKY"
    EXPENSIVE_FOR_INCOME = "EXPENSIVE_FOR_INCOME"
    NOT_AFFORDABLE = "NOT_AFFORDABLE"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class AffordabilityResult:
    verdict: AffordabilityVerdict
    risk: RiskLevel
    purchase_amount: Decimal
    balance: Decimal
    monthly_income: Decimal
    monthly_expenses: Decimal
    remaining_balance: Decimal
    safe_spending_limit: Decimal
    emergency_fund: Decimal
    income_share_pct: Optional[Decimal] = None
    shortfall: Optional[Decimal] = None

    @property
    def affordable(self) -> bool:
        return self.verdict is AffordabilityVerdict.AFFORDABLE


def emergency_fund(monthly_expenses: Decimal) -> Decimal:
    return EMERGENCY_FUND_MONTHS * monthly_expenses


def assess_affordability(
    *,
    balance: Decimal,
    monthly_income: Decimal,
    monthly_expenses: Decimal,
    purchase_amount: Decimal,
) -> AffordabilityResult:
    """Apply the affordability rules in priority order; the first match wins.

    1. balance <= 0                         -> NOT_AFFORDABLE / high
    2. purchase > balance                   -> NOT_AFFORDABLE / high (with shortfall)
    3. purchase > balance - 3 x expenses    -> RISKY / medium
    4. purchase / income > 0.5              -> EXPENSIVE_FOR_INCOME / medium
       (no positive income counts as exceeding the share)
    5. otherwise                            -> AFFORDABLE / low
    """
    reserve = RESERVE_MONTHS * monthly_expenses
    safe_limit = max(ZERO, balance - reserve)
    share = purchase_amount / monthly_income if monthly_income > 0 else None

    shortfall = None
    if balance <= 0:
        verdict, risk = AffordabilityVerdict.NOT_AFFORDABLE, RiskLevel.HIGH
    elif purchase_amount > balance:
        verdict, risk = AffordabilityVerdict.NOT_AFFORDABLE, RiskLevel.HIGH
        shortfall = purchase_amount - balance
    elif purchase_amount > balance - reserve:
        verdict, risk = AffordabilityVerdict.RISKY, RiskLevel.MEDIUM
    elif share is None or share > INCOME_SHARE_LIMIT:
        verdict, risk = AffordabilityVerdict.EXPENSIVE_FOR_INCOME, RiskLevel.MEDIUM
    else:
        verdict, risk = AffordabilityVerdict.AFFORDABLE, RiskLevel.LOW

    return AffordabilityResult(
        verdict=verdict,
        risk=risk,
        purchase_amount=purchase_amount,
        balance=balance,
        monthly_income=monthly_income,
        monthly_expenses=monthly_expenses,
        remaining_balance=balance - purchase_amount,
        safe_spending_limit=safe_limit,
        emergency_fund=emergency_fund(monthly_expenses),
        income_share_pct=(share * 100).quantize(Decimal("0.1")) if share is not None else None,
        shortfall=shortfall,
    )


@dataclass(frozen=True)
class TimelineOption:
    key: str
    label: str
    rate: Decimal
    monthly_contribution: Decimal
    months: int


@dataclass(frozen=True)
class SavingsTimeline:
    target_amount: Decimal
    balance: Decimal
    monthly_surplus: Decimal
    shortfall: Decimal
    emergency_fund: Decimal
    options: tuple[TimelineOption, ...] = ()

    @property
    def feasible(self) -> bool:
        return self.monthly_surplus > 0

    @property
    def affordable_now(self) -> bool:
        return self.feasible and self.shortfall <= 0

    @property
    def deficit(self) -> Decimal:
        return -self.monthly_surplus if self.monthly_surplus < 0 else ZERO

    def option(self, key: str) -> Optional[TimelineOption]:
        return next((o for o in self.options if o.key == key), None)


def months_to_save(shortfall: Decimal, monthly_contribution: Decimal) -> int:
    if shortfall <= 0:
        return 0
    return int((shortfall / monthly_contribution).to_integral_value(rounding=ROUND_CEILING))


def project_savings_timeline(
    *,
    balance: Decimal,
    monthly_income: Decimal,
    monthly_expenses: Decimal,
    target_amount: Decimal,
) -> SavingsTimeline:
    """Months to reach *target_amount* at 100%, 70% and 50% of the monthly surplus,
    plus 100% toward the target and a six-month emergency fund.

    Infeasible when the surplus is not positive; affordable now when the
    balance already covers the target.
    """
    surplus = monthly_income - monthly_expenses
    shortfall = target_amount - balance
    fund = emergency_fund(monthly_expenses)
    base = dict(
        target_amount=target_amount,
        balance=balance,
        monthly_surplus=surplus,
        shortfall=shortfall,
        emergency_fund=fund,
    )
    if surplus <= 0 or shortfall <= 0:
        return SavingsTimeline(**base)

    options = []
    for key, label, rate in (
        ("aggressive", "Aggressive Saving (100% surplus)", AGGRESSIVE_RATE),
        ("balanced", "Balanced Saving (70% surplus)", BALANCED_RATE),
        ("conservative", "Conservative Saving (50% surplus)", CONSERVATIVE_RATE),
    ):
        contribution = surplus * rate
        options.append(TimelineOption(key, label, rate, contribution, months_to_save(shortfall, contribution)))

    options.append(
        TimelineOption(
            "with_emergency_fund",
            "With Emergency Fund",
            AGGRESSIVE_RATE,
            surplus,
            months_to_save(target_amount + fund - balance, surplus),
        )
    )
    return SavingsTimeline(**base, options=tuple(options))


def format_months(months: int) -> str:
    """14 -> "1 year, 2 months"; anything up to 1 -> "1 month"."""
    if months <= 1:
        return "1 month"
    if months < 12:
        return f"{months} months"
    years, remainder = divmod(months, 12)
    year_text = "1 year" if years == 1 else f"{years} years"
    if remainder == 0:
        return year_text
    month_text = "1 month" if remainder == 1 else f"{remainder} months"
    return f"{year_text}, {month_text}"
