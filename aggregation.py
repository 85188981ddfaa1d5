"""Period arithmetic over already grouped transaction rows.

Everything here works on integer cents so totals, balances and the
breakdown sums stay exact; conversion to JSON numbers happens in the
``*_payload`` helpers at the very end.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Union

from models import TransactionType
from money import cents_to_amount, format_cents

UNCATEGORIZED = "Uncategorized"
ALERT_RATIO = Decimal("0.8")


@dataclass(frozen=True)
class TypeTotals:
    total_cents: int = 0
    count: int = 0

    @property
    def average_cents(self) -> Decimal:
        if not self.count:
            return Decimal("0")
        return Decimal(self.total_cents) / Decimal(self.count)


@dataclass(frozen=True)
class CategoryTotal:
    category_id: Optional[int]
    name: str
    type: TransactionType
    total_cents: int
    count: int


@dataclass(frozen=True)
class PeriodSummary:
    income: TypeTotals
    expense: TypeTotals
    income_by_category: list[CategoryTotal] = field(default_factory=list)
    expense_by_category: list[CategoryTotal] = field(default_factory=list)

    @property
    def balance_cents(self) -> int:
        return self.income.total_cents - self.expense.total_cents

    @property
    def savings_rate(self) -> Union[str, int]:
        return savings_rate(self.income.total_cents, self.expense.total_cents)


@dataclass(frozen=True)
class OverspendAlert:
    alert: bool
    message: Optional[str]
    income_cents: int
    expense_cents: int
    spending_rate: Optional[str]

    @property
    def balance_cents(self) -> int:
        return self.income_cents - self.expense_cents


def totals_by_type(
    rows: Iterable[tuple[TransactionType, int, int]],
) -> dict[TransactionType, TypeTotals]:
    """Fold ``(type, total_cents, count)`` rows into one entry per type."""
    totals = {kind: TypeTotals() for kind in TransactionType}
    for kind, total, count in rows:
        kind = TransactionType(kind)
        current = totals[kind]
        totals[kind] = TypeTotals(
            total_cents=current.total_cents + int(total or 0),
            count=current.count + int(count or 0),
        )
    return totals


def category_breakdown(
    rows: Iterable[tuple[Optional[int], Optional[str], TransactionType, int, int]],
) -> dict[TransactionType, list[CategoryTotal]]:
    """Group ``(category_id, name, type, total_cents, count)`` rows per type.

    Rows without a category collapse into a single "Uncategorized" entry per
    type. Each list is ordered by descending total.
    """
    merged: dict[tuple[TransactionType, Optional[int]], CategoryTotal] = {}
    for category_id, name, kind, total, count in rows:
        kind = TransactionType(kind)
        key = (kind, category_id)
        label = name if category_id is not None and name else UNCATEGORIZED
        previous = merged.get(key)
        merged[key] = CategoryTotal(
            category_id=category_id,
            name=label,
            type=kind,
            total_cents=(previous.total_cents if previous else 0) + int(total or 0),
            count=(previous.count if previous else 0) + int(count or 0),
        )

    grouped: dict[TransactionType, list[CategoryTotal]] = {
        kind: [] for kind in TransactionType
    }
    for item in merged.values():
        grouped[item.type].append(item)
    for items in grouped.values():
        items.sort(key=lambda c: (-c.total_cents, c.name.lower()))
    return grouped


def savings_rate(income_cents: int, expense_cents: int) -> Union[str, int]:
    if income_cents <= 0:
        return 0
    balance = Decimal(income_cents - expense_cents)
    rate = balance / Decimal(income_cents) * 100
    return str(rate.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def spending_rate(income_cents: int, expense_cents: int) -> Optional[Decimal]:
    if income_cents <= 0:
        return None
    return Decimal(expense_cents) / Decimal(income_cents) * 100


def evaluate_overspend(income_cents: int, expense_cents: int) -> OverspendAlert:
    overspent = expense_cents > income_cents
    rate = spending_rate(income_cents, expense_cents)
    high_rate = rate is not None and rate > ALERT_RATIO * 100
    rate_text = (
        str(rate.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))
        if rate is not None
        else None
    )

    message: Optional[str] = None
    if overspent and income_cents > 0:
        message = (
            "You've exceeded your monthly budget by "
            f"${format_cents(expense_cents - income_cents)}"
        )
    elif overspent:
        message = (
            f"You have expenses of ${format_cents(expense_cents)} "
            "but no recorded income this month"
        )
    elif high_rate:
        message = (
            f"You've spent {rate_text}% of your monthly income. "
            "Consider monitoring your expenses."
        )

    return OverspendAlert(
        alert=overspent or high_rate,
        message=message,
        income_cents=income_cents,
        expense_cents=expense_cents,
        spending_rate=rate_text,
    )


def _type_payload(
    totals: TypeTotals, breakdown: Optional[list[CategoryTotal]] = None
) -> dict[str, object]:
    payload: dict[str, object] = {
        "total": cents_to_amount(totals.total_cents),
        "transactions": totals.count,
        "average": cents_to_amount(
            int(totals.average_cents.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        ),
    }
    if breakdown is not None:
        payload["by_category"] = [
            {
                "category_id": item.category_id,
                "name": item.name,
                "total": cents_to_amount(item.total_cents),
                "transactions": item.count,
            }
            for item in breakdown
        ]
    return payload


def summary_payload(
    summary: PeriodSummary, *, include_breakdown: bool = False
) -> dict[str, object]:
    return {
        "income": _type_payload(
            summary.income,
            summary.income_by_category if include_breakdown else None,
        ),
        "expenses": _type_payload(
            summary.expense,
            summary.expense_by_category if include_breakdown else None,
        ),
        "balance": cents_to_amount(summary.balance_cents),
        "savings_rate": summary.savings_rate,
    }


def alert_payload(alert: OverspendAlert) -> dict[str, object]:
    return {
        "alert": alert.alert,
        "message": alert.message,
        "details": {
            "total_income": cents_to_amount(alert.income_cents),
            "total_expenses": cents_to_amount(alert.expense_cents),
            "balance": cents_to_amount(alert.balance_cents),
            "spending_rate": alert.spending_rate,
        },
    }
