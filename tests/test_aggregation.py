from decimal import Decimal

from aggregation import (
    UNCATEGORIZED,
    PeriodSummary,
    TypeTotals,
    alert_payload,
    category_breakdown,
    evaluate_overspend,
    savings_rate,
    summary_payload,
    totals_by_type,
)
from models import TransactionType


def test_totals_by_type_fills_missing_types() -> None:
    totals = totals_by_type([(TransactionType.expense, 4_500, 3)])
    assert totals[TransactionType.expense] == TypeTotals(4_500, 3)
    assert totals[TransactionType.income] == TypeTotals(0, 0)
    assert totals[TransactionType.expense].average_cents == Decimal(1_500)
    assert totals[TransactionType.income].average_cents == Decimal(0)


def test_monthly_summary_example() -> None:
    summary = PeriodSummary(
        income=TypeTotals(550_000, 1),
        expense=TypeTotals(10_000, 2),
    )
    payload = summary_payload(summary)
    assert payload["income"] == {"total": 5500.0, "transactions": 1, "average": 5500.0}
    assert payload["expenses"] == {"total": 100.0, "transactions": 2, "average": 50.0}
    assert payload["balance"] == 5400.0
    assert payload["savings_rate"] == "98.18"


def test_savings_rate_without_income_is_zero() -> None:
    assert savings_rate(0, 0) == 0
    assert savings_rate(0, 12_000) == 0
    assert savings_rate(10_000, 15_000) == "-50.00"


def test_breakdown_merges_uncategorized_and_sorts_by_total() -> None:
    rows = [
        (1, "Food", TransactionType.expense, 2_000, 2),
        (None, None, TransactionType.expense, 500, 1),
        (2, "Rent", TransactionType.expense, 90_000, 1),
        (None, None, TransactionType.expense, 700, 1),
        (3, "Salary", TransactionType.income, 300_000, 1),
    ]
    grouped = category_breakdown(rows)
    expenses = grouped[TransactionType.expense]
    assert [item.name for item in expenses] == ["Rent", "Food", UNCATEGORIZED]
    assert expenses[-1].total_cents == 1_200
    assert expenses[-1].count == 2
    expense_rows = [row for row in rows if row[2] == TransactionType.expense]
    assert sum(item.total_cents for item in expenses) == sum(
        row[3] for row in expense_rows
    )
    assert sum(item.count for item in expenses) == sum(row[4] for row in expense_rows)
    assert [item.name for item in grouped[TransactionType.income]] == ["Salary"]


def test_breakdown_payload_is_included_on_request() -> None:
    grouped = category_breakdown([(1, "Food", TransactionType.expense, 2_550, 2)])
    summary = PeriodSummary(
        income=TypeTotals(),
        expense=TypeTotals(2_550, 2),
        expense_by_category=grouped[TransactionType.expense],
    )
    payload = summary_payload(summary, include_breakdown=True)
    assert payload["expenses"]["by_category"] == [
        {"category_id": 1, "name": "Food", "total": 25.5, "transactions": 2}
    ]
    assert payload["income"]["by_category"] == []
    assert "by_category" not in summary_payload(summary)["expenses"]


def test_no_alert_when_nothing_recorded() -> None:
    alert = evaluate_overspend(0, 0)
    assert alert.alert is False
    assert alert.message is None
    assert alert.spending_rate is None


def test_alert_when_expenses_exceed_income() -> None:
    alert = evaluate_overspend(100_000, 125_050)
    assert alert.alert is True
    assert alert.message == "You've exceeded your monthly budget by $250.50"
    payload = alert_payload(alert)
    assert payload["details"]["balance"] == -250.5
    assert payload["details"]["spending_rate"] == "125.1"


def test_alert_when_expenses_without_income() -> None:
    alert = evaluate_overspend(0, 4_200)
    assert alert.alert is True
    assert alert.message == (
        "You have expenses of $42.00 but no recorded income this month"
    )


def test_alert_above_eighty_percent() -> None:
    alert = evaluate_overspend(100_000, 85_000)
    assert alert.alert is True
    assert alert.message == (
        "You've spent 85.0% of your monthly income. "
        "Consider monitoring your expenses."
    )


def test_no_alert_at_exactly_eighty_percent() -> None:
    alert = evaluate_overspend(100_000, 80_000)
    assert alert.alert is False
    assert alert.message is None
    assert alert.spending_rate == "80.0"


def test_august_example_from_rows() -> None:
    totals = totals_by_type(
        [(TransactionType.expense, 4_550, 1), (TransactionType.income, 250_000, 1)]
    )
    summary = PeriodSummary(
        income=totals[TransactionType.income],
        expense=totals[TransactionType.expense],
    )
    payload = summary_payload(summary)
    assert payload["income"]["total"] == 2500.0
    assert payload["expenses"]["total"] == 45.5
    assert payload["balance"] == 2454.5
    assert payload["savings_rate"] == "98.18"
