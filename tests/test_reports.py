from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidArgument
from models import TransactionType
from periods import report_buckets, report_range
from schemas import BudgetIn, CategoryBudgetIn, TransactionIn
from services import BudgetService, ReportService, TransactionService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def seed_march(session: Session) -> None:
    BudgetService(session, 1, timezone="UTC").update(
        BudgetIn(
            total_budget_cents=100000,
            category_budgets=[
                CategoryBudgetIn(category="Food", budget_amount_cents=40000),
                CategoryBudgetIn(category="Rent", budget_amount_cents=50000),
            ],
        )
    )
    service = TransactionService(session, 1, timezone="UTC")
    for category, amount, when, txn_type in [
        ("Food", 1000, datetime(2025, 2, 20, 12), TransactionType.expense),
        ("Salary", 200000, datetime(2025, 3, 1, 9), TransactionType.income),
        ("Food", 2000, datetime(2025, 3, 2, 10), TransactionType.expense),
        ("Travel", 5000, datetime(2025, 3, 10, 13, 30), TransactionType.expense),
        ("Food", 4000, datetime(2025, 3, 30, 18), TransactionType.expense),
    ]:
        service.create(
            TransactionIn(category=category, amount_cents=amount, type=txn_type, date=when)
        )


@pytest.mark.parametrize(
    "period, labels",
    [
        ("week", ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]),
        ("month", ["W1", "W2", "W3", "W4"]),
        ("year", ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
                  "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]),
    ],
)
def test_buckets_cover_the_whole_period(period, labels) -> None:
    window = report_range(period, datetime(2025, 3, 10, 15))
    buckets = report_buckets(window)

    assert [bucket.label for bucket in buckets] == labels
    assert buckets[0].start == window.start
    assert buckets[-1].contains(window.end)
    for left, right in zip(buckets, buckets[1:]):
        assert left.end == right.start


def test_day_buckets_run_from_six_to_midnight() -> None:
    window = report_range("day", datetime(2025, 3, 4, 12))
    buckets = report_buckets(window)

    assert [bucket.label for bucket in buckets] == [
        "06:00", "09:00", "12:00", "15:00", "18:00", "21:00"
    ]
    assert buckets[0].start == datetime(2025, 3, 4, 6)
    assert buckets[-1].contains(datetime(2025, 3, 4, 23, 59))
    assert buckets[-1].contains(window.end)
    assert not any(bucket.contains(datetime(2025, 3, 4, 5, 30)) for bucket in buckets)
    for left, right in zip(buckets, buckets[1:]):
        assert left.end == right.start


def test_week_starts_on_sunday_and_month_absorbs_tail() -> None:
    week = report_range("week", datetime(2025, 3, 10, 15))
    assert week.start == datetime(2025, 3, 9)

    month = report_range("month", datetime(2025, 3, 10))
    fourth = report_buckets(month)[3]
    assert fourth.start == datetime(2025, 3, 22)
    assert fourth.contains(datetime(2025, 3, 31, 23, 59))


def test_unknown_period_is_rejected() -> None:
    with pytest.raises(InvalidArgument):
        report_range("fortnight", datetime(2025, 3, 10))


def test_report_without_budget_or_activity() -> None:
    with make_session() as session:
        report = ReportService(session, 1, timezone="UTC").period_report(
            None, now=datetime(2025, 3, 10)
        )

        assert report["period"] == "month"
        assert report["budget_data"]["has_budget"] is False
        assert report["summary"]["budget_used_percentage"] == 0
        assert report["category_breakdown"] == []
        assert [point["height"] for point in report["time_series_data"]] == [0, 0, 0, 0]


def test_month_report_merges_budget_and_activity() -> None:
    with make_session() as session:
        seed_march(session)

        report = ReportService(session, 1, timezone="UTC").period_report(
            "month", now=datetime(2025, 3, 15, 12)
        )

        summary = report["summary"]
        assert summary["total_income_cents"] == 200000
        assert summary["total_expenses_cents"] == 11000
        assert summary["net_amount_cents"] == 189000
        assert summary["total_spent_cents"] == 12000
        assert summary["budget_used_percentage"] == 12
        assert summary["transaction_count"] == 4

        breakdown = report["category_breakdown"]
        assert [item["category"] for item in breakdown] == ["Food", "Travel", "Rent"]
        food, travel, rent = breakdown
        assert (food["total_cents"], food["count"], food["percentage"]) == (6000, 2, 50)
        assert (travel["total_cents"], travel["percentage"]) == (5000, 42)
        assert (rent["total_cents"], rent["count"], rent["from_budget"]) == (0, 0, True)

        series = report["time_series_data"]
        assert [point["amount_cents"] for point in series] == [2000, 5000, 0, 4000]
        assert [point["height"] for point in series] == [0.4, 1.0, 0.0, 0.8]


def test_day_and_week_reports_place_expenses_in_buckets() -> None:
    with make_session() as session:
        seed_march(session)
        reports = ReportService(session, 1, timezone="UTC")
        now = datetime(2025, 3, 10, 15)

        day = reports.period_report("day", now=now)
        assert [point["amount_cents"] for point in day["time_series_data"]][2] == 5000
        assert day["summary"]["total_expenses_cents"] == 5000

        week = reports.period_report("week", now=now)
        amounts = {point["label"]: point["amount_cents"] for point in week["time_series_data"]}
        assert amounts["Mon"] == 5000
        assert sum(amounts.values()) == 5000


def test_report_falls_back_to_window_spend_when_budget_is_empty() -> None:
    with make_session() as session:
        BudgetService(session, 1, timezone="UTC").get()
        session.commit()

        report = ReportService(session, 1, timezone="UTC").period_report(
            "year", now=datetime(2025, 6, 1)
        )

        assert report["budget_data"]["has_budget"] is True
        assert report["summary"]["total_spent_cents"] == 0
        assert report["summary"]["budget_used_percentage"] == 0


def test_category_comparison_between_months() -> None:
    with make_session() as session:
        seed_march(session)

        result = ReportService(session, 1, timezone="UTC").category_comparison(
            datetime(2025, 2, 1),
            datetime(2025, 2, 28, 23, 59, 59),
            datetime(2025, 3, 1),
            datetime(2025, 3, 31, 23, 59, 59),
        )

        assert result["period1"]["total_cents"] == 1000
        assert result["period1"]["transaction_count"] == 1
        assert result["period2"]["total_cents"] == 11000
        assert result["period2"]["transaction_count"] == 3
        assert result["overall"] == {
            "difference_cents": 10000,
            "percentage_change": 1000,
            "trend": "increased",
        }

        food = result["category_comparison"]["Food"]
        assert food["period1_cents"] == 1000
        assert food["period2_cents"] == 6000
        assert food["percentage_change"] == 500
        travel = result["category_comparison"]["Travel"]
        assert (travel["percentage_change"], travel["trend"]) == (100, "increased")


def test_category_comparison_rejects_inverted_window() -> None:
    with make_session() as session:
        with pytest.raises(InvalidArgument):
            ReportService(session, 1, timezone="UTC").category_comparison(
                datetime(2025, 3, 1),
                datetime(2025, 2, 1),
                datetime(2025, 3, 1),
                datetime(2025, 3, 31),
            )
