from datetime import datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from database import Base, is_transient_error
from errors import ConflictError, InvalidArgument, NotFound
from ledger import BudgetLedger
from models import Transaction, TransactionType
from schemas import BudgetIn, CategoryBudgetIn, ExpenseIn, TransactionIn, TransactionUpdateIn
from services import BudgetService, TransactionFilters, TransactionService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def txn_service(session: Session, user_id: int = 1, **kwargs) -> TransactionService:
    return TransactionService(session, user_id, timezone="UTC", **kwargs)


def expense(category: str, amount_cents: int, when: datetime, description: str = "") -> TransactionIn:
    return TransactionIn(
        category=category,
        amount_cents=amount_cents,
        description=description,
        type=TransactionType.expense,
        date=when,
    )


def spent(session: Session, category: str, user_id: int = 1) -> int:
    budget = BudgetLedger(session, user_id).find()
    for row in budget.categories:
        if row.category == category:
            return row.spent_amount_cents
    return 0


def test_expense_creation_charges_budget_and_income_does_not() -> None:
    with make_session() as session:
        service = txn_service(session)
        service.create(expense("Food", 1500, datetime(2025, 3, 2, 12)))
        service.create(
            TransactionIn(
                category="Salary",
                amount_cents=250000,
                type=TransactionType.income,
                date=datetime(2025, 3, 1, 9),
            )
        )

        budget = BudgetLedger(session, 1).find()
        assert budget.total_spent_cents == 1500
        assert [row.category for row in budget.categories] == ["Food"]


def test_update_reverses_old_effect_before_applying_new_one() -> None:
    with make_session() as session:
        service = txn_service(session)
        txn = service.create(expense("Food", 1000, datetime(2025, 3, 2)))

        service.update(txn.id, TransactionUpdateIn(amount_cents=2500))
        assert spent(session, "Food") == 2500

        service.update(txn.id, TransactionUpdateIn(category="Travel"))
        assert spent(session, "Food") == 0
        assert spent(session, "Travel") == 2500

        service.update(txn.id, TransactionUpdateIn(type=TransactionType.income))
        assert spent(session, "Travel") == 0
        assert BudgetLedger(session, 1).find().total_spent_cents == 0

        service.update(txn.id, TransactionUpdateIn(type=TransactionType.expense))
        assert spent(session, "Travel") == 2500


def test_description_only_update_leaves_budget_alone() -> None:
    with make_session() as session:
        service = txn_service(session)
        txn = service.create(expense("Food", 1000, datetime(2025, 3, 2)))
        version = BudgetLedger(session, 1).find().version

        updated = service.update(txn.id, TransactionUpdateIn(description="Groceries"))

        assert updated.description == "Groceries"
        assert BudgetLedger(session, 1).find().version == version


def test_delete_reverses_expense() -> None:
    with make_session() as session:
        service = txn_service(session)
        keep = service.create(expense("Food", 400, datetime(2025, 3, 2)))
        gone = service.create(expense("Food", 600, datetime(2025, 3, 3)))

        service.delete(gone.id)

        assert spent(session, "Food") == 400
        with pytest.raises(NotFound):
            service.get(gone.id)
        assert service.get(keep.id).amount_cents == 400


def test_failed_ledger_write_rolls_back_transaction(monkeypatch) -> None:
    def boom(self, category, delta_cents):
        raise RuntimeError("ledger unavailable")

    with make_session() as session:
        monkeypatch.setattr(BudgetLedger, "apply_expense_delta", boom)

        with pytest.raises(RuntimeError):
            txn_service(session).create(expense("Food", 1000, datetime(2025, 3, 2)))

        assert session.scalar(select(func.count(Transaction.id))) == 0
        assert BudgetLedger(session, 1).find() is None


def test_transient_conflict_is_retried_once_without_double_counting(monkeypatch) -> None:
    original = BudgetLedger.apply_expense_delta
    calls = {"count": 0}

    def flaky(self, category, delta_cents):
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("UPDATE category_budgets", {}, Exception("database is locked"))
        return original(self, category, delta_cents)

    monkeypatch.setattr("database.time.sleep", lambda seconds: None)
    with make_session() as session:
        monkeypatch.setattr(BudgetLedger, "apply_expense_delta", flaky)

        txn_service(session).create(expense("Food", 1000, datetime(2025, 3, 2)))

        assert calls["count"] == 2
        assert session.scalar(select(func.count(Transaction.id))) == 1
        assert spent(session, "Food") == 1000


def test_persistent_conflict_surfaces_as_conflict_error(monkeypatch) -> None:
    def locked(self, category, delta_cents):
        raise OperationalError("UPDATE category_budgets", {}, Exception("database is locked"))

    monkeypatch.setattr("database.time.sleep", lambda seconds: None)
    with make_session() as session:
        monkeypatch.setattr(BudgetLedger, "apply_expense_delta", locked)

        with pytest.raises(ConflictError):
            txn_service(session, conflict_retries=2).create(
                expense("Food", 1000, datetime(2025, 3, 2))
            )
        assert session.scalar(select(func.count(Transaction.id))) == 0


def test_transactions_are_scoped_to_their_owner() -> None:
    with make_session() as session:
        txn = txn_service(session, 1).create(expense("Food", 1000, datetime(2025, 3, 2)))

        with pytest.raises(NotFound):
            txn_service(session, 2).get(txn.id)
        with pytest.raises(NotFound):
            txn_service(session, 2).delete(txn.id)
        assert spent(session, "Food") == 1000


def test_list_filters_sorts_and_paginates() -> None:
    with make_session() as session:
        service = txn_service(session)
        for day, category, amount in [
            (1, "Food", 300),
            (2, "Rent", 90000),
            (3, "Food", 1200),
            (4, "Travel", 700),
            (5, "Food", 50),
        ]:
            service.create(expense(category, amount, datetime(2025, 3, day, 12)))

        page = service.list(TransactionFilters(category="Food"), page=1, page_size=2)
        assert page.total == 3
        assert page.total_pages == 2
        assert [txn.amount_cents for txn in page.items] == [50, 1200]

        by_amount = service.list(sort_field="amount", sort_order="asc")
        assert [txn.amount_cents for txn in by_amount.items] == [50, 300, 700, 1200, 90000]

        windowed = service.list(
            TransactionFilters(start=datetime(2025, 3, 2), end=datetime(2025, 3, 4, 23, 59))
        )
        assert [txn.category for txn in windowed.items] == ["Travel", "Food", "Rent"]

        with pytest.raises(InvalidArgument):
            service.list(sort_field="description")
        with pytest.raises(InvalidArgument):
            service.list(TransactionFilters(start=datetime(2025, 3, 5), end=datetime(2025, 3, 1)))


def test_summary_recent_and_groupings() -> None:
    with make_session() as session:
        service = txn_service(session)
        service.create(expense("Food", 1000, datetime(2025, 3, 1, 8)))
        service.create(expense("Food", 500, datetime(2025, 3, 1, 19)))
        service.create(expense("Travel", 2000, datetime(2025, 3, 2, 10)))
        service.create(
            TransactionIn(
                category="Salary",
                amount_cents=10000,
                type=TransactionType.income,
                date=datetime(2025, 3, 2, 9),
            )
        )

        summary = service.summary()
        assert summary["total_income_cents"] == 10000
        assert summary["total_expenses_cents"] == 3500
        assert summary["net_amount_cents"] == 6500
        assert summary["transaction_count"] == 4
        assert summary["expense_count"] == 3
        assert summary["category_breakdown"]["Food"] == {"total_cents": 1500, "count": 2}

        recent = service.recent(2)
        assert [txn.category for txn in recent] == ["Travel", "Salary"]
        assert len(service.recent(500)) == 4

        grouped = service.grouped_by_date()
        assert list(grouped) == ["2025-03-02", "2025-03-01"]
        assert len(grouped["2025-03-01"]) == 2

        categories = service.by_category()
        assert categories["Food"]["total_cents"] == 1500
        assert categories["Travel"]["count"] == 1
        assert "Salary" not in categories


def test_add_expense_requires_existing_budget() -> None:
    with make_session() as session:
        budgets = BudgetService(session, 1, timezone="UTC")
        with pytest.raises(NotFound):
            budgets.add_expense(ExpenseIn(category="Food", amount_cents=500))

        budgets.update(
            BudgetIn(
                total_budget_cents=20000,
                category_budgets=[CategoryBudgetIn(category="Food", budget_amount_cents=8000)],
            )
        )
        txn, budget = budgets.add_expense(
            ExpenseIn(category="Food", amount_cents=500, description="Snacks")
        )

        assert txn.type == TransactionType.expense
        assert txn.description == "Snacks"
        assert budget.total_spent_cents == 500
        assert budget.budget_left_cents == 19500


def test_create_then_delete_restores_prior_totals() -> None:
    with make_session() as session:
        service = txn_service(session)
        service.create(expense("Food", 1200, datetime(2025, 3, 1)))
        before = BudgetLedger(session, 1).find().total_spent_cents

        txn = service.create(expense("Food", 500, datetime(2025, 3, 2)))
        assert BudgetLedger(session, 1).find().total_spent_cents == before + 500
        assert spent(session, "Food") == 1700

        service.delete(txn.id)
        assert BudgetLedger(session, 1).find().total_spent_cents == before
        assert spent(session, "Food") == 1200


def test_moving_an_expense_between_categories() -> None:
    with make_session() as session:
        service = txn_service(session)
        txn = service.create(expense("Food", 500, datetime(2025, 3, 2)))

        service.update(txn.id, TransactionUpdateIn(category="Transport", amount_cents=300))

        assert spent(session, "Food") == 0
        assert spent(session, "Transport") == 300
        assert BudgetLedger(session, 1).find().total_spent_cents == 300


def test_racing_category_insert_is_retried(monkeypatch) -> None:
    original = BudgetLedger.apply_expense_delta
    calls = {"count": 0}

    def racing(self, category, delta_cents):
        calls["count"] += 1
        if calls["count"] == 1:
            raise IntegrityError(
                "INSERT INTO category_budgets",
                {},
                Exception(
                    "UNIQUE constraint failed: "
                    "category_budgets.budget_id, category_budgets.category"
                ),
            )
        return original(self, category, delta_cents)

    monkeypatch.setattr("database.time.sleep", lambda seconds: None)
    with make_session() as session:
        monkeypatch.setattr(BudgetLedger, "apply_expense_delta", racing)

        txn_service(session).create(expense("Food", 700, datetime(2025, 3, 2)))

        assert calls["count"] == 2
        assert spent(session, "Food") == 700


def test_constraint_violations_are_not_retried(monkeypatch) -> None:
    calls = {"count": 0}

    def broken(self, category, delta_cents):
        calls["count"] += 1
        raise IntegrityError(
            "UPDATE category_budgets",
            {},
            Exception("CHECK constraint failed: ck_category_spent_amount_positive"),
        )

    monkeypatch.setattr("database.time.sleep", lambda seconds: None)
    with make_session() as session:
        monkeypatch.setattr(BudgetLedger, "apply_expense_delta", broken)

        with pytest.raises(IntegrityError):
            txn_service(session).create(expense("Food", 700, datetime(2025, 3, 2)))

        assert calls["count"] == 1
        assert session.scalar(select(func.count(Transaction.id))) == 0


def test_only_budget_unique_races_count_as_conflicts() -> None:
    def integrity(message: str) -> IntegrityError:
        return IntegrityError("stmt", {}, Exception(message))

    assert is_transient_error(integrity("UNIQUE constraint failed: budgets.user_id"))
    assert is_transient_error(
        integrity('duplicate key value violates unique constraint "uq_category_budget_category"')
    )
    assert not is_transient_error(integrity("UNIQUE constraint failed: users.email"))
    assert not is_transient_error(integrity("NOT NULL constraint failed: budgets.user_id"))
