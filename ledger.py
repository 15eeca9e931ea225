import logging
from datetime import date, datetime
from typing import Optional, Sequence

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session, selectinload

from errors import InvalidArgument, NotFound
from models import (
    DEFAULT_CATEGORY_COLOR,
    DEFAULT_CATEGORY_ICON,
    Budget,
    CategoryBudget,
)
from schemas import CategoryBudgetIn


logger = logging.getLogger(__name__)


def month_label(on: date) -> str:
    return f"{on.year:04d}-{on.month:02d}"


def clean_category(name: Optional[str]) -> str:
    clean = (name or "").strip()
    if not clean:
        raise InvalidArgument("Category is required")
    return clean


class BudgetLedger:
    """Owns the spend totals of one user's budget.

    ``Budget.total_spent_cents`` always equals the sum of the category
    ``spent_amount_cents`` values; every write recomputes it in SQL from the
    category rows. The budget row is locked (``SELECT ... FOR UPDATE``) before
    any write so concurrent requests for the same user apply their deltas one
    after another. Nothing here commits: the caller's unit of work decides
    whether a ledger write lands together with the transaction-log write it
    compensates.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def find(self, *, for_update: bool = False) -> Optional[Budget]:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(Budget.user_id == self.user_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def get_or_init(self, *, today: Optional[date] = None) -> Budget:
        budget = self.find(for_update=True)
        if budget is not None:
            return budget
        budget = Budget(
            user_id=self.user_id,
            total_budget_cents=0,
            total_spent_cents=0,
            month=month_label(today or date.today()),
            version=1,
            categories=[],
        )
        self.session.add(budget)
        self.session.flush()
        logger.info(f"budget_init: user_id={self.user_id} budget_id={budget.id}")
        return budget

    def apply_expense_delta(self, category: str, delta_cents: int) -> Budget:
        category = clean_category(category)
        self.session.flush()
        budget = self.get_or_init()

        spent = CategoryBudget.spent_amount_cents + delta_cents
        result = self.session.execute(
            update(CategoryBudget)
            .where(
                CategoryBudget.budget_id == budget.id,
                CategoryBudget.category == category,
            )
            .values(spent_amount_cents=case((spent < 0, 0), else_=spent))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.add(
                CategoryBudget(
                    budget_id=budget.id,
                    category=category,
                    budget_amount_cents=0,
                    spent_amount_cents=max(0, delta_cents),
                    icon=DEFAULT_CATEGORY_ICON,
                    color=DEFAULT_CATEGORY_COLOR,
                    position=self._next_position(budget.id),
                )
            )
            self.session.flush()

        self._sync_total(budget.id)
        logger.info(
            f"ledger_delta: user_id={self.user_id} category={category} "
            f"delta_cents={delta_cents}"
        )
        return self._reload(budget.id)

    def set_allocations(
        self, total_budget_cents: int, categories: Sequence[CategoryBudgetIn]
    ) -> Budget:
        if total_budget_cents < 0:
            raise InvalidArgument("Valid total budget is required (must be >= 0)")
        budget = self.get_or_init()
        budget.total_budget_cents = total_budget_cents
        self._merge_categories(budget, categories)
        return self._finish_allocation(budget)

    def set_category_allocations(self, categories: Sequence[CategoryBudgetIn]) -> Budget:
        budget = self.get_or_init()
        self._merge_categories(budget, categories)
        return self._finish_allocation(budget)

    def set_total_budget(self, total_budget_cents: int) -> Budget:
        if total_budget_cents < 0:
            raise InvalidArgument("Valid total budget is required (must be >= 0)")
        budget = self.get_or_init()
        budget.total_budget_cents = total_budget_cents
        budget.version = budget.version + 1
        self.session.flush()
        return budget

    def reset_period(self, *, today: Optional[date] = None) -> Budget:
        budget = self.find(for_update=True)
        if budget is None:
            raise NotFound("Budget not found")
        for row in budget.categories:
            row.spent_amount_cents = 0
        budget.total_spent_cents = 0
        budget.month = month_label(today or date.today())
        budget.version = budget.version + 1
        self.session.flush()
        logger.info(f"budget_reset: user_id={self.user_id} month={budget.month}")
        return budget

    def _merge_categories(
        self, budget: Budget, categories: Sequence[CategoryBudgetIn]
    ) -> None:
        seen: set[str] = set()
        for item in categories:
            key = clean_category(item.category)
            if key in seen:
                raise InvalidArgument(f"Duplicate category: {key}")
            seen.add(key)

        existing = {row.category: row for row in budget.categories}
        rows: list[CategoryBudget] = []
        for position, item in enumerate(categories):
            key = clean_category(item.category)
            row = existing.get(key)
            if item.spent_amount_cents is not None:
                spent = item.spent_amount_cents
            elif row is not None:
                spent = row.spent_amount_cents
            else:
                spent = 0
            if row is None:
                row = CategoryBudget(category=key)
            row.budget_amount_cents = item.budget_amount_cents
            row.spent_amount_cents = spent
            row.icon = item.icon or row.icon or DEFAULT_CATEGORY_ICON
            row.color = item.color or row.color or DEFAULT_CATEGORY_COLOR
            row.position = position
            rows.append(row)
        budget.categories = rows

    def _finish_allocation(self, budget: Budget) -> Budget:
        budget.total_spent_cents = sum(row.spent_amount_cents for row in budget.categories)
        budget.version = budget.version + 1
        self.session.flush()
        logger.info(
            f"budget_allocations: user_id={self.user_id} "
            f"total_budget_cents={budget.total_budget_cents} "
            f"total_spent_cents={budget.total_spent_cents} "
            f"categories={len(budget.categories)}"
        )
        return budget

    def _next_position(self, budget_id: int) -> int:
        current = self.session.scalar(
            select(func.max(CategoryBudget.position)).where(
                CategoryBudget.budget_id == budget_id
            )
        )
        return 0 if current is None else int(current) + 1

    def _sync_total(self, budget_id: int) -> None:
        spent_sum = (
            select(func.coalesce(func.sum(CategoryBudget.spent_amount_cents), 0))
            .where(CategoryBudget.budget_id == budget_id)
            .scalar_subquery()
        )
        self.session.execute(
            update(Budget)
            .where(Budget.id == budget_id)
            .values(
                total_spent_cents=spent_sum,
                version=Budget.version + 1,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    def _reload(self, budget_id: int) -> Budget:
        return self.session.scalars(
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(Budget.id == budget_id)
            .execution_options(populate_existing=True)
        ).one()
