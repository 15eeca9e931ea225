from __future__ import annotations

import logging
import math
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import DEFAULT_CONFLICT_RETRIES, retry_on_conflict
from errors import DependencyFailure, InvalidArgument, NotFound, Unauthorized
from ledger import BudgetLedger, clean_category
from mailer import Mailer
from models import OTP, Budget, Transaction, TransactionType, User, percent_of
from periods import local_now, report_buckets, report_range, resolve_range, to_local
from schemas import (
    BudgetIn,
    CategoryBudgetsIn,
    ExpenseIn,
    LoginIn,
    ProfileUpdateIn,
    RegisterIn,
    TransactionIn,
    TransactionUpdateIn,
)
from security import (
    create_access_token,
    create_reset_token,
    decode_reset_token,
    hash_password,
    verify_password,
)
from storage import ObjectStorage


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200
MAX_RECENT = 50
MAX_AVATAR_BYTES = 10 * 1024 * 1024
IMAGE_CONTENT_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/tiff",
}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tif", ".tiff"}

SORT_COLUMNS = {
    "date": Transaction.date,
    "amount": Transaction.amount_cents,
    "category": Transaction.category,
    "created_at": Transaction.created_at,
}


def _percentage_change(before: int, after: int) -> int:
    if before > 0:
        return math.floor((after - before) / before * 100 + 0.5)
    return 100 if after > 0 else 0


def _trend(difference: int) -> str:
    if difference > 0:
        return "increased"
    if difference < 0:
        return "decreased"
    return "unchanged"


def _compare(before: int, after: int) -> dict:
    difference = after - before
    return {
        "difference_cents": difference,
        "percentage_change": _percentage_change(before, after),
        "trend": _trend(difference),
    }


@dataclass
class TransactionFilters:
    category: Optional[str] = None
    type: Optional[TransactionType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass
class TransactionPage:
    items: list[Transaction]
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


@dataclass
class OtpDispatch:
    user_id: int
    email: str
    email_sent: bool
    code: str = field(repr=False)


class TransactionService:
    """Transaction log. Every write lands together with its budget compensation."""

    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        timezone: Optional[str] = None,
        conflict_retries: int = DEFAULT_CONFLICT_RETRIES,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self._timezone = timezone
        self.conflict_retries = conflict_retries

    @property
    def timezone(self) -> str:
        if self._timezone is None:
            self._timezone = get_settings().timezone
        return self._timezone

    def _normalize_date(self, value: Optional[datetime]) -> datetime:
        if value is None:
            return local_now(self.timezone)
        return to_local(value, self.timezone)

    @retry_on_conflict
    def create(self, data: TransactionIn) -> Transaction:
        category = clean_category(data.category)
        if data.amount_cents <= 0:
            raise InvalidArgument("Valid amount (greater than 0) is required")
        txn = Transaction(
            user_id=self.user_id,
            category=category,
            amount_cents=data.amount_cents,
            description=data.description or "",
            type=data.type,
            date=self._normalize_date(data.date),
        )
        self.session.add(txn)
        self.session.flush()
        if txn.type == TransactionType.expense:
            BudgetLedger(self.session, self.user_id).apply_expense_delta(
                category, txn.amount_cents
            )
        self.session.commit()
        logger.info(
            f"transaction_create: user_id={self.user_id} id={txn.id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    @retry_on_conflict
    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        txn = self.get(transaction_id)
        old_type, old_category, old_amount = txn.type, txn.category, txn.amount_cents

        if data.category is not None:
            txn.category = clean_category(data.category)
        if data.amount_cents is not None:
            if data.amount_cents <= 0:
                raise InvalidArgument("Valid amount (greater than 0) is required")
            txn.amount_cents = data.amount_cents
        if data.description is not None:
            txn.description = data.description
        if data.type is not None:
            txn.type = data.type
        if data.date is not None:
            txn.date = self._normalize_date(data.date)
        self.session.flush()

        if (old_type, old_category, old_amount) != (txn.type, txn.category, txn.amount_cents):
            ledger = BudgetLedger(self.session, self.user_id)
            if old_type == TransactionType.expense:
                ledger.apply_expense_delta(old_category, -old_amount)
            if txn.type == TransactionType.expense:
                ledger.apply_expense_delta(txn.category, txn.amount_cents)

        self.session.commit()
        logger.info(f"transaction_update: user_id={self.user_id} id={txn.id}")
        return txn

    @retry_on_conflict
    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        if txn.type == TransactionType.expense:
            BudgetLedger(self.session, self.user_id).apply_expense_delta(
                txn.category, -txn.amount_cents
            )
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_delete: user_id={self.user_id} id={transaction_id}")

    def _scoped(self, stmt, start: Optional[datetime], end: Optional[datetime]):
        stmt = stmt.where(Transaction.user_id == self.user_id)
        start = to_local(start, self.timezone) if start is not None else None
        end = to_local(end, self.timezone) if end is not None else None
        window = resolve_range(start, end)
        if window is not None:
            if start is not None:
                stmt = stmt.where(Transaction.date >= start)
            if end is not None:
                stmt = stmt.where(Transaction.date <= end)
        return stmt

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        *,
        page: int = 1,
        page_size: int = 50,
        sort_field: str = "date",
        sort_order: str = "desc",
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        if page < 1:
            raise InvalidArgument("page must be at least 1")
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise InvalidArgument(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        column = SORT_COLUMNS.get(sort_field)
        if column is None:
            raise InvalidArgument(f"Unsupported sort field: {sort_field}")
        if sort_order not in ("asc", "desc"):
            raise InvalidArgument(f"Unsupported sort order: {sort_order}")

        stmt = self._scoped(select(Transaction), filters.start, filters.end)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category.strip())
        if filters.type is not None:
            stmt = stmt.where(Transaction.type == filters.type)

        total = self.session.scalar(
            select(func.count()).select_from(stmt.order_by(None).subquery())
        ) or 0
        ordering = column.asc() if sort_order == "asc" else column.desc()
        tiebreak = Transaction.id.asc() if sort_order == "asc" else Transaction.id.desc()
        items = list(
            self.session.scalars(
                stmt.order_by(ordering, tiebreak)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
        )
        return TransactionPage(items=items, page=page, page_size=page_size, total=int(total))

    def summary(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> dict:
        stmt = self._scoped(
            select(
                Transaction.type,
                Transaction.category,
                func.sum(Transaction.amount_cents),
                func.count(Transaction.id),
            ),
            start,
            end,
        ).group_by(Transaction.type, Transaction.category)

        totals = {TransactionType.income: 0, TransactionType.expense: 0}
        counts = {TransactionType.income: 0, TransactionType.expense: 0}
        categories: dict[str, dict] = {}
        for txn_type, category, amount, count in self.session.execute(stmt):
            amount = int(amount or 0)
            totals[txn_type] += amount
            counts[txn_type] += int(count)
            if txn_type == TransactionType.expense:
                categories[category] = {"total_cents": amount, "count": int(count)}

        return {
            "total_income_cents": totals[TransactionType.income],
            "total_expenses_cents": totals[TransactionType.expense],
            "net_amount_cents": totals[TransactionType.income]
            - totals[TransactionType.expense],
            "income_count": counts[TransactionType.income],
            "expense_count": counts[TransactionType.expense],
            "transaction_count": sum(counts.values()),
            "category_breakdown": categories,
        }

    def recent(self, limit: int = 10) -> list[Transaction]:
        limit = min(max(int(limit), 1), MAX_RECENT)
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def grouped_by_date(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> dict[str, list[Transaction]]:
        stmt = self._scoped(select(Transaction), start, end).order_by(
            Transaction.date.desc(), Transaction.id.desc()
        )
        grouped: dict[str, list[Transaction]] = {}
        for txn in self.session.scalars(stmt):
            grouped.setdefault(txn.date.date().isoformat(), []).append(txn)
        return grouped

    def by_category(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> dict[str, dict]:
        stmt = (
            self._scoped(select(Transaction), start, end)
            .where(Transaction.type == TransactionType.expense)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        grouped: dict[str, dict] = {}
        for txn in self.session.scalars(stmt):
            bucket = grouped.setdefault(
                txn.category, {"total_cents": 0, "count": 0, "transactions": []}
            )
            bucket["total_cents"] += txn.amount_cents
            bucket["count"] += 1
            bucket["transactions"].append(txn)
        return grouped


class BudgetService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        timezone: Optional[str] = None,
        conflict_retries: int = DEFAULT_CONFLICT_RETRIES,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.timezone = timezone
        self.conflict_retries = conflict_retries

    def _ledger(self) -> BudgetLedger:
        return BudgetLedger(self.session, self.user_id)

    def _today(self) -> date:
        return local_now(self.timezone or get_settings().timezone).date()

    @retry_on_conflict
    def get(self) -> Budget:
        budget = self._ledger().get_or_init(today=self._today())
        self.session.commit()
        return budget

    @retry_on_conflict
    def update(self, data: BudgetIn) -> Budget:
        ledger = self._ledger()
        if data.category_budgets is None:
            budget = ledger.set_total_budget(data.total_budget_cents)
        else:
            budget = ledger.set_allocations(data.total_budget_cents, data.category_budgets)
        self.session.commit()
        return budget

    @retry_on_conflict
    def update_categories(self, data: CategoryBudgetsIn) -> Budget:
        budget = self._ledger().set_category_allocations(data.category_budgets)
        self.session.commit()
        return budget

    @retry_on_conflict
    def apply_expense_delta(self, category: str, delta_cents: int) -> Budget:
        budget = self._ledger().apply_expense_delta(category, delta_cents)
        self.session.commit()
        return budget

    @retry_on_conflict
    def reset(self) -> Budget:
        budget = self._ledger().reset_period(today=self._today())
        self.session.commit()
        return budget

    def add_expense(self, data: ExpenseIn) -> tuple[Transaction, Budget]:
        if self._ledger().find() is None:
            raise NotFound("Budget not found. Please set up your budget first.")
        txn = TransactionService(
            self.session,
            self.user_id,
            timezone=self.timezone,
            conflict_retries=self.conflict_retries,
        ).create(
            TransactionIn(
                category=data.category,
                amount_cents=data.amount_cents,
                description=data.description,
                type=TransactionType.expense,
            )
        )
        return txn, self._ledger().find()


class ReportService:
    def __init__(
        self, session: Session, user_id: int, *, timezone: Optional[str] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.timezone = timezone

    def _now(self) -> datetime:
        return local_now(self.timezone or get_settings().timezone)

    def period_report(self, period: Optional[str] = None, *, now: Optional[datetime] = None) -> dict:
        window = report_range(period, now or self._now())
        budget = BudgetLedger(self.session, self.user_id).find()
        txns = list(
            self.session.scalars(
                select(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.date >= window.start,
                    Transaction.date <= window.end,
                )
                .order_by(Transaction.date.desc(), Transaction.id.desc())
            )
        )

        total_income = 0
        total_expenses = 0
        activity: dict[str, dict] = {}
        for txn in txns:
            if txn.type == TransactionType.income:
                total_income += txn.amount_cents
                continue
            total_expenses += txn.amount_cents
            stats = activity.setdefault(txn.category, {"total_cents": 0, "count": 0})
            stats["total_cents"] += txn.amount_cents
            stats["count"] += 1

        total_budget = budget.total_budget_cents if budget else 0
        if budget and budget.total_spent_cents > 0:
            total_spent = budget.total_spent_cents
        else:
            total_spent = total_expenses

        breakdown: dict[str, dict] = {}
        if budget:
            for row in budget.categories:
                breakdown[row.category] = {
                    "category": row.category,
                    "total_cents": row.spent_amount_cents,
                    "count": 0,
                    "budget_amount_cents": row.budget_amount_cents,
                    "from_budget": True,
                    "icon": row.icon,
                    "color": row.color,
                }
        for category, stats in activity.items():
            item = breakdown.get(category)
            if item is None:
                breakdown[category] = {
                    "category": category,
                    "budget_amount_cents": 0,
                    "from_budget": False,
                    "icon": None,
                    "color": None,
                    **stats,
                }
            else:
                item.update(stats)
        for item in breakdown.values():
            item["percentage"] = percent_of(item["total_cents"], total_spent)

        series = []
        for bucket in report_buckets(window):
            amount = sum(
                txn.amount_cents
                for txn in txns
                if txn.type == TransactionType.expense and bucket.contains(txn.date)
            )
            series.append({"label": bucket.label, "amount_cents": amount})
        peak = max([point["amount_cents"] for point in series] + [1])
        for point in series:
            point["height"] = point["amount_cents"] / peak

        logger.info(
            f"period_report: user_id={self.user_id} period={window.slug} "
            f"transactions={len(txns)}"
        )
        return {
            "period": window.slug,
            "date_range": {
                "start": window.start.isoformat(),
                "end": window.end.isoformat(),
            },
            "summary": {
                "total_income_cents": total_income,
                "total_expenses_cents": total_expenses,
                "net_amount_cents": total_income - total_expenses,
                "total_budget_cents": total_budget,
                "total_spent_cents": total_spent,
                "budget_left_cents": total_budget - total_spent,
                "budget_used_percentage": percent_of(total_spent, total_budget),
                "transaction_count": len(txns),
            },
            "category_breakdown": sorted(
                breakdown.values(), key=lambda item: item["total_cents"], reverse=True
            ),
            "time_series_data": series,
            "budget_data": {
                "has_budget": budget is not None,
                "total_budget_cents": total_budget,
                "total_spent_cents": budget.total_spent_cents if budget else 0,
                "month": budget.month if budget else None,
            },
        }

    def _expense_totals(self, start: datetime, end: datetime) -> tuple[dict[str, int], int]:
        rows = self.session.execute(
            select(
                Transaction.category,
                func.sum(Transaction.amount_cents),
                func.count(Transaction.id),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date >= start,
                Transaction.date <= end,
            )
            .group_by(Transaction.category)
        )
        totals: dict[str, int] = {}
        count = 0
        for category, amount, rows_in_category in rows:
            totals[category] = int(amount or 0)
            count += int(rows_in_category)
        return totals, count

    def category_comparison(
        self,
        period1_start: datetime,
        period1_end: datetime,
        period2_start: datetime,
        period2_end: datetime,
    ) -> dict:
        tz = self.timezone or get_settings().timezone
        period1_start, period1_end, period2_start, period2_end = (
            to_local(moment, tz) if moment is not None else None
            for moment in (period1_start, period1_end, period2_start, period2_end)
        )
        first = resolve_range(period1_start, period1_end, slug="period1")
        second = resolve_range(period2_start, period2_end, slug="period2")
        if first is None or second is None:
            raise InvalidArgument("Both periods need a start and an end date")

        before, before_count = self._expense_totals(first.start, first.end)
        after, after_count = self._expense_totals(second.start, second.end)

        comparison = {}
        for category in sorted(set(before) | set(after)):
            period1 = before.get(category, 0)
            period2 = after.get(category, 0)
            comparison[category] = {
                "period1_cents": period1,
                "period2_cents": period2,
                **_compare(period1, period2),
            }

        before_total = sum(before.values())
        after_total = sum(after.values())
        return {
            "period1": {
                "start": first.start.isoformat(),
                "end": first.end.isoformat(),
                "total_cents": before_total,
                "transaction_count": before_count,
            },
            "period2": {
                "start": second.start.isoformat(),
                "end": second.end.isoformat(),
                "total_cents": after_total,
                "transaction_count": after_count,
            },
            "overall": _compare(before_total, after_total),
            "category_comparison": comparison,
        }


class AuthService:
    def __init__(self, session: Session, settings: Settings) -> None:
        self.session = session
        self.settings = settings

    def _by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )

    def register(self, data: RegisterIn) -> tuple[User, str]:
        if self._by_email(data.email) is not None:
            raise InvalidArgument("User already exists with this email")
        user = User(
            full_name=data.full_name,
            email=data.email,
            phone=data.phone,
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise InvalidArgument("User already exists with this email") from exc
        logger.info(f"user_register: user_id={user.id}")
        return user, create_access_token(user.id, self.settings)

    def login(self, data: LoginIn) -> tuple[User, str]:
        user = self._by_email(data.email)
        if user is None or not verify_password(data.password, user.password_hash):
            logger.info("user_login_failed")
            raise InvalidArgument("Invalid email or password")
        logger.info(f"user_login: user_id={user.id}")
        return user, create_access_token(user.id, self.settings)


def generate_otp() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


class PasswordResetService:
    def __init__(self, session: Session, settings: Settings) -> None:
        self.session = session
        self.settings = settings

    def _user(self, email: str, missing: str) -> User:
        user = self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )
        if user is None:
            raise NotFound(missing)
        return user

    def _otp(self, user_id: int, code: str, *, verified: bool) -> OTP:
        if len(code) != 6 or not code.isdigit():
            raise InvalidArgument("OTP must be 6 digits")
        otp = self.session.scalar(
            select(OTP).where(
                OTP.user_id == user_id,
                OTP.code == code,
                OTP.verified.is_(verified),
            )
        )
        if otp is None:
            raise InvalidArgument("Invalid OTP" if not verified else "Invalid or unverified OTP")
        if datetime.utcnow() > otp.expires_at:
            self.session.delete(otp)
            self.session.commit()
            raise InvalidArgument("OTP has expired. Please request a new one")
        return otp

    def send_otp(self, email: str, mailer: Mailer) -> OtpDispatch:
        user = self._user(email, "No account found with this email. Please sign up first.")
        code = generate_otp()
        self.session.execute(delete(OTP).where(OTP.user_id == user.id))
        self.session.add(
            OTP(
                user_id=user.id,
                email=user.email,
                code=code,
                verified=False,
                expires_at=datetime.utcnow()
                + timedelta(minutes=self.settings.otp_ttl_minutes),
            )
        )
        self.session.commit()

        sent = True
        try:
            mailer.send_otp(user.email, code, ttl_minutes=self.settings.otp_ttl_minutes)
        except DependencyFailure as exc:
            sent = False
            logger.warning(f"otp_mail_failed: user_id={user.id} error={exc}")
        logger.info(f"otp_sent: user_id={user.id} email_sent={sent}")
        return OtpDispatch(user_id=user.id, email=user.email, email_sent=sent, code=code)

    def verify_otp(self, email: str, code: str) -> str:
        user = self._user(email, "User not found")
        otp = self._otp(user.id, code, verified=False)
        otp.verified = True
        self.session.commit()
        return create_reset_token(user.id, user.email, self.settings)

    def reset_password(
        self,
        email: str,
        code: str,
        new_password: str,
        reset_token: Optional[str] = None,
    ) -> None:
        if len(new_password) < 6:
            raise InvalidArgument("Password must be at least 6 characters long")
        user = self._user(email, "User not found")
        if reset_token is not None:
            claims = decode_reset_token(reset_token, self.settings)
            if claims.get("uid") != user.id or claims.get("email") != user.email:
                raise Unauthorized("Reset token does not match this account")
        otp = self._otp(user.id, code, verified=True)
        user.password_hash = hash_password(new_password)
        self.session.delete(otp)
        self.session.commit()
        logger.info(f"password_reset: user_id={user.id}")


def purge_expired_otps(session: Session, now: Optional[datetime] = None) -> int:
    result = session.execute(
        delete(OTP).where(OTP.expires_at < (now or datetime.utcnow()))
    )
    return int(result.rowcount or 0)


class ProfileService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> User:
        user = self.session.get(User, self.user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def update(self, data: ProfileUpdateIn) -> User:
        user = self.get()
        if data.full_name is not None:
            user.full_name = data.full_name
        if data.phone is not None:
            user.phone = data.phone
        self.session.commit()
        return user

    @staticmethod
    def _is_image(content_type: Optional[str], filename: str) -> bool:
        if content_type in IMAGE_CONTENT_TYPES:
            return True
        extension = "." + filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        return content_type in (None, "", "application/octet-stream") and (
            extension in IMAGE_EXTENSIONS
        )

    def _discard(self, storage: ObjectStorage, key: Optional[str]) -> None:
        if not key:
            return
        try:
            storage.delete(key)
        except DependencyFailure as exc:
            logger.warning(f"avatar_delete_failed: user_id={self.user_id} error={exc}")

    def upload_avatar(
        self,
        content: bytes,
        *,
        filename: str,
        content_type: Optional[str],
        storage: ObjectStorage,
    ) -> User:
        if not content:
            raise InvalidArgument("No image file provided")
        if len(content) > MAX_AVATAR_BYTES:
            raise InvalidArgument("File size too large. Maximum size is 10MB.")
        if not self._is_image(content_type, filename or ""):
            raise InvalidArgument("Only image files are allowed")

        user = self.get()
        previous = user.avatar_key
        stored = storage.put(content, folder="profiles", filename=filename or "avatar")
        user.avatar_url = stored.url
        user.avatar_key = stored.key
        self.session.commit()
        self._discard(storage, previous)
        logger.info(f"avatar_upload: user_id={self.user_id} key={stored.key}")
        return user

    def delete_avatar(self, storage: ObjectStorage) -> User:
        user = self.get()
        if not user.avatar_url:
            raise InvalidArgument("No profile picture to delete")
        previous = user.avatar_key
        user.avatar_url = None
        user.avatar_key = None
        self.session.commit()
        self._discard(storage, previous)
        return user
