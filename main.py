import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import Database
from errors import (
    ConflictError,
    DependencyFailure,
    InvalidArgument,
    NotFound,
    Unauthorized,
)
from mailer import Mailer, build_mailer
from models import Budget, Transaction, TransactionType, User
from periods import parse_bound
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    CategoryBudgetsIn,
    ExpenseIn,
    LoginIn,
    ProfileUpdateIn,
    RegisterIn,
    ReportPeriod,
    ResetPasswordIn,
    SendOtpIn,
    SortField,
    SortOrder,
    TransactionIn,
    TransactionUpdateIn,
    VerifyOtpIn,
)
from security import decode_access_token
from services import (
    MAX_AVATAR_BYTES,
    AuthService,
    BudgetService,
    PasswordResetService,
    ProfileService,
    ReportService,
    TransactionFilters,
    TransactionService,
)
from storage import LocalObjectStorage, ObjectStorage


logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()


def budget_to_dict(budget: Budget) -> dict:
    return {
        "id": budget.id,
        "total_budget_cents": budget.total_budget_cents,
        "total_spent_cents": budget.total_spent_cents,
        "budget_left_cents": budget.budget_left_cents,
        "budget_used_percentage": budget.budget_used_percentage,
        "month": budget.month,
        "version": budget.version,
        "category_budgets": [
            {
                "category": row.category,
                "budget_amount_cents": row.budget_amount_cents,
                "spent_amount_cents": row.spent_amount_cents,
                "icon": row.icon,
                "color": row.color,
            }
            for row in budget.categories
        ],
        "updated_at": budget.updated_at.isoformat() if budget.updated_at else None,
    }


def transaction_to_dict(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "category": txn.category,
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "type": txn.type.value,
        "date": txn.date.isoformat(),
        "created_at": txn.created_at.isoformat() if txn.created_at else None,
    }


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "full_name": user.full_name,
        "email": user.email,
        "phone": user.phone,
        "profile_image": user.avatar_url,
    }


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request):
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


bearer = HTTPBearer(auto_error=False)


def current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> int:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Not authorized, no token")
    user_id = decode_access_token(credentials.credentials, _settings(request))
    if db.get(User, user_id) is None:
        raise Unauthorized("User not found")
    return user_id


def _transactions(request: Request, db: Session, user_id: int) -> TransactionService:
    settings = _settings(request)
    return TransactionService(
        db,
        user_id,
        timezone=settings.timezone,
        conflict_retries=settings.conflict_retries,
    )


def _budgets(request: Request, db: Session, user_id: int) -> BudgetService:
    settings = _settings(request)
    return BudgetService(
        db,
        user_id,
        timezone=settings.timezone,
        conflict_retries=settings.conflict_retries,
    )


router = APIRouter(prefix="/api")


@router.post("/auth/register", status_code=201)
def register(payload: RegisterIn, request: Request, db: Session = Depends(get_db)):
    user, token = AuthService(db, _settings(request)).register(payload)
    return {
        "success": True,
        "message": "User registered successfully",
        "token": token,
        "user": user_to_dict(user),
    }


@router.post("/auth/login")
def login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    user, token = AuthService(db, _settings(request)).login(payload)
    return {
        "success": True,
        "message": "Login successful",
        "token": token,
        "user": user_to_dict(user),
    }


@router.post("/auth/logout")
def logout(user_id: int = Depends(current_user_id)):
    logger.info(f"user_logout: user_id={user_id}")
    return {"success": True, "message": "Logged out successfully"}


@router.post("/auth/forgot-password/send-otp")
def send_otp(payload: SendOtpIn, request: Request, db: Session = Depends(get_db)):
    settings = _settings(request)
    dispatch = PasswordResetService(db, settings).send_otp(
        payload.email, request.app.state.mailer
    )
    body = {
        "success": True,
        "message": "OTP sent to your email"
        if dispatch.email_sent
        else "OTP generated but the email could not be sent",
        "email_sent": dispatch.email_sent,
        "user_id": dispatch.user_id,
    }
    if not dispatch.email_sent and not settings.is_production:
        body["otp"] = dispatch.code
    return body


@router.post("/auth/forgot-password/verify-otp")
def verify_otp(payload: VerifyOtpIn, request: Request, db: Session = Depends(get_db)):
    token = PasswordResetService(db, _settings(request)).verify_otp(
        payload.email, payload.otp
    )
    return {"success": True, "message": "OTP verified successfully", "reset_token": token}


@router.post("/auth/forgot-password/reset")
def reset_password(
    payload: ResetPasswordIn, request: Request, db: Session = Depends(get_db)
):
    PasswordResetService(db, _settings(request)).reset_password(
        payload.email, payload.otp, payload.new_password, payload.reset_token
    )
    return {"success": True, "message": "Password reset successfully"}


@router.get("/budget")
def get_budget(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    budget = _budgets(request, db, user_id).get()
    return {"success": True, "message": "Budget loaded", "budget": budget_to_dict(budget)}


@router.put("/budget")
def update_budget(
    payload: BudgetIn,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    budget = _budgets(request, db, user_id).update(payload)
    return {
        "success": True,
        "message": "Budget updated successfully",
        "budget": budget_to_dict(budget),
    }


@router.put("/budget/categories")
def update_category_budgets(
    payload: CategoryBudgetsIn,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    budget = _budgets(request, db, user_id).update_categories(payload)
    return {
        "success": True,
        "message": "Category budgets updated successfully",
        "budget": budget_to_dict(budget),
    }


@router.post("/budget/expense", status_code=201)
def add_expense(
    payload: ExpenseIn,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    txn, budget = _budgets(request, db, user_id).add_expense(payload)
    return {
        "success": True,
        "message": "Expense added successfully",
        "transaction": transaction_to_dict(txn),
        "budget": budget_to_dict(budget),
    }


@router.post("/budget/reset")
def reset_budget(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    budget = _budgets(request, db, user_id).reset()
    return {
        "success": True,
        "message": "Budget reset for the new month",
        "budget": budget_to_dict(budget),
    }


@router.post("/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    txn = _transactions(request, db, user_id).create(payload)
    return {
        "success": True,
        "message": "Transaction created successfully",
        "transaction": transaction_to_dict(txn),
    }


@router.get("/transactions")
def list_transactions(
    request: Request,
    category: Optional[str] = None,
    type: Optional[TransactionType] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    sort_by: SortField = "date",
    sort_order: SortOrder = "desc",
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    filters = TransactionFilters(
        category=category,
        type=type,
        start=parse_bound(start_date),
        end=parse_bound(end_date, end=True),
    )
    result = _transactions(request, db, user_id).list(
        filters, page=page, page_size=limit, sort_field=sort_by, sort_order=sort_order
    )
    return {
        "success": True,
        "message": "Transactions loaded",
        "transactions": [transaction_to_dict(txn) for txn in result.items],
        "pagination": {
            "page": result.page,
            "limit": result.page_size,
            "total": result.total,
            "total_pages": result.total_pages,
        },
    }


@router.get("/transactions/summary/overview")
def transactions_overview(
    request: Request,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    summary = _transactions(request, db, user_id).summary(
        parse_bound(start_date), parse_bound(end_date, end=True)
    )
    return {"success": True, "message": "Summary loaded", "summary": summary}


@router.get("/transactions/summary/recent")
def recent_transactions(
    request: Request,
    limit: int = 10,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    items = _transactions(request, db, user_id).recent(limit)
    return {
        "success": True,
        "message": "Recent transactions loaded",
        "transactions": [transaction_to_dict(txn) for txn in items],
    }


@router.get("/transactions/summary/grouped")
def grouped_transactions(
    request: Request,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    grouped = _transactions(request, db, user_id).grouped_by_date(
        parse_bound(start_date), parse_bound(end_date, end=True)
    )
    return {
        "success": True,
        "message": "Transactions grouped by date",
        "grouped": {
            day: [transaction_to_dict(txn) for txn in txns]
            for day, txns in grouped.items()
        },
    }


@router.get("/transactions/summary/category")
def transactions_by_category(
    request: Request,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    grouped = _transactions(request, db, user_id).by_category(
        parse_bound(start_date), parse_bound(end_date, end=True)
    )
    return {
        "success": True,
        "message": "Transactions grouped by category",
        "categories": {
            name: {
                "total_cents": data["total_cents"],
                "count": data["count"],
                "transactions": [transaction_to_dict(txn) for txn in data["transactions"]],
            }
            for name, data in grouped.items()
        },
    }


@router.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    txn = _transactions(request, db, user_id).get(transaction_id)
    return {
        "success": True,
        "message": "Transaction loaded",
        "transaction": transaction_to_dict(txn),
    }


@router.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdateIn,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    txn = _transactions(request, db, user_id).update(transaction_id, payload)
    return {
        "success": True,
        "message": "Transaction updated successfully",
        "transaction": transaction_to_dict(txn),
    }


@router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    _transactions(request, db, user_id).delete(transaction_id)
    return {"success": True, "message": "Transaction deleted successfully"}


@router.get("/profile")
def get_profile(db: Session = Depends(get_db), user_id: int = Depends(current_user_id)):
    user = ProfileService(db, user_id).get()
    return {"success": True, "message": "Profile loaded", "user": user_to_dict(user)}


@router.put("/profile")
def update_profile(
    payload: ProfileUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    user = ProfileService(db, user_id).update(payload)
    return {
        "success": True,
        "message": "Profile updated successfully",
        "user": user_to_dict(user),
    }


@router.post("/profile/picture")
def upload_profile_picture(
    request: Request,
    profile_image: UploadFile = File(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        content = profile_image.file.read(MAX_AVATAR_BYTES + 1)
    finally:
        profile_image.file.close()
    user = ProfileService(db, user_id).upload_avatar(
        content,
        filename=profile_image.filename or "avatar",
        content_type=profile_image.content_type,
        storage=request.app.state.storage,
    )
    return {
        "success": True,
        "message": "Profile picture uploaded successfully",
        "user": user_to_dict(user),
    }


@router.delete("/profile/picture")
def delete_profile_picture(
    request: Request,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    user = ProfileService(db, user_id).delete_avatar(request.app.state.storage)
    return {
        "success": True,
        "message": "Profile picture deleted successfully",
        "user": user_to_dict(user),
    }


@router.get("/reports")
def period_report(
    request: Request,
    period: ReportPeriod = "month",
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    report = ReportService(db, user_id, timezone=_settings(request).timezone).period_report(
        period
    )
    return {"success": True, "message": "Report generated", "report": report}


@router.get("/reports/comparison")
def category_comparison(
    request: Request,
    period1_start: str,
    period1_end: str,
    period2_start: str,
    period2_end: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    comparison = ReportService(
        db, user_id, timezone=_settings(request).timezone
    ).category_comparison(
        parse_bound(period1_start),
        parse_bound(period1_end, end=True),
        parse_bound(period2_start),
        parse_bound(period2_end, end=True),
    )
    return {"success": True, "message": "Comparison generated", "comparison": comparison}


def _error(status_code: int, message: str, exc: Optional[Exception] = None, *, detail: bool = False):
    body = {"success": False, "message": message}
    if detail and exc is not None:
        body["error"] = str(exc)
    return JSONResponse(status_code=status_code, content=body)


def _validation_message(errors: list) -> str:
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InvalidArgument)
    async def invalid_argument_handler(request: Request, exc: InvalidArgument):
        return _error(400, str(exc))

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return _error(404, str(exc))

    @app.exception_handler(Unauthorized)
    async def unauthorized_handler(request: Request, exc: Unauthorized):
        return _error(401, str(exc))

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        return _error(503, str(exc))

    @app.exception_handler(DependencyFailure)
    async def dependency_handler(request: Request, exc: DependencyFailure):
        logger.warning(f"dependency_failure: path={request.url.path} error={exc}")
        return _error(
            502,
            "An upstream service failed, please try again later",
            exc,
            detail=not _settings(request).is_production,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _error(400, _validation_message(exc.errors()))

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error(400, _validation_message(exc.errors()))

    @app.exception_handler(Exception)
    async def unexpected_handler(request: Request, exc: Exception):
        logger.exception(f"unhandled_error: path={request.url.path}")
        return _error(500, "Server error", exc, detail=not _settings(request).is_production)


def create_app(
    *,
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    storage: Optional[ObjectStorage] = None,
    mailer: Optional[Mailer] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    settings.upload_dir.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database(settings)
        db.create_all()
        app.state.database = db
        scheduler = SchedulerManager(db, settings) if run_scheduler else None
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()
            if database is None:
                db.dispose()

    app = FastAPI(title="SpendWise API", version=APP_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = storage or LocalObjectStorage(
        settings.upload_dir, settings.upload_url_prefix
    )
    app.state.mailer = mailer or build_mailer(settings)
    app.mount(
        settings.upload_url_prefix,
        StaticFiles(directory=str(settings.upload_dir)),
        name="uploads",
    )
    install_error_handlers(app)
    app.include_router(router)

    @app.get("/")
    def health():
        return {
            "success": True,
            "message": "SpendWise API is running",
            "version": APP_VERSION,
        }

    return app


def main():
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
