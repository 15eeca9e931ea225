import datetime as dt
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from models import TransactionType


SortField = Literal["date", "amount", "category", "created_at"]
SortOrder = Literal["asc", "desc"]
ReportPeriod = Literal["day", "week", "month", "year"]

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


def _clean_email(value: str) -> str:
    return value.strip().lower()


class RegisterIn(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    phone: str = Field(..., min_length=1, max_length=40)
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("full_name", "phone", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email", mode="after")
    @classmethod
    def _lower(cls, value: str) -> str:
        return _clean_email(value)


class LoginIn(BaseModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _lower(cls, value: str) -> str:
        return _clean_email(value)


class SendOtpIn(BaseModel):
    email: EmailStr

    @field_validator("email", mode="after")
    @classmethod
    def _lower(cls, value: str) -> str:
        return _clean_email(value)


class VerifyOtpIn(SendOtpIn):
    otp: str = Field(..., pattern=r"^\d{6}$")


class ResetPasswordIn(VerifyOtpIn):
    new_password: str = Field(..., min_length=6, max_length=128)
    reset_token: Optional[str] = None


class ProfileUpdateIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    phone: Optional[str] = Field(default=None, min_length=1, max_length=40)


class CategoryBudgetIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    category: str = Field(..., min_length=1, max_length=100)
    budget_amount_cents: int = Field(default=0, ge=0)
    spent_amount_cents: Optional[int] = Field(default=None, ge=0)
    icon: Optional[str] = Field(default=None, max_length=60)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)


class BudgetIn(BaseModel):
    total_budget_cents: int = Field(..., ge=0)
    category_budgets: Optional[list[CategoryBudgetIn]] = None


class CategoryBudgetsIn(BaseModel):
    category_budgets: list[CategoryBudgetIn]


class ExpenseIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    category: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)
    description: str = Field(default="", max_length=500)


class TransactionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    category: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., gt=0)
    description: str = Field(default="", max_length=500)
    type: TransactionType = TransactionType.expense
    date: Optional[dt.datetime] = None


class TransactionUpdateIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, max_length=500)
    type: Optional[TransactionType] = None
    date: Optional[dt.datetime] = None
