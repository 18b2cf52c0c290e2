import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class UserRole(str, Enum):
    user = "user"
    admin = "admin"
    premium = "premium"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class BudgetPeriod(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class InsightType(str, Enum):
    success = "success"
    warning = "warning"
    info = "info"
    error = "error"


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str
    message: str


class MessageResponse(BaseModel):
    message: str


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(min_length=6, max_length=72)
    name: str

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        v = value.strip().lower()
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("invalid email format")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        # bcrypt only reads the first 72 bytes
        if len(value.encode("utf-8")) > 72:
            raise ValueError("password must be at most 72 bytes")
        return value

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return value.strip().lower()


class UserResponse(BaseModel):
    id: UUID
    email: str
    name: str
    role: UserRole


class AuthResponse(BaseModel):
    token: str
    user: UserResponse


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    type: TransactionType
    icon: Optional[str] = None
    color: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v

    @field_validator("icon")
    @classmethod
    def validate_icon(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return value.strip() or None

    @field_validator("color")
    @classmethod
    def validate_color(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        if not HEX_COLOR.match(value):
            raise ValueError("color must be a #RRGGBB hex value")
        return value


class CategorySummary(BaseModel):
    id: UUID
    name: str
    type: TransactionType
    icon: str
    color: str


class CategoryResponse(CategorySummary):
    userId: UUID
    createdAt: datetime
    updatedAt: datetime


class TransactionCreate(BaseModel):
    categoryId: UUID
    type: TransactionType
    amount: Decimal = Field(ge=Decimal("0.01"), max_digits=14, decimal_places=2)
    description: str = Field(min_length=1, max_length=500)
    date: Optional[datetime] = None

    @field_validator("description")
    @classmethod
    def validate_description(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("description must not be empty")
        return v

    @field_validator("date")
    @classmethod
    def normalize_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)


class TransactionResponse(BaseModel):
    id: UUID
    userId: UUID
    categoryId: UUID
    category: Optional[CategorySummary] = None
    type: TransactionType
    amount: float
    description: str
    date: datetime
    createdAt: datetime
    updatedAt: datetime


class BudgetCreate(BaseModel):
    categoryId: UUID
    amount: Decimal = Field(ge=Decimal("0.01"), max_digits=14, decimal_places=2)
    period: BudgetPeriod
    startDate: datetime
    endDate: datetime

    @field_validator("startDate", "endDate")
    @classmethod
    def normalize_dates(cls, value: datetime) -> datetime:
        return naive_utc(value)

    @model_validator(mode="after")
    def validate_window(self) -> "BudgetCreate":
        if self.endDate < self.startDate:
            raise ValueError("endDate must be >= startDate")
        return self


class BudgetResponse(BaseModel):
    id: UUID
    userId: UUID
    categoryId: UUID
    category: Optional[CategorySummary] = None
    amount: float
    period: BudgetPeriod
    startDate: datetime
    endDate: datetime
    spent: float
    remaining: float
    createdAt: datetime
    updatedAt: datetime


class DashboardStatsResponse(BaseModel):
    period: str
    startDate: datetime
    endDate: datetime
    totalIncome: float
    totalExpenses: float
    balance: float
    transactionCount: int


class SpendingByCategoryItem(BaseModel):
    categoryId: UUID
    categoryName: str
    categoryIcon: str
    categoryColor: str
    total: float
    count: int


class MonthlyTrendItem(BaseModel):
    month: str
    income: float
    expenses: float


class Insight(BaseModel):
    type: InsightType
    title: str
    message: str


class InsightsResponse(BaseModel):
    insights: list[Insight]


class AskRequest(BaseModel):
    question: str

    @field_validator("question")
    @classmethod
    def validate_question(cls, value: str) -> str:
        v = value.strip()
        if len(v) < 3:
            raise ValueError("Please provide a valid question.")
        return v


class AskResponse(BaseModel):
    answer: str


class SuggestionsRequest(BaseModel):
    recentMessages: list[str] = Field(default_factory=list)


class SuggestionsResponse(BaseModel):
    suggestions: list[str]
