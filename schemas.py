import datetime as dt
from decimal import Decimal
from typing import Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from models import TransactionType, UserRole


HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"
SORT_FIELDS = ("date", "amount", "created_at", "description")
SORT_ORDERS = ("asc", "desc")


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    type: TransactionType
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(default=None, max_length=50)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    type: Optional[TransactionType] = None
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(default=None, max_length=50)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: TransactionType
    color: str
    icon: Optional[str] = None


class TransactionIn(BaseModel):
    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    date: dt.date
    category_id: Optional[int] = Field(default=None, ge=1)


class AdminTransactionIn(TransactionIn):
    user_id: int = Field(..., ge=1)


class TransactionUpdate(BaseModel):
    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    category_id: Optional[int] = Field(default=None, ge=1)


class TransactionOut(BaseModel):
    id: int
    user_id: int
    type: TransactionType
    amount: float
    description: Optional[str]
    date: dt.date
    created_at: dt.datetime
    category_id: Optional[int]
    category_name: Optional[str]
    category_color: Optional[str]


class AdminTransactionOut(TransactionOut):
    username: str
    email: str


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    email: Optional[EmailStr] = None

    @field_validator("email", mode="after")
    @classmethod
    def _normalize_email(cls, value):
        return value.lower() if value else value


class RoleUpdate(BaseModel):
    role: UserRole


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: UserRole
    created_at: dt.datetime


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_count: int
    limit: int
    has_next: bool
    has_prev: bool


class TransactionListQuery(BaseModel):
    """Filters for a transaction list page.

    Unknown keys are ignored and unsupported sort values fall back to the
    defaults, so every accepted query has exactly one normalized form.
    """

    model_config = ConfigDict(extra="ignore")

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    type: Optional[TransactionType] = None
    category_id: Optional[int] = Field(default=None, ge=1)
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    search: Optional[str] = Field(default=None, max_length=100)
    sort_by: str = "date"
    sort_order: str = "desc"

    @field_validator("search", mode="before")
    @classmethod
    def _blank_search_is_none(cls, value):
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("sort_by", mode="before")
    @classmethod
    def _known_sort_field(cls, value):
        return value if value in SORT_FIELDS else "date"

    @field_validator("sort_order", mode="before")
    @classmethod
    def _known_sort_order(cls, value):
        if isinstance(value, str) and value.lower() in SORT_ORDERS:
            return value.lower()
        return "desc"

    @model_validator(mode="after")
    def _check_range(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class AdminTransactionListQuery(TransactionListQuery):
    limit: int = Field(default=20, ge=1, le=100)
    user_id: Optional[int] = Field(default=None, ge=1)


class AnalyticsQuery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    period: Literal["month", "year"] = "month"
    year: Optional[int] = Field(default=None, ge=1970, le=3000)
    month: Optional[int] = Field(default=None, ge=1, le=12)

    @model_validator(mode="after")
    def _drop_month_for_yearly(self):
        # a yearly view never narrows by month
        if self.period == "year":
            self.month = None
        return self


class TrendsQuery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    months: int = Field(default=6, ge=1, le=60)


class AnalyticsSummary(CamelModel):
    total_income: float
    total_expenses: float
    net_income: float
    savings_rate: float
    income_count: int
    expense_count: int


class CategoryBreakdownItem(CamelModel):
    category: str
    color: str
    type: TransactionType
    total: float
    count: int


class MonthlyTrendItem(CamelModel):
    month: int
    month_name: str
    income: float
    expenses: float
    net: float


class RecentTransactionItem(CamelModel):
    id: int
    type: TransactionType
    amount: float
    description: Optional[str]
    date: dt.date
    category: str
    color: str


class AnalyticsResult(CamelModel):
    summary: AnalyticsSummary
    category_breakdown: list[CategoryBreakdownItem]
    monthly_trends: list[MonthlyTrendItem]
    recent_transactions: list[RecentTransactionItem]


class CategoryAnalyticsItem(CamelModel):
    id: Optional[int]
    name: str
    color: str
    type: TransactionType
    total: float
    count: int
    average: float
    min_amount: float
    max_amount: float


class SpendingTrendItem(CamelModel):
    month: str
    month_name: str
    income: float
    expenses: float
    net: float


class SystemStats(CamelModel):
    total_users: int
    total_transactions: int
    total_categories: int
