from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from models import TransactionType

# Amounts are Decimal internally and plain JSON numbers on the wire.
Money = Annotated[
    Decimal, PlainSerializer(float, return_type=float, when_used="json")
]


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# Stored timestamps are naive UTC; offsets are converted, not dropped.
UtcDateTime = Annotated[datetime, AfterValidator(_to_naive_utc)]

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class RegisterIn(ApiModel):
    name: Optional[str] = Field(default=None, max_length=120)
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=6, max_length=128)


class LoginIn(ApiModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class RefreshIn(ApiModel):
    refresh_token: Optional[str] = None


class UserOut(ApiModel):
    id: int
    name: Optional[str]
    email: str
    image: Optional[str]


class UserDetailOut(UserOut):
    created_at: datetime
    updated_at: datetime


class CurrentUserOut(ApiModel):
    user: UserDetailOut


class TokensOut(ApiModel):
    access_token: str
    refresh_token: str


class AuthOut(ApiModel):
    user: UserOut
    tokens: TokensOut


class TokenRefreshOut(ApiModel):
    tokens: TokensOut


class MessageOut(ApiModel):
    message: str


class GoogleStatusOut(ApiModel):
    configured: bool
    client_id_set: bool
    client_secret_set: bool
    callback_url: str
    frontend_url: str


class CategoryIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    icon: Optional[str] = Field(default=None, max_length=32)
    color: Optional[str] = Field(default=None, max_length=9)


class CategoryUpdate(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[TransactionType] = None
    icon: Optional[str] = Field(default=None, max_length=32)
    color: Optional[str] = Field(default=None, max_length=9)


class CategoryOut(ApiModel):
    id: int
    name: str
    type: TransactionType
    icon: Optional[str]
    color: Optional[str]
    user_id: int
    created_at: datetime
    updated_at: datetime


class TransactionIn(ApiModel):
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    type: TransactionType
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[UtcDateTime] = None
    category_id: Optional[int] = None


class TransactionUpdate(ApiModel):
    amount: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=12, decimal_places=2
    )
    type: Optional[TransactionType] = None
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[UtcDateTime] = None
    category_id: Optional[int] = None


class TransactionOut(ApiModel):
    id: int
    amount: Money
    type: TransactionType
    description: Optional[str]
    date: datetime
    category_id: Optional[int]
    user_id: int
    created_at: datetime
    updated_at: datetime
    category: Optional[CategoryOut]


class TransactionPageOut(ApiModel):
    data: list[TransactionOut]
    total: int
    limit: int
    offset: int


class SummaryOut(ApiModel):
    total_income: Money
    total_expense: Money
    balance: Money


class ChartPointOut(ApiModel):
    name: str
    income: Money
    expense: Money


class BudgetIn(ApiModel):
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)
    category_id: int


class BudgetUpdate(ApiModel):
    amount: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=12, decimal_places=2
    )


class BudgetOut(ApiModel):
    id: int
    amount: Money
    month: int
    year: int
    category_id: int
    user_id: int
    created_at: datetime
    updated_at: datetime
    category: CategoryOut
    spent: Money
    remaining: Money
