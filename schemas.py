import datetime as dt
from datetime import date, datetime
from typing import Annotated, Literal, Optional

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

from accounting import format_cents
from csv_utils import parse_amount
from models import (
    AccountType,
    TransactionKind,
    TransactionState,
    TransactionType,
    TransferDirection,
)


def _positive_amount(value: object) -> str:
    return format_cents(parse_amount(str(value)))


def _signed_amount(value: object) -> str:
    return format_cents(parse_amount(str(value), allow_negative=True, allow_zero=True))


PositiveAmount = Annotated[str, BeforeValidator(_positive_amount)]
SignedAmount = Annotated[str, BeforeValidator(_signed_amount)]


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    initial_balance: SignedAmount = "0.00"

    @property
    def initial_balance_cents(self) -> int:
        return parse_amount(self.initial_balance, allow_negative=True, allow_zero=True)


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=60)


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=60)


class TransactionIn(BaseModel):
    account_id: int
    category_id: int
    type: TransactionType
    amount: PositiveAmount
    description: str = Field(..., min_length=1, max_length=500)
    date: date

    @property
    def amount_cents(self) -> int:
        return parse_amount(self.amount)


class TransactionUpdate(BaseModel):
    """Partial update; only the fields that were explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    amount: Optional[str] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    date: Optional[dt.date] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        return _positive_amount(value)

    @property
    def amount_cents(self) -> Optional[int]:
        if self.amount is None:
            return None
        return parse_amount(self.amount)


class TransferIn(BaseModel):
    from_account_id: int
    to_account_id: int
    amount: PositiveAmount
    description: str = Field(..., min_length=1, max_length=400)
    date: date

    @model_validator(mode="after")
    def _distinct_accounts(self) -> "TransferIn":
        if self.from_account_id == self.to_account_id:
            raise ValueError("Source and destination accounts must be different")
        return self

    @property
    def amount_cents(self) -> int:
        return parse_amount(self.amount)


class BulkIdsIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)


class BulkAccountIdsIn(BaseModel):
    account_ids: list[int] = Field(..., min_length=1)


class BulkCategoryIdsIn(BaseModel):
    category_ids: list[int] = Field(..., min_length=1)


class ImportCandidate(BaseModel):
    date: date
    description: str = Field(..., min_length=1, max_length=500)
    amount: PositiveAmount
    type: TransactionType


class StatementImportIn(BaseModel):
    account_id: int
    category_id: int
    transactions: list[ImportCandidate]


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance_cents: int
    initial_balance_cents: int
    archived_at: Optional[datetime]

    @computed_field
    @property
    def balance(self) -> str:
        return format_cents(self.balance_cents)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: Optional[str]
    icon: Optional[str]
    is_transfer: bool
    archived_at: Optional[datetime]


class CategoryWithCountOut(CategoryOut):
    transaction_count: int


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: date
    type: TransactionType
    amount_cents: int
    description: str
    account_id: int
    category_id: int
    state: TransactionState
    kind: TransactionKind
    transfer_group_id: Optional[str]
    transfer_direction: Optional[TransferDirection]
    archived_at: Optional[datetime]
    account: AccountOut
    category: CategoryOut

    @computed_field
    @property
    def amount(self) -> str:
        return format_cents(self.amount_cents)


class TransferOut(BaseModel):
    from_transaction: TransactionOut
    to_transaction: Optional[TransactionOut]


class TransactionPageOut(BaseModel):
    items: list[TransactionOut]
    total: int
    total_pages: int
    current_page: int
    limit: int


class SummaryOut(BaseModel):
    total_balance: str
    monthly_income: str
    monthly_expenses: str
    savings_rate: str


class CategorySpendingOut(BaseModel):
    id: int
    name: str
    color: Optional[str]
    icon: Optional[str]
    amount: str
    transaction_count: int


class ImportResultOut(BaseModel):
    imported_count: int
    errors: list[str]


class CountOut(BaseModel):
    count: int
    message: str


SortField = Literal["date", "amount", "description", "account", "category"]
SortOrder = Literal["asc", "desc"]
