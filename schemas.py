import datetime as dt
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from models import CategoryType, TransactionType, WalletType


class WalletIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    initial_balance: int = 0
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    type: WalletType = WalletType.available
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class WalletPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    initial_balance: Optional[int] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    type: Optional[WalletType] = None
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class WalletOrderIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: int
    order: int = Field(..., ge=1)


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    wallet_id: int
    category_id: Optional[int] = None
    amount: int = Field(..., gt=0)
    date: dt.date
    type: TransactionType
    note: Optional[str] = Field(default=None, max_length=500)
    tags: list[str] = Field(default_factory=list)
    exclude_from_report: bool = False


class TransactionPatch(BaseModel):
    """Partial update; fields left unset keep their stored value."""

    model_config = ConfigDict(extra="forbid")

    wallet_id: Optional[int] = None
    category_id: Optional[int] = None
    amount: Optional[int] = Field(default=None, gt=0)
    date: Optional[dt.date] = None
    type: Optional[TransactionType] = None
    note: Optional[str] = Field(default=None, max_length=500)
    tags: Optional[list[str]] = None
    exclude_from_report: Optional[bool] = None


class TransferIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    from_wallet_id: int
    to_wallet_id: int
    amount: int
    date: dt.date
    note: Optional[str] = Field(default=None, max_length=500)


class TransferPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Optional[int] = None
    date: Optional[dt.date] = None
    note: Optional[str] = Field(default=None, max_length=500)


class CategoryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    parent_id: Optional[int] = None
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)
    order: Optional[int] = None


class CategoryPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)
    order: Optional[int] = None


class ProfileIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)


class ProfilePatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_wallet_id: Optional[int] = None
    recent_transactions_limit: Optional[int] = Field(default=None, ge=1, le=500)
    language: Optional[str] = Field(default=None, max_length=10)
    theme: Optional[str] = Field(default=None, max_length=20)
    gemini_api_key: Optional[str] = Field(default=None, max_length=200)
    gemini_model: Optional[str] = Field(default=None, max_length=80)


# Auto-categorization wire format, shared with the external classifier.


class CategorizeTransaction(BaseModel):
    id: str
    note: str = ""
    amount: int
    type: TransactionType


class CategorizeCategory(BaseModel):
    id: str
    name: str
    type: CategoryType


class CategorizeRequest(BaseModel):
    transactions: list[CategorizeTransaction]
    categories: list[CategorizeCategory]


class CategorizeResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("id", "category_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        if value is None:
            return None
        return str(value)


class CategorizeResponse(BaseModel):
    results: list[CategorizeResult] = Field(default_factory=list)


# Read models.


class WalletOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    balance: int
    initial_balance: int
    currency: str
    type: WalletType
    order: int
    icon: Optional[str]
    color: Optional[str]
    updated_at: datetime

    @computed_field
    @property
    def debt(self) -> int:
        if self.type != WalletType.credit:
            return 0
        return self.initial_balance - self.balance


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    wallet_id: int
    category_id: Optional[int]
    amount: int
    date: dt.date
    type: TransactionType
    note: Optional[str]
    tags: list[str]
    is_transfer: bool
    linked_transaction_id: Optional[int]
    to_wallet_id: Optional[int]
    exclude_from_report: bool
    updated_at: datetime

    @field_validator("tags", mode="before")
    @classmethod
    def _tag_names(cls, value):
        return [getattr(tag, "name", tag) for tag in value or []]


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType
    parent_id: Optional[int]
    icon: Optional[str]
    color: Optional[str]
    order: int
    is_default: bool


class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    default_wallet_id: Optional[int]
    recent_transactions_limit: int
    language: Optional[str]
    theme: Optional[str]
    gemini_model: Optional[str]
    has_gemini_api_key: bool = False

    @classmethod
    def from_profile(cls, profile) -> "ProfileOut":
        out = cls.model_validate(profile)
        out.has_gemini_api_key = bool(profile.gemini_api_key)
        return out


class CategoryNode(CategoryOut):
    children: list[CategoryOut] = Field(default_factory=list)


class TransferOut(BaseModel):
    outgoing: TransactionOut
    incoming: TransactionOut
