import datetime as dt
from typing import Optional, TypeVar, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    model_validator,
)

from errors import ValidationError
from models import ExpenseType, TransactionType

ModelT = TypeVar("ModelT", bound=BaseModel)

AmountValue = Union[str, int, float]


class SignupIn(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=200)


class LoginIn(BaseModel):
    email: str
    password: str


class CategoryIn(BaseModel):
    name: str = Field(..., max_length=100)
    type: TransactionType = TransactionType.expense


class CategoryRenameIn(BaseModel):
    name: str = Field(..., max_length=100)


class TransactionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    type: TransactionType
    date: dt.date
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    source: Optional[str] = Field(default=None, max_length=200)
    expense_type: ExpenseType = ExpenseType.one_time
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None

    @model_validator(mode="after")
    def _check_recurring(self) -> "TransactionIn":
        if self.type == TransactionType.income:
            self.expense_type = ExpenseType.one_time
        else:
            self.source = None
        if self.expense_type == ExpenseType.recurring:
            if self.start_date is None:
                raise ValidationError(
                    "Start date is required for recurring expenses",
                    title="Missing start date",
                )
            if self.end_date is not None and self.end_date < self.start_date:
                raise ValidationError(
                    "End date must be on or after start date",
                    title="Invalid date range",
                )
        else:
            self.start_date = None
            self.end_date = None
        return self


class TransactionUpdate(BaseModel):
    """Sparse update: only fields explicitly set are applied."""

    amount_cents: Optional[int] = Field(default=None, gt=0)
    date: Optional[dt.date] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    source: Optional[str] = Field(default=None, max_length=200)
    expense_type: Optional[ExpenseType] = None
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True)


class IncomeIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: AmountValue
    date: str
    source: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[int] = Field(default=None, alias="categoryId")
    account_id: Optional[int] = Field(default=None, alias="accountId")


class IncomeUpdateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Optional[AmountValue] = None
    date: Optional[str] = None
    source: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    category_id: Optional[int] = Field(default=None, alias="categoryId")
    account_id: Optional[int] = Field(default=None, alias="accountId")


def fold_source(source: Optional[str], description: Optional[str]) -> Optional[str]:
    """Incomes keep their source inside the description as ``source: text``."""
    source = (source or "").strip() or None
    description = (description or "").strip() or None
    if description:
        return f"{source}: {description}" if source else description
    return source


def unfold_source(description: Optional[str], source: Optional[str]) -> Optional[str]:
    """Description text without the prefix ``fold_source`` added for ``source``."""
    if not description or not source:
        return description
    if description == source:
        return None
    prefix = f"{source}: "
    if description.startswith(prefix):
        return description[len(prefix) :]
    return description


def validation_error_from(errors: list[dict]) -> ValidationError:
    if not errors:
        return ValidationError("Invalid input")
    first = errors[0]
    original = (first.get("ctx") or {}).get("error")
    if isinstance(original, ValidationError):
        return original
    loc = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    msg = first.get("msg", "Invalid input")
    return ValidationError(f"{loc}: {msg}" if loc else msg)


def build(model_cls: type[ModelT], **data: object) -> ModelT:
    try:
        return model_cls(**data)
    except PydanticValidationError as exc:
        raise validation_error_from(exc.errors()) from exc
