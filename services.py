from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from aggregation import (
    OverspendAlert,
    PeriodSummary,
    category_breakdown,
    evaluate_overspend,
    totals_by_type,
)
from auth import hash_password, verify_password
from errors import AuthError, ConflictError, NotFoundError, ValidationError
from models import (
    Account,
    Category,
    ExpenseType,
    Transaction,
    TransactionType,
    User,
)
from periods import Period, current_month
from schemas import (
    CategoryIn,
    SignupIn,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def find_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.email == normalize_email(email))
        )

    def signup(self, data: SignupIn) -> User:
        email = normalize_email(data.email)
        if not email or not data.password:
            raise ValidationError(
                "Please provide both email and password",
                title="Email and password are required",
            )
        if not EMAIL_RE.match(email):
            raise ValidationError(
                "Please provide a valid email address", title="Invalid email format"
            )
        if len(data.password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long",
                title="Password too weak",
            )
        if self.find_by_email(email):
            raise ConflictError(
                "An account with this email already exists",
                title="User already exists",
            )

        user = User(
            name=email.split("@")[0],
            email=email,
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "An account with this email already exists",
                title="User already exists",
            ) from exc
        self.session.refresh(user)
        logger.info("user_signup: user_id=%s", user.id)
        return user

    def authenticate(self, email: str, password: str) -> User:
        if not email or not password:
            raise ValidationError(
                "Email and password are required", title="Missing credentials"
            )
        user = self.find_by_email(email)
        if not user or not verify_password(password, user.password_hash):
            raise AuthError("Email or password is incorrect", title="Invalid credentials")
        return user

    def profile(self, user_id: int) -> User:
        user = self.session.scalar(
            select(User).options(selectinload(User.accounts)).where(User.id == user_id)
        )
        if not user:
            raise NotFoundError(
                "User profile could not be retrieved", title="User not found"
            )
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        return list(self.session.scalars(stmt).all())

    def usage(self) -> dict[int, tuple[int, int]]:
        """Transaction count and total cents per category of this user."""
        rows = self.session.execute(
            select(
                Transaction.category_id,
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.amount_cents), 0),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.category_id.isnot(None),
            )
            .group_by(Transaction.category_id)
        ).all()
        return {row[0]: (int(row[1]), int(row[2])) for row in rows}

    def get(self, category_id: int) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.id == category_id, Category.user_id == self.user_id
            )
        )
        if not category:
            raise NotFoundError(
                "The requested category does not exist or you do not have access to it",
                title="Category not found",
            )
        return category

    def _clean_name(self, name: Optional[str]) -> str:
        clean = (name or "").strip()
        if not clean:
            raise ValidationError(
                "Category name is required", title="Missing required fields"
            )
        return clean

    def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError(
                "A category with this name already exists",
                title="Category already exists",
            )

    def create(self, data: CategoryIn) -> Category:
        name = self._clean_name(data.name)
        self._ensure_unique(name)
        category = Category(user_id=self.user_id, name=name, type=data.type)
        self.session.add(category)
        self._commit_unique()
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        clean = self._clean_name(name)
        category = self.get(category_id)
        self._ensure_unique(clean, exclude_id=category.id)
        category.name = clean
        self._commit_unique()
        self.session.refresh(category)
        return category

    def is_used(self, category_id: int) -> bool:
        count = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category_id,
            )
        ).scalar_one()
        return int(count or 0) > 0

    def delete(self, category_id: int) -> Category:
        category = self.get(category_id)
        if self.is_used(category.id):
            raise ConflictError(
                "Cannot delete category that is used in transactions. "
                "Please remove or reassign transactions first.",
                title="Category in use",
            )
        self.session.delete(category)
        self.session.commit()
        return category

    def _commit_unique(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "A category with this name already exists",
                title="Category already exists",
            ) from exc


@dataclass
class TransactionFilters:
    start: Optional[date] = None
    end: Optional[date] = None
    category: Optional[str] = None
    type: Optional[TransactionType] = None
    expense_type: Optional[ExpenseType] = None

    def narrows(self) -> bool:
        """True when anything besides the transaction type restricts the list."""
        return bool(self.start or self.end or self.category or self.expense_type)


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        owned = self.session.scalar(
            select(Category.id).where(
                Category.id == category_id, Category.user_id == self.user_id
            )
        )
        if owned is None:
            raise ValidationError("Category not found", title="Invalid category")

    def _check_account(self, account_id: Optional[int]) -> None:
        if account_id is None:
            return
        owned = self.session.scalar(
            select(Account.id).where(
                Account.id == account_id, Account.user_id == self.user_id
            )
        )
        if owned is None:
            raise ValidationError("Account not found", title="Invalid account")

    def create(
        self, data: TransactionIn, receipt_path: Optional[str] = None
    ) -> Transaction:
        self._check_category(data.category_id)
        self._check_account(data.account_id)
        txn = Transaction(
            user_id=self.user_id,
            category_id=data.category_id,
            account_id=data.account_id,
            amount_cents=data.amount_cents,
            type=data.type,
            description=data.description,
            source=data.source if data.type == TransactionType.income else None,
            date=data.date,
            expense_type=data.expense_type,
            start_date=data.start_date,
            end_date=data.end_date,
            receipt_path=receipt_path if data.type == TransactionType.expense else None,
        )
        self.session.add(txn)
        self.session.commit()
        return self.get(txn.id)

    def get(
        self, transaction_id: int, txn_type: Optional[TransactionType] = None
    ) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
            .execution_options(populate_existing=True)
        )
        if txn_type is not None:
            stmt = stmt.where(Transaction.type == txn_type)
        txn = self.session.scalar(stmt)
        if not txn:
            label = txn_type.value.capitalize() if txn_type else "Transaction"
            raise NotFoundError(
                f"The requested {label.lower()} does not exist or you do not have access to it",
                title=f"{label} not found",
            )
        return txn

    def _base_query(self):
        return (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )

    def list_for_user(
        self,
        limit: int = 50,
        offset: int = 0,
        txn_type: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        stmt = self._base_query().offset(offset).limit(limit)
        if txn_type is not None:
            stmt = stmt.where(Transaction.type == txn_type)
        return list(self.session.scalars(stmt).unique().all())

    def list_with_filters(
        self, filters: TransactionFilters, limit: int = 50, offset: int = 0
    ) -> list[Transaction]:
        stmt = self._base_query().offset(offset).limit(limit)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.expense_type:
            stmt = stmt.where(Transaction.expense_type == filters.expense_type)
        if filters.category:
            needle = filters.category.lower()
            stmt = stmt.where(
                Transaction.category.has(
                    func.lower(Category.name).contains(needle, autoescape=True)
                )
            )
        return list(self.session.scalars(stmt).unique().all())

    def update(
        self,
        transaction_id: int,
        data: TransactionUpdate,
        *,
        txn_type: Optional[TransactionType] = None,
        receipt_path: Optional[str] = None,
    ) -> tuple[Transaction, Optional[str]]:
        """Apply the fields set on ``data``.

        Returns the refreshed row and the receipt path it replaced, if any,
        so the caller can remove the old file once the update is committed.
        """
        changes = data.changes()
        if not changes and receipt_path is None:
            raise ValidationError(
                "No valid fields to update", title="No updates provided"
            )

        txn = self.get(transaction_id, txn_type)
        if "category_id" in changes:
            self._check_category(changes["category_id"])
        if "account_id" in changes:
            self._check_account(changes["account_id"])
        for required in ("amount_cents", "date", "expense_type"):
            if required in changes and changes[required] is None:
                raise ValidationError(
                    f"{required} cannot be cleared", title="Invalid update"
                )

        for field, value in changes.items():
            setattr(txn, field, value)

        if txn.type == TransactionType.income:
            txn.expense_type = ExpenseType.one_time
        if txn.expense_type == ExpenseType.recurring:
            if txn.start_date is None:
                self.session.rollback()
                raise ValidationError(
                    "Start date is required for recurring expenses",
                    title="Missing start date",
                )
            if txn.end_date is not None and txn.end_date < txn.start_date:
                self.session.rollback()
                raise ValidationError(
                    "End date must be on or after start date",
                    title="Invalid date range",
                )
        else:
            txn.start_date = None
            txn.end_date = None

        replaced: Optional[str] = None
        if receipt_path is not None and txn.type == TransactionType.expense:
            replaced = txn.receipt_path
            txn.receipt_path = receipt_path

        self.session.commit()
        return self.get(txn.id), replaced

    def delete(
        self, transaction_id: int, txn_type: Optional[TransactionType] = None
    ) -> Transaction:
        txn = self.get(transaction_id, txn_type)
        self.session.delete(txn)
        self.session.commit()
        return txn


class SummaryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _window(self, period: Period):
        return (
            Transaction.user_id == self.user_id,
            Transaction.date.between(period.start, period.end),
        )

    def totals(self, period: Period):
        rows = self.session.execute(
            select(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0),
                func.count(Transaction.id),
            )
            .where(*self._window(period))
            .group_by(Transaction.type)
        ).all()
        return totals_by_type((row[0], row[1], row[2]) for row in rows)

    def breakdown(self, period: Period):
        rows = self.session.execute(
            select(
                Transaction.category_id,
                Category.name,
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0),
                func.count(Transaction.id),
            )
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(*self._window(period))
            .group_by(Transaction.category_id, Category.name, Transaction.type)
        ).all()
        return category_breakdown(
            (row[0], row[1], row[2], row[3], row[4]) for row in rows
        )

    def monthly(self, period: Period) -> PeriodSummary:
        totals = self.totals(period)
        return PeriodSummary(
            income=totals[TransactionType.income],
            expense=totals[TransactionType.expense],
        )

    def for_range(self, period: Period) -> PeriodSummary:
        totals = self.totals(period)
        grouped = self.breakdown(period)
        return PeriodSummary(
            income=totals[TransactionType.income],
            expense=totals[TransactionType.expense],
            income_by_category=grouped[TransactionType.income],
            expense_by_category=grouped[TransactionType.expense],
        )

    def alerts(self, period: Optional[Period] = None) -> tuple[Period, OverspendAlert]:
        period = period or current_month()
        totals = self.totals(period)
        alert = evaluate_overspend(
            totals[TransactionType.income].total_cents,
            totals[TransactionType.expense].total_cents,
        )
        if alert.alert:
            logger.info(
                "overspend_alert: user_id=%s month=%s", self.user_id, period.slug
            )
        return period, alert
