from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ConflictError, NotFoundError, ValidationError
from models import TransactionType, User
from schemas import CategoryIn, TransactionIn
from services import CategoryService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session, email: str) -> User:
    user = User(name=email.split("@")[0], email=email, password_hash="x")
    session.add(user)
    session.commit()
    return user


def test_category_names_are_unique_per_user_case_insensitive() -> None:
    session = make_session()
    alice = make_user(session, "alice@example.com")
    bob = make_user(session, "bob@example.com")

    CategoryService(session, alice.id).create(CategoryIn(name="Groceries"))
    with pytest.raises(ConflictError):
        CategoryService(session, alice.id).create(CategoryIn(name="  groceries "))

    other = CategoryService(session, bob.id).create(CategoryIn(name="Groceries"))
    assert other.user_id == bob.id


def test_blank_category_name_is_rejected() -> None:
    session = make_session()
    user = make_user(session, "alice@example.com")
    with pytest.raises(ValidationError):
        CategoryService(session, user.id).create(CategoryIn(name="   "))


def test_rename_keeps_own_name_and_blocks_duplicates() -> None:
    session = make_session()
    user = make_user(session, "alice@example.com")
    service = CategoryService(session, user.id)
    food = service.create(CategoryIn(name="Food"))
    service.create(CategoryIn(name="Travel"))

    assert service.rename(food.id, "FOOD").name == "FOOD"
    with pytest.raises(ConflictError):
        service.rename(food.id, "travel")


def test_categories_of_other_users_are_not_found() -> None:
    session = make_session()
    alice = make_user(session, "alice@example.com")
    bob = make_user(session, "bob@example.com")
    food = CategoryService(session, alice.id).create(CategoryIn(name="Food"))

    with pytest.raises(NotFoundError):
        CategoryService(session, bob.id).rename(food.id, "Mine")
    with pytest.raises(NotFoundError):
        CategoryService(session, bob.id).delete(food.id)


def test_category_in_use_cannot_be_deleted() -> None:
    session = make_session()
    user = make_user(session, "alice@example.com")
    categories = CategoryService(session, user.id)
    food = categories.create(CategoryIn(name="Food"))
    spare = categories.create(CategoryIn(name="Spare"))
    TransactionService(session, user.id).create(
        TransactionIn(
            amount_cents=1_250,
            type=TransactionType.expense,
            date=date(2025, 8, 3),
            category_id=food.id,
        )
    )

    with pytest.raises(ConflictError) as exc:
        categories.delete(food.id)
    assert exc.value.title == "Category in use"

    categories.delete(spare.id)
    assert [c.name for c in categories.list_all()] == ["Food"]
    assert categories.usage() == {food.id: (1, 1_250)}
