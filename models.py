from datetime import date, datetime
from enum import Enum
from typing import ClassVar, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship, synonym

from database import Base


MAX_MEAL_COUNT_TENTHS = 100
MAX_AMOUNT_CENTS = 9_999_999


class RecordStore(str, Enum):
    meals = "meals"
    deposits = "deposits"
    shopping_expenses = "shopping-expenses"
    utilities = "utilities"

    @property
    def model(self) -> type["MessRecord"]:
        return STORE_MODELS[self]

    @property
    def scale(self) -> int:
        """Minor units per whole unit: tenths of a meal, or cents."""
        return 10 if self == RecordStore.meals else 100

    @property
    def decimals(self) -> int:
        return 1 if self == RecordStore.meals else 2

    @property
    def has_description(self) -> bool:
        return self in (RecordStore.shopping_expenses, RecordStore.utilities)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    meals: Mapped[list["Meal"]] = relationship("Meal", back_populates="user")
    deposits: Mapped[list["Deposit"]] = relationship("Deposit", back_populates="user")
    shopping_expenses: Mapped[list["ShoppingExpense"]] = relationship(
        "ShoppingExpense", back_populates="user"
    )
    utilities: Mapped[list["Utility"]] = relationship(
        "Utility", back_populates="user"
    )

    __table_args__ = (Index("ix_users_active_name", "active", "name"),)


class MessRecord(Base, TimestampMixin):
    """Shared shape of the per-member, per-day fact tables.

    ``quantity`` is the stored integer in minor units (see ``RecordStore.scale``).
    """

    __abstract__ = True

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    store: ClassVar[RecordStore]

    @declared_attr
    def user_id(cls) -> Mapped[int]:
        return mapped_column(ForeignKey("users.id"), nullable=False)


class Meal(MessRecord):
    __tablename__ = "meals"
    store = RecordStore.meals

    count_tenths: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity = synonym("count_tenths")

    user: Mapped["User"] = relationship("User", back_populates="meals")

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_meal_user_date"),
        Index("ix_meals_date", "date"),
        CheckConstraint(
            f"count_tenths >= 0 AND count_tenths <= {MAX_MEAL_COUNT_TENTHS}",
            name="ck_meals_count_range",
        ),
    )


class Deposit(MessRecord):
    __tablename__ = "deposits"
    store = RecordStore.deposits

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity = synonym("amount_cents")

    user: Mapped["User"] = relationship("User", back_populates="deposits")

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_deposit_user_date"),
        Index("ix_deposits_date", "date"),
        CheckConstraint(
            f"amount_cents >= 0 AND amount_cents <= {MAX_AMOUNT_CENTS}",
            name="ck_deposits_amount_range",
        ),
    )


class ShoppingExpense(MessRecord):
    __tablename__ = "shopping_expenses"
    store = RecordStore.shopping_expenses

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    quantity = synonym("amount_cents")

    user: Mapped["User"] = relationship("User", back_populates="shopping_expenses")

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_shopping_expense_user_date"),
        Index("ix_shopping_expenses_date", "date"),
        CheckConstraint(
            f"amount_cents >= 0 AND amount_cents <= {MAX_AMOUNT_CENTS}",
            name="ck_shopping_expenses_amount_range",
        ),
    )


class Utility(MessRecord):
    __tablename__ = "utilities"
    store = RecordStore.utilities

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    quantity = synonym("amount_cents")

    user: Mapped["User"] = relationship("User", back_populates="utilities")

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_utility_user_date"),
        Index("ix_utilities_date", "date"),
        CheckConstraint(
            f"amount_cents >= 0 AND amount_cents <= {MAX_AMOUNT_CENTS}",
            name="ck_utilities_amount_range",
        ),
    )


STORE_MODELS: dict[RecordStore, type[MessRecord]] = {
    RecordStore.meals: Meal,
    RecordStore.deposits: Deposit,
    RecordStore.shopping_expenses: ShoppingExpense,
    RecordStore.utilities: Utility,
}
