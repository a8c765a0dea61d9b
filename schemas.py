from datetime import date
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from models import RecordStore
from periods import local_today


RESERVED_COLUMN_NAMES = {"date", "total"}


def not_in_future(value: date) -> date:
    if value > local_today():
        raise ValueError("Date cannot be in the future")
    return value


NotFutureDate = Annotated[date, AfterValidator(not_in_future)]


class MemberIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)

    @field_validator("name")
    @classmethod
    def name_not_reserved(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("Name cannot be blank")
        if clean.lower() in RESERVED_COLUMN_NAMES:
            raise ValueError(f"'{clean}' is reserved, pick another name")
        return clean


class RecordIn(BaseModel):
    """Shared fields of the per-store payloads.

    Only the subclasses in ``STORE_SCHEMAS`` are accepted by the record
    services; each overrides ``quantity``.
    """

    model_config = ConfigDict(extra="forbid")

    user_id: int
    date: NotFutureDate

    def quantity(self) -> int:
        """Stored value in minor units; overridden by every store payload."""
        raise NotImplementedError


class MealIn(RecordIn):
    meal_count: Decimal = Field(..., ge=0, le=10, multiple_of=Decimal("0.5"))

    def quantity(self) -> int:
        return int(self.meal_count * 10)


class DepositIn(RecordIn):
    amount: Decimal = Field(..., ge=0, le=Decimal("99999.99"), decimal_places=2)

    def quantity(self) -> int:
        return int(self.amount * 100)


class ShoppingExpenseIn(DepositIn):
    description: Optional[str] = Field(default=None, max_length=255)

    @field_validator("description")
    @classmethod
    def blank_description_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()


class UtilityIn(ShoppingExpenseIn):
    pass


class BulkMealIn(BaseModel):
    date: NotFutureDate
    meals: dict[int, Optional[Decimal]] = Field(default_factory=dict)

    @field_validator("meals")
    @classmethod
    def counts_in_range(
        cls, value: dict[int, Optional[Decimal]]
    ) -> dict[int, Optional[Decimal]]:
        for user_id, count in value.items():
            if count is None:
                continue
            if count < 0 or count > 10:
                raise ValueError(f"Meal count for user {user_id} must be 0-10")
            if (count * 2) % 1 != 0:
                raise ValueError(
                    f"Meal count for user {user_id} must be in 0.5 increments"
                )
        return value


class DepositCSVRow(BaseModel):
    user_id: int
    date: NotFutureDate
    amount: Decimal = Field(..., ge=0, le=Decimal("99999.99"), decimal_places=2)


STORE_SCHEMAS: dict[RecordStore, type[RecordIn]] = {
    RecordStore.meals: MealIn,
    RecordStore.deposits: DepositIn,
    RecordStore.shopping_expenses: ShoppingExpenseIn,
    RecordStore.utilities: UtilityIn,
}
