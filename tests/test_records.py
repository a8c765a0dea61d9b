from datetime import date, timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import Deposit, Meal, RecordStore
from schemas import (
    BulkMealIn,
    DepositIn,
    MealIn,
    MemberIn,
    RecordIn,
    ShoppingExpenseIn,
)
from services import (
    DuplicateRecord,
    MealService,
    MemberNotFound,
    MemberService,
    RecordNotFound,
    RecordService,
    record_service,
)


def test_upsert_replaces_value_for_same_member_and_date() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = MemberService(session).create(MemberIn(name="Alice"))
        deposits = RecordService(session, RecordStore.deposits)

        first = deposits.upsert(
            DepositIn(user_id=alice.id, date=date(2025, 3, 5), amount=Decimal("100"))
        )
        second = deposits.upsert(
            DepositIn(user_id=alice.id, date=date(2025, 3, 5), amount=Decimal("150"))
        )

        assert first.id == second.id
        assert session.scalar(select(func.count(Deposit.id))) == 1
        assert second.amount_cents == 15000


def test_future_dates_are_rejected() -> None:
    future = date.today() + timedelta(days=2)
    with pytest.raises(ValidationError):
        DepositIn(user_id=1, date=future, amount=Decimal("10"))
    with pytest.raises(ValidationError):
        BulkMealIn(date=future, meals={1: Decimal("1")})


def test_meal_counts_use_half_steps_up_to_ten() -> None:
    assert MealIn(user_id=1, date=date(2025, 3, 1), meal_count="2.5").quantity() == 25
    for bad in ("1.25", "-1", "10.5"):
        with pytest.raises(ValidationError):
            MealIn(user_id=1, date=date(2025, 3, 1), meal_count=bad)


def test_money_is_limited_to_two_decimals() -> None:
    assert DepositIn(user_id=1, date=date(2025, 3, 1), amount="12.34").quantity() == 1234
    with pytest.raises(ValidationError):
        DepositIn(user_id=1, date=date(2025, 3, 1), amount="10.005")
    with pytest.raises(ValidationError):
        DepositIn(user_id=1, date=date(2025, 3, 1), amount="100000")


def test_blank_description_is_stored_as_none() -> None:
    data = ShoppingExpenseIn(
        user_id=1, date=date(2025, 3, 1), amount="5", description="   "
    )
    assert data.description is None


def test_upsert_requires_existing_member() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(MemberNotFound):
            MealService(session).upsert(
                MealIn(user_id=42, date=date(2025, 3, 1), meal_count="1")
            )


def test_store_rejects_payload_of_another_store() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = MemberService(session).create(MemberIn(name="Alice"))
        with pytest.raises(TypeError):
            RecordService(session, RecordStore.deposits).upsert(
                MealIn(user_id=alice.id, date=date(2025, 3, 1), meal_count="1")
            )


def test_update_cannot_move_onto_an_occupied_slot() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = MemberService(session).create(MemberIn(name="Alice"))
        meals = MealService(session)
        meals.upsert(MealIn(user_id=alice.id, date=date(2025, 3, 1), meal_count="2"))
        other = meals.upsert(
            MealIn(user_id=alice.id, date=date(2025, 3, 2), meal_count="3")
        )

        with pytest.raises(DuplicateRecord):
            meals.update(
                other.id,
                MealIn(user_id=alice.id, date=date(2025, 3, 1), meal_count="3"),
            )

        moved = meals.update(
            other.id, MealIn(user_id=alice.id, date=date(2025, 3, 9), meal_count="1.5")
        )
        assert moved.date == date(2025, 3, 9)
        assert moved.count_tenths == 15


def test_delete_removes_record() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = MemberService(session).create(MemberIn(name="Alice"))
        shopping = record_service(session, RecordStore.shopping_expenses)
        record = shopping.upsert(
            ShoppingExpenseIn(
                user_id=alice.id,
                date=date(2025, 3, 1),
                amount="42.10",
                description="Rice",
            )
        )

        shopping.delete(record.id)

        with pytest.raises(RecordNotFound):
            shopping.get(record.id)
        with pytest.raises(RecordNotFound):
            shopping.delete(record.id)


def test_query_is_ordered_and_bounded() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        members = MemberService(session)
        alice = members.create(MemberIn(name="Alice"))
        bob = members.create(MemberIn(name="Bob"))
        meals = MealService(session)
        for member, day in ((bob, 2), (alice, 2), (alice, 1), (bob, 30)):
            meals.upsert(
                MealIn(user_id=member.id, date=date(2025, 3, day), meal_count="1")
            )
        meals.upsert(MealIn(user_id=alice.id, date=date(2025, 4, 1), meal_count="1"))

        records = meals.query(date(2025, 3, 1), date(2025, 3, 31))
        assert [(r.date.day, r.user.name) for r in records] == [
            (1, "Alice"),
            (2, "Alice"),
            (2, "Bob"),
            (30, "Bob"),
        ]
        assert len(meals.query_for_user(alice.id, date(2025, 3, 1), date(2025, 4, 30))) == 3


def test_bulk_meals_skip_empty_and_zero_counts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        members = MemberService(session)
        alice = members.create(MemberIn(name="Alice"))
        bob = members.create(MemberIn(name="Bob"))
        chandra = members.create(MemberIn(name="Chandra"))

        saved = MealService(session).bulk_upsert(
            BulkMealIn(
                date=date(2025, 3, 4),
                meals={alice.id: Decimal("2"), bob.id: None, chandra.id: Decimal("0")},
            )
        )

        assert saved == 1
        rows = session.scalars(select(Meal)).all()
        assert [(m.user_id, m.count_tenths) for m in rows] == [(alice.id, 20)]


def test_bulk_meals_validate_each_count() -> None:
    with pytest.raises(ValidationError):
        BulkMealIn(date=date(2025, 3, 4), meals={1: Decimal("0.3")})
    with pytest.raises(ValidationError):
        BulkMealIn(date=date(2025, 3, 4), meals={1: Decimal("11")})


def test_member_names_are_unique_and_not_reserved() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        members = MemberService(session)
        members.create(MemberIn(name="Alice"))
        with pytest.raises(ValueError):
            members.create(MemberIn(name=" alice "))

    for name in ("Total", "date", "   "):
        with pytest.raises(ValidationError):
            MemberIn(name=name)


def test_bulk_meals_with_unknown_member_write_nothing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        members = MemberService(session)
        alice = members.create(MemberIn(name="Alice"))

        with pytest.raises(MemberNotFound):
            MealService(session).bulk_upsert(
                BulkMealIn(
                    date=date(2025, 3, 4),
                    meals={alice.id: Decimal("2"), 999: Decimal("1")},
                )
            )
        # an unrelated commit on the same session must not carry a partial write
        members.create(MemberIn(name="Bob"))

        assert session.scalar(select(func.count(Meal.id))) == 0


def test_base_record_payload_is_rejected_by_every_store() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = MemberService(session).create(MemberIn(name="Alice"))
        data = RecordIn(user_id=alice.id, date=date(2025, 3, 1))
        for store in RecordStore:
            with pytest.raises(TypeError):
                record_service(session, store).upsert(data)

        assert session.scalar(select(func.count(Meal.id))) == 0
