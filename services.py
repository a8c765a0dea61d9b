from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional, Sequence, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from cache import (
    BALANCES,
    DASHBOARD,
    STATISTICS,
    SUMMARY,
    ReportCache,
    pivot_kind,
)
from csv_utils import deposit_template, export_pivot, export_records, parse_deposit_csv
from models import MessRecord, RecordStore, User
from periods import Period, local_today, month_key, resolve_period
from pivot import PivotTable, build_pivot, to_units
from schemas import STORE_SCHEMAS, BulkMealIn, MemberIn, RecordIn


logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class MemberNotFound(ValueError):
    pass


class RecordNotFound(ValueError):
    pass


class DuplicateRecord(ValueError):
    pass


@dataclass(frozen=True)
class UserSummary:
    id: int
    name: str
    total_meal: Decimal
    meal_rate: Decimal
    meal_cost: Decimal
    total_utility: Decimal
    total_cost: Decimal
    total_deposit: Decimal
    balance: Decimal


@dataclass(frozen=True)
class MonthlyTotals:
    meals: Decimal
    deposits: Decimal
    shopping_expenses: Decimal
    utilities: Decimal


@dataclass(frozen=True)
class MonthlySummary:
    period: Period
    total_meals: Decimal
    total_deposits: Decimal
    total_shopping_expenses: Decimal
    total_utilities: Decimal
    meal_rate: Decimal
    meal_cost: Decimal
    balance: Decimal
    per_user: list[UserSummary]


@dataclass(frozen=True)
class StoreStats:
    total: Decimal
    record_count: int
    active_members: int


@dataclass(frozen=True)
class MonthlyStatistics:
    period: Period
    total_active_members: int
    total_meals: Decimal
    total_deposits: Decimal
    total_shopping_expenses: Decimal
    average_meals_per_day: Decimal
    most_active_member: Optional[dict[str, object]]


@dataclass(frozen=True)
class ImportResult:
    imported: int
    errors: list[str]


def calculate_meal_rate(
    total_meals: Decimal, total_shopping_expenses: Decimal
) -> Decimal:
    if total_meals <= 0:
        return Decimal(0)
    return total_shopping_expenses / total_meals


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class MemberService:
    def __init__(self, session: Session, cache: Optional[ReportCache] = None) -> None:
        self.session = session
        self.cache = cache or ReportCache()

    def list_active(self) -> list[User]:
        stmt = (
            select(User).where(User.active.is_(True)).order_by(User.name, User.id)
        )
        return list(self.session.scalars(stmt).all())

    def list_all(self) -> list[User]:
        stmt = select(User).order_by(User.name, User.id)
        return list(self.session.scalars(stmt).all())

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise MemberNotFound("Member not found")
        return user

    def create(self, data: MemberIn) -> User:
        existing = self.session.scalar(
            select(User).where(func.lower(User.name) == data.name.lower())
        )
        if existing:
            raise ValueError("A member with this name already exists")
        user = User(name=data.name, active=True)
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        # a new roster column changes every month's reports
        self.cache.clear()
        logger.info(f"member_created: id={user.id} name={user.name!r}")
        return user

    def set_active(self, user_id: int, active: bool) -> User:
        user = self.get(user_id)
        if user.active == active:
            return user
        user.active = active
        self.session.commit()
        self.cache.clear()
        logger.info(f"member_status_changed: id={user.id} active={active}")
        return user


class RecordService:
    """Upsert-by-(member, date) access to one record store.

    Every committed write invalidates the cached reports of the month(s) it
    touched.
    """

    def __init__(
        self,
        session: Session,
        store: RecordStore,
        cache: Optional[ReportCache] = None,
    ) -> None:
        self.session = session
        self.store = store
        self.model = store.model
        self.cache = cache or ReportCache()

    def get(self, record_id: int) -> MessRecord:
        stmt = (
            select(self.model)
            .options(joinedload(self.model.user))
            .where(self.model.id == record_id)
        )
        record = self.session.scalar(stmt)
        if not record:
            raise RecordNotFound("Record not found")
        return record

    def query(self, start: date, end: date) -> list[MessRecord]:
        stmt = (
            select(self.model)
            .options(joinedload(self.model.user))
            .where(self.model.date.between(start, end))
            .order_by(self.model.date, self.model.user_id)
        )
        return list(self.session.scalars(stmt).all())

    def query_for_user(self, user_id: int, start: date, end: date) -> list[MessRecord]:
        stmt = (
            select(self.model)
            .where(
                self.model.user_id == user_id,
                self.model.date.between(start, end),
            )
            .order_by(self.model.date)
        )
        return list(self.session.scalars(stmt).all())

    def _find(self, user_id: int, on_date: date) -> Optional[MessRecord]:
        return self.session.scalar(
            select(self.model).where(
                self.model.user_id == user_id, self.model.date == on_date
            )
        )

    def _require_member(self, user_id: int) -> None:
        if self.session.get(User, user_id) is None:
            raise MemberNotFound("The selected member is invalid")

    def _check_payload(self, data: RecordIn) -> None:
        expected = STORE_SCHEMAS[self.store]
        if type(data) is not expected:
            raise TypeError(
                f"{self.store.value} expects {expected.__name__}, "
                f"got {type(data).__name__}"
            )

    def stage(
        self,
        user_id: int,
        on_date: date,
        quantity: int,
        description: Optional[str] = None,
    ) -> MessRecord:
        """Insert or update the (member, date) record without committing."""
        record = self._find(user_id, on_date)
        if record is None:
            record = self.model(user_id=user_id, date=on_date)
            self.session.add(record)
        record.quantity = quantity
        if self.store.has_description:
            record.description = description
        self.session.flush()
        return record

    def invalidate(self, *dates: date) -> None:
        for key in sorted({month_key(d) for d in dates}):
            self.cache.invalidate_month(key)

    def upsert(self, data: RecordIn) -> MessRecord:
        self._check_payload(data)
        self._require_member(data.user_id)
        record = self.stage(
            data.user_id,
            data.date,
            data.quantity(),
            getattr(data, "description", None),
        )
        self.session.commit()
        self.session.refresh(record)
        self.invalidate(data.date)
        logger.info(
            f"record_upserted: store={self.store.value} id={record.id} "
            f"user_id={data.user_id} date={data.date}"
        )
        return record

    def update(self, record_id: int, data: RecordIn) -> MessRecord:
        self._check_payload(data)
        record = self.get(record_id)
        self._require_member(data.user_id)
        clash = self._find(data.user_id, data.date)
        if clash is not None and clash.id != record.id:
            raise DuplicateRecord("A record already exists for this member and date")

        old_date = record.date
        record.user_id = data.user_id
        record.date = data.date
        record.quantity = data.quantity()
        if self.store.has_description:
            record.description = getattr(data, "description", None)
        self.session.commit()
        self.session.refresh(record)
        self.invalidate(old_date, data.date)
        logger.info(
            f"record_updated: store={self.store.value} id={record.id} "
            f"user_id={data.user_id} date={data.date}"
        )
        return record

    def delete(self, record_id: int) -> None:
        record = self.get(record_id)
        record_date = record.date
        self.session.delete(record)
        self.session.commit()
        self.invalidate(record_date)
        logger.info(f"record_deleted: store={self.store.value} id={record_id}")


class MealService(RecordService):
    def __init__(self, session: Session, cache: Optional[ReportCache] = None) -> None:
        super().__init__(session, RecordStore.meals, cache)

    def bulk_upsert(self, data: BulkMealIn) -> int:
        """Record one day's meals for many members; empty or zero counts are skipped."""
        counts = {user_id: count for user_id, count in data.meals.items() if count}
        if counts:
            known = set(
                self.session.scalars(select(User.id).where(User.id.in_(counts)))
            )
            unknown = sorted(set(counts) - known)
            if unknown:
                raise MemberNotFound(f"Unknown member ids: {unknown}")
        saved = 0
        for user_id, count in counts.items():
            self.stage(user_id, data.date, int(count * 10))
            saved += 1
        self.session.commit()
        if saved:
            self.invalidate(data.date)
        logger.info(f"meals_bulk_saved: date={data.date} count={saved}")
        return saved


def record_service(
    session: Session, store: RecordStore, cache: Optional[ReportCache] = None
) -> RecordService:
    if store == RecordStore.meals:
        return MealService(session, cache)
    return RecordService(session, store, cache)


class MetricsService:
    """Uncached aggregation over the active roster's records in a period."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def roster(self) -> list[User]:
        return MemberService(self.session).list_active()

    def _store_sum_minor(self, store: RecordStore, period: Period) -> int:
        model = store.model
        stmt = (
            select(func.coalesce(func.sum(model.quantity), 0))
            .select_from(model)
            .join(User, User.id == model.user_id)
            .where(User.active.is_(True), model.date.between(period.start, period.end))
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def store_total(self, store: RecordStore, period: Period) -> Decimal:
        return to_units(self._store_sum_minor(store, period), store.scale)

    def totals(self, period: Period) -> MonthlyTotals:
        return MonthlyTotals(
            meals=self.store_total(RecordStore.meals, period),
            deposits=self.store_total(RecordStore.deposits, period),
            shopping_expenses=self.store_total(RecordStore.shopping_expenses, period),
            utilities=self.store_total(RecordStore.utilities, period),
        )

    def user_totals(self, store: RecordStore, period: Period) -> dict[int, Decimal]:
        model = store.model
        stmt = (
            select(model.user_id, func.sum(model.quantity).label("total"))
            .select_from(model)
            .join(User, User.id == model.user_id)
            .where(User.active.is_(True), model.date.between(period.start, period.end))
            .group_by(model.user_id)
        )
        return {
            row.user_id: to_units(int(row.total or 0), store.scale)
            for row in self.session.execute(stmt)
        }

    def user_balances(
        self,
        meal_rate: Decimal,
        period: Period,
        roster: Optional[Sequence[User]] = None,
    ) -> list[UserSummary]:
        if roster is None:
            roster = self.roster()
        meals = self.user_totals(RecordStore.meals, period)
        deposits = self.user_totals(RecordStore.deposits, period)
        utilities = self.user_totals(RecordStore.utilities, period)

        summaries: list[UserSummary] = []
        for member in roster:
            total_meal = meals.get(member.id, Decimal(0))
            total_deposit = deposits.get(member.id, Decimal(0))
            total_utility = utilities.get(member.id, Decimal(0))
            meal_cost = round_money(total_meal * meal_rate)
            total_cost = meal_cost + total_utility
            summaries.append(
                UserSummary(
                    id=member.id,
                    name=member.name,
                    total_meal=total_meal,
                    meal_rate=meal_rate,
                    meal_cost=meal_cost,
                    total_utility=total_utility,
                    total_cost=total_cost,
                    total_deposit=total_deposit,
                    balance=round_money(total_deposit - total_cost),
                )
            )
        return summaries

    def monthly_summary(self, period: Period) -> MonthlySummary:
        totals = self.totals(period)
        meal_rate = calculate_meal_rate(totals.meals, totals.shopping_expenses)
        return MonthlySummary(
            period=period,
            total_meals=totals.meals,
            total_deposits=totals.deposits,
            total_shopping_expenses=totals.shopping_expenses,
            total_utilities=totals.utilities,
            meal_rate=meal_rate,
            meal_cost=round_money(totals.meals * meal_rate),
            balance=totals.deposits - totals.shopping_expenses - totals.utilities,
            per_user=self.user_balances(meal_rate, period),
        )

    def store_stats(self, store: RecordStore, period: Period) -> StoreStats:
        model = store.model
        stmt = (
            select(
                func.coalesce(func.sum(model.quantity), 0),
                func.count(model.id),
                func.count(func.distinct(model.user_id)),
            )
            .select_from(model)
            .join(User, User.id == model.user_id)
            .where(User.active.is_(True), model.date.between(period.start, period.end))
        )
        total, record_count, members = self.session.execute(stmt).one()
        return StoreStats(
            total=to_units(int(total or 0), store.scale),
            record_count=int(record_count or 0),
            active_members=int(members or 0),
        )

    def monthly_statistics(self, period: Period) -> MonthlyStatistics:
        roster = self.roster()
        totals = self.totals(period)
        if period.days > 0:
            average = (totals.meals / period.days).quantize(
                CENTS, rounding=ROUND_HALF_UP
            )
        else:
            average = Decimal(0)

        most_active = None
        if roster:
            meals = self.user_totals(RecordStore.meals, period)
            top = max(roster, key=lambda member: meals.get(member.id, Decimal(0)))
            most_active = {
                "name": top.name,
                "total_meals": meals.get(top.id, Decimal(0)),
            }

        return MonthlyStatistics(
            period=period,
            total_active_members=len(roster),
            total_meals=totals.meals,
            total_deposits=totals.deposits,
            total_shopping_expenses=totals.shopping_expenses,
            average_meals_per_day=average,
            most_active_member=most_active,
        )

    def pivot(self, store: RecordStore, period: Period) -> PivotTable:
        records = RecordService(self.session, store).query(period.start, period.end)
        table = build_pivot(
            period,
            self.roster(),
            records,
            scale=store.scale,
            blank_missing=store == RecordStore.deposits,
        )
        return replace(table, stats=asdict(self.store_stats(store, period)))


class ReportService:
    """Month-keyed, cache-checked entry points for the presentation layer.

    Accepts a month token (``"YYYY-MM"``, unparseable falls back to the current
    month) or an already resolved ``Period``. Only whole months are cached.
    """

    def __init__(self, session: Session, cache: Optional[ReportCache] = None) -> None:
        self.session = session
        self.cache = cache or ReportCache()
        self.metrics = MetricsService(session)

    def _cached(self, kind: str, period: Period, compute: Callable[[], object]):
        if not period.is_month:
            return compute()
        return self.cache.remember(kind, period.month_key, compute)

    @staticmethod
    def resolve(month: Union[str, Period, None]) -> Period:
        if isinstance(month, Period):
            return month
        return resolve_period(month)

    def monthly_pivot(
        self, store: RecordStore, month: Union[str, Period, None] = None
    ) -> PivotTable:
        period = self.resolve(month)
        return self._cached(
            pivot_kind(store), period, lambda: self.metrics.pivot(store, period)
        )

    def monthly_summary(self, month: Union[str, Period, None] = None) -> MonthlySummary:
        period = self.resolve(month)
        return self._cached(
            SUMMARY, period, lambda: self.metrics.monthly_summary(period)
        )

    def user_balances(
        self, month: Union[str, Period, None] = None
    ) -> list[UserSummary]:
        period = self.resolve(month)
        return self._cached(
            BALANCES, period, lambda: self.monthly_summary(period).per_user
        )

    def monthly_statistics(
        self, month: Union[str, Period, None] = None
    ) -> MonthlyStatistics:
        period = self.resolve(month)
        return self._cached(
            STATISTICS, period, lambda: self.metrics.monthly_statistics(period)
        )

    def dashboard(self, month: Union[str, Period, None] = None) -> dict[str, object]:
        period = self.resolve(month)
        return self._cached(
            DASHBOARD,
            period,
            lambda: {
                "period": period,
                "summary": self.monthly_summary(period),
                "statistics": self.monthly_statistics(period),
            },
        )


class CSVService:
    def __init__(self, session: Session, cache: Optional[ReportCache] = None) -> None:
        self.session = session
        self.cache = cache or ReportCache()

    def import_deposits(self, content: str) -> ImportResult:
        """Best-effort import: valid rows commit even when others fail."""
        active_ids = {member.id for member in MemberService(self.session).list_active()}
        rows, errors = parse_deposit_csv(content, active_ids)
        deposits = RecordService(self.session, RecordStore.deposits, self.cache)
        for row in rows:
            deposits.stage(row.user_id, row.date, int(row.amount * 100))
        self.session.commit()
        deposits.invalidate(*(row.date for row in rows))
        logger.info(f"deposits_imported: imported={len(rows)} errors={len(errors)}")
        return ImportResult(imported=len(rows), errors=errors)

    def export(self, store: RecordStore, period: Period) -> str:
        if store == RecordStore.meals:
            table = MetricsService(self.session).pivot(store, period)
            return export_pivot(table, decimals=store.decimals)
        records = RecordService(self.session, store).query(period.start, period.end)
        return export_records(
            records, include_description=store == RecordStore.shopping_expenses
        )

    def deposit_template(self) -> str:
        roster = MemberService(self.session).list_active()
        return deposit_template(roster, local_today())
