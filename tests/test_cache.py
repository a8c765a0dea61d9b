from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from cache import REPORT_KINDS, SUMMARY, InMemoryReportCache, ReportCache, pivot_kind
from database import Base
from models import Meal, RecordStore
from periods import Period
from schemas import DepositIn, MealIn, MemberIn
from services import CSVService, MealService, MemberService, RecordService, ReportService


def test_new_meal_invalidates_cached_summary() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    cache = InMemoryReportCache(ttl_secs=3600)

    with Session(engine) as session:
        alice = MemberService(session, cache).create(MemberIn(name="Alice"))
        meals = MealService(session, cache)
        meals.upsert(MealIn(user_id=alice.id, date=date(2025, 3, 1), meal_count="2"))
        reports = ReportService(session, cache)

        assert reports.monthly_summary("2025-03").total_meals == Decimal(2)
        assert cache.get(SUMMARY, "2025-03") is not None

        meals.upsert(MealIn(user_id=alice.id, date=date(2025, 3, 2), meal_count="1.5"))

        assert cache.get(SUMMARY, "2025-03") is None
        assert reports.monthly_summary("2025-03").total_meals == Decimal("3.5")


def test_month_reports_are_served_from_cache_until_a_write() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    cache = InMemoryReportCache(ttl_secs=3600)

    with Session(engine) as session:
        alice = MemberService(session, cache).create(MemberIn(name="Alice"))
        reports = ReportService(session, cache)
        first = reports.monthly_summary("2025-03")

        # written behind the services' back, so nothing is invalidated
        session.add(Meal(user_id=alice.id, date=date(2025, 3, 3), count_tenths=10))
        session.commit()

        assert reports.monthly_summary("2025-03") is first
        custom = Period("custom", date(2025, 3, 1), date(2025, 3, 31))
        assert reports.monthly_summary(custom).total_meals == Decimal(1)


def test_update_moving_record_invalidates_both_months() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    cache = InMemoryReportCache(ttl_secs=3600)

    with Session(engine) as session:
        alice = MemberService(session, cache).create(MemberIn(name="Alice"))
        deposits = RecordService(session, RecordStore.deposits, cache)
        record = deposits.upsert(
            DepositIn(user_id=alice.id, date=date(2025, 3, 31), amount="50")
        )
        reports = ReportService(session, cache)
        reports.monthly_summary("2025-03")
        reports.monthly_summary("2025-04")

        deposits.update(
            record.id, DepositIn(user_id=alice.id, date=date(2025, 4, 1), amount="50")
        )

        assert cache.get(SUMMARY, "2025-03") is None
        assert cache.get(SUMMARY, "2025-04") is None
        assert reports.monthly_summary("2025-03").total_deposits == Decimal(0)
        assert reports.monthly_summary("2025-04").total_deposits == Decimal(50)


def test_import_invalidates_every_touched_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    cache = InMemoryReportCache(ttl_secs=3600)

    with Session(engine) as session:
        alice = MemberService(session, cache).create(MemberIn(name="Alice"))
        for month in ("2025-02", "2025-03", "2025-05"):
            cache.set(SUMMARY, month, "stale")

        CSVService(session, cache).import_deposits(
            "user_id,date,amount\n"
            f"{alice.id},2025-02-10,10\n"
            f"{alice.id},2025-03-10,10\n"
        )

        assert cache.get(SUMMARY, "2025-02") is None
        assert cache.get(SUMMARY, "2025-03") is None
        assert cache.get(SUMMARY, "2025-05") == "stale"


def test_invalidate_month_drops_every_report_kind() -> None:
    cache = InMemoryReportCache(ttl_secs=60)
    for kind in REPORT_KINDS:
        cache.set(kind, "2025-03", kind)
        cache.set(kind, "2025-04", kind)

    cache.invalidate_month("2025-03")

    assert all(cache.get(kind, "2025-03") is None for kind in REPORT_KINDS)
    assert cache.get(pivot_kind(RecordStore.meals), "2025-04") == "pivot:meals"


def test_entries_expire_after_ttl() -> None:
    now = [100.0]
    cache = InMemoryReportCache(ttl_secs=10, clock=lambda: now[0])
    cache.set(SUMMARY, "2025-03", "value")

    now[0] = 109.0
    assert cache.get(SUMMARY, "2025-03") == "value"
    now[0] = 110.0
    assert cache.get(SUMMARY, "2025-03") is None


def test_roster_change_clears_all_months() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    cache = InMemoryReportCache(ttl_secs=3600)

    with Session(engine) as session:
        cache.set(SUMMARY, "2024-11", "stale")
        MemberService(session, cache).create(MemberIn(name="Alice"))
        assert cache.get(SUMMARY, "2024-11") is None


def test_base_cache_always_recomputes() -> None:
    calls = []
    cache = ReportCache()

    for _ in range(2):
        cache.remember(SUMMARY, "2025-03", lambda: calls.append(1) or len(calls))

    assert calls == [1, 1]


def test_write_during_compute_is_not_cached_over() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    cache = InMemoryReportCache(ttl_secs=3600)

    with Session(engine) as session:
        alice = MemberService(session, cache).create(MemberIn(name="Alice"))
        meals = MealService(session, cache)
        reports = ReportService(session, cache)
        compute = reports.metrics.monthly_summary

        def compute_then_write(period):
            summary = compute(period)
            meals.upsert(
                MealIn(user_id=alice.id, date=date(2025, 3, 4), meal_count="2")
            )
            return summary

        reports.metrics.monthly_summary = compute_then_write
        assert reports.monthly_summary("2025-03").total_meals == Decimal(0)
        reports.metrics.monthly_summary = compute

        assert cache.get(SUMMARY, "2025-03") is None
        assert reports.monthly_summary("2025-03").total_meals == Decimal(2)


def test_store_is_skipped_after_invalidation_or_clear() -> None:
    cache = InMemoryReportCache(ttl_secs=60)

    before = cache.generation("2025-03")
    cache.invalidate_month("2025-03")
    cache.set(SUMMARY, "2025-03", "old", before)
    assert cache.get(SUMMARY, "2025-03") is None

    before = cache.generation("2025-03")
    cache.clear()
    cache.set(SUMMARY, "2025-03", "old", before)
    assert cache.get(SUMMARY, "2025-03") is None

    current = cache.generation("2025-03")
    cache.invalidate_month("2025-04")
    cache.set(SUMMARY, "2025-03", "fresh", current)
    assert cache.get(SUMMARY, "2025-03") == "fresh"
