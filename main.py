import logging
import re
from decimal import Decimal
from typing import Iterator, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import Response
from pydantic import ValidationError
from sqlalchemy.orm import Session

from cache import ReportCache, get_report_cache
from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from csv_utils import CSVHeaderError, format_units
from database import session_scope
from models import MessRecord, RecordStore, User
from periods import Period, resolve_period
from pivot import PivotTable
from schemas import STORE_SCHEMAS, BulkMealIn, MemberIn
from services import (
    CSVService,
    DuplicateRecord,
    MealService,
    MemberNotFound,
    MemberService,
    MonthlyStatistics,
    MonthlySummary,
    RecordNotFound,
    ReportService,
    UserSummary,
    record_service,
)


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Mess Ledger")

BULK_MEAL_FIELD = re.compile(r"^meals\[(\d+)\]$")


def get_db() -> Iterator[Session]:
    with session_scope() as session:
        yield session


def get_cache() -> ReportCache:
    return get_report_cache()


def money(value: Decimal) -> str:
    return format_units(value, 2)


def meals(value: Decimal) -> str:
    return format_units(value, 1)


def period_from_request(request: Request) -> Period:
    params = request.query_params
    return resolve_period(params.get("month"), params.get("start"), params.get("end"))


def require_csrf(token: Optional[str]) -> None:
    if not validate_csrf_token(token or ""):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def field_errors(exc: ValidationError) -> dict[str, str]:
    errors: dict[str, str] = {}
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"]) or "__root__"
        errors.setdefault(field, error["msg"])
    return errors


def period_payload(period: Period) -> dict[str, object]:
    return {
        "month": period.month_key if period.is_month else None,
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
    }


def member_payload(user: User) -> dict[str, object]:
    return {"id": user.id, "name": user.name, "active": user.active}


def record_payload(store: RecordStore, record: MessRecord) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": record.id,
        "user_id": record.user_id,
        "date": record.date.isoformat(),
    }
    value = format_units(Decimal(record.quantity) / store.scale, store.decimals)
    if store == RecordStore.meals:
        payload["meal_count"] = value
    else:
        payload["amount"] = value
    if store.has_description:
        payload["description"] = record.description
    return payload


def pivot_payload(store: RecordStore, table: PivotTable) -> dict[str, object]:
    def fmt(value):
        if isinstance(value, Decimal):
            return format_units(value, store.decimals)
        return value

    return {
        "member_names": table.member_names,
        "rows": [{key: fmt(value) for key, value in row.items()} for row in table.rows],
        "column_totals": {
            name: fmt(total) for name, total in table.column_totals.items()
        },
        "grand_total": fmt(table.grand_total),
        "stats": {key: fmt(value) for key, value in table.stats.items()},
    }


def user_summary_payload(summary: UserSummary) -> dict[str, object]:
    return {
        "id": summary.id,
        "name": summary.name,
        "total_meal": meals(summary.total_meal),
        "meal_rate": money(summary.meal_rate),
        "meal_cost": money(summary.meal_cost),
        "total_utility": money(summary.total_utility),
        "total_cost": money(summary.total_cost),
        "total_deposit": money(summary.total_deposit),
        "balance": money(summary.balance),
    }


def summary_payload(summary: MonthlySummary) -> dict[str, object]:
    return {
        "period": period_payload(summary.period),
        "total_meals": meals(summary.total_meals),
        "total_deposits": money(summary.total_deposits),
        "total_shopping_expenses": money(summary.total_shopping_expenses),
        "total_utilities": money(summary.total_utilities),
        "meal_rate": money(summary.meal_rate),
        "meal_cost": money(summary.meal_cost),
        "balance": money(summary.balance),
        "per_user": [user_summary_payload(item) for item in summary.per_user],
    }


def statistics_payload(stats: MonthlyStatistics) -> dict[str, object]:
    most_active = None
    if stats.most_active_member:
        most_active = {
            "name": stats.most_active_member["name"],
            "total_meals": meals(stats.most_active_member["total_meals"]),
        }
    return {
        "period": period_payload(stats.period),
        "total_active_members": stats.total_active_members,
        "total_meals": meals(stats.total_meals),
        "total_deposits": money(stats.total_deposits),
        "total_shopping_expenses": money(stats.total_shopping_expenses),
        "average_meals_per_day": money(stats.average_meals_per_day),
        "most_active_member": most_active,
    }


def csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/csrf-token")
def api_csrf_token():
    return {"csrf_token": generate_csrf_token()}


@app.get("/api/members")
def api_members(
    include_inactive: bool = False, db: Session = Depends(get_db)
):
    service = MemberService(db)
    members = service.list_all() if include_inactive else service.list_active()
    return [member_payload(member) for member in members]


@app.post("/api/members", status_code=201)
def api_create_member(
    name: str = Form(...),
    csrf_token: str = Form(""),
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    require_csrf(csrf_token)
    try:
        data = MemberIn(name=name)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=field_errors(exc)) from exc
    try:
        user = MemberService(db, cache).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return member_payload(user)


@app.post("/api/members/{user_id}/{action}")
def api_member_status(
    user_id: int,
    action: str,
    csrf_token: str = Form(""),
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    require_csrf(csrf_token)
    if action not in {"activate", "deactivate"}:
        raise HTTPException(status_code=404, detail="Unknown action")
    try:
        user = MemberService(db, cache).set_active(user_id, action == "activate")
    except MemberNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return member_payload(user)


@app.get("/api/summary")
def api_summary(
    request: Request,
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    period = period_from_request(request)
    return summary_payload(ReportService(db, cache).monthly_summary(period))


@app.get("/api/balances")
def api_balances(
    request: Request,
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    period = period_from_request(request)
    balances = ReportService(db, cache).user_balances(period)
    return {
        "period": period_payload(period),
        "users": [user_summary_payload(item) for item in balances],
    }


@app.get("/api/statistics")
def api_statistics(
    request: Request,
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    period = period_from_request(request)
    return statistics_payload(ReportService(db, cache).monthly_statistics(period))


@app.get("/api/dashboard")
def api_dashboard(
    request: Request,
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    period = period_from_request(request)
    data = ReportService(db, cache).dashboard(period)
    return {
        "period": period_payload(period),
        "summary": summary_payload(data["summary"]),
        "statistics": statistics_payload(data["statistics"]),
    }


@app.post("/api/meals/bulk")
async def api_bulk_meals(
    request: Request,
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    form = await request.form()
    require_csrf(form.get("csrf_token"))
    counts: dict[int, Optional[str]] = {}
    for key, value in form.multi_items():
        match = BULK_MEAL_FIELD.match(key)
        if match:
            counts[int(match.group(1))] = (value or "").strip() or None
    try:
        data = BulkMealIn(date=form.get("date"), meals=counts)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=field_errors(exc)) from exc
    try:
        saved = MealService(db, cache).bulk_upsert(data)
    except MemberNotFound as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"saved": saved}


@app.get("/api/deposits/template.csv")
def api_deposit_template(db: Session = Depends(get_db)):
    return csv_response(CSVService(db).deposit_template(), "deposit_template.csv")


@app.post("/api/deposits/import")
async def api_import_deposits(
    csrf_token: str = Form(""),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    require_csrf(csrf_token)
    try:
        content = (await file.read()).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 CSV") from exc
    try:
        result = CSVService(db, cache).import_deposits(content)
    except CSVHeaderError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"imported": result.imported, "errors": result.errors}


@app.get("/api/{store}/export.csv")
def api_export(
    store: RecordStore, request: Request, db: Session = Depends(get_db)
):
    period = period_from_request(request)
    csv_text = CSVService(db).export(store, period)
    prefix = store.value.replace("-", "_")
    suffix = period.month_key if period.is_month else f"{period.start}_{period.end}"
    return csv_response(csv_text, f"{prefix}_{suffix}.csv")


@app.get("/api/{store}")
def api_pivot(
    store: RecordStore,
    request: Request,
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    period = period_from_request(request)
    table = ReportService(db, cache).monthly_pivot(store, period)
    return {"period": period_payload(period), **pivot_payload(store, table)}


async def _record_payload_from_form(store: RecordStore, request: Request):
    form = await request.form()
    require_csrf(form.get("csrf_token"))
    fields = {
        key: value
        for key, value in form.items()
        if key != "csrf_token" and isinstance(value, str)
    }
    if not store.has_description:
        fields.pop("description", None)
    try:
        return STORE_SCHEMAS[store](**fields)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=field_errors(exc)) from exc


@app.post("/api/{store}", status_code=201)
async def api_upsert_record(
    store: RecordStore,
    request: Request,
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    data = await _record_payload_from_form(store, request)
    try:
        record = record_service(db, store, cache).upsert(data)
    except MemberNotFound as exc:
        raise HTTPException(status_code=400, detail={"user_id": str(exc)}) from exc
    return record_payload(store, record)


@app.post("/api/{store}/{record_id}/delete")
async def api_delete_record(
    store: RecordStore,
    record_id: int,
    csrf_token: str = Form(""),
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    require_csrf(csrf_token)
    try:
        record_service(db, store, cache).delete(record_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/{store}/{record_id}")
async def api_update_record(
    store: RecordStore,
    record_id: int,
    request: Request,
    db: Session = Depends(get_db),
    cache: ReportCache = Depends(get_cache),
):
    data = await _record_payload_from_form(store, request)
    try:
        record = record_service(db, store, cache).update(record_id, data)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except MemberNotFound as exc:
        raise HTTPException(status_code=400, detail={"user_id": str(exc)}) from exc
    except DuplicateRecord as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return record_payload(store, record)
