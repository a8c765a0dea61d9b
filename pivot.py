from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence, Union

from models import MessRecord, User
from periods import Period, date_range


BLANK = ""

Cell = Union[Decimal, str]


@dataclass(frozen=True)
class PivotTable:
    rows: list[dict[str, Cell]]
    column_totals: dict[str, Decimal]
    member_names: list[str]
    grand_total: Decimal
    blank_missing: bool = False
    stats: dict[str, object] = field(default_factory=dict)


def to_units(quantity: int, scale: int) -> Decimal:
    return Decimal(quantity) / Decimal(scale)


def _cell_key(day: date, user_id: int) -> str:
    return f"{day.isoformat()}-{user_id}"


def build_pivot(
    period: Period,
    roster: Sequence[User],
    records: Iterable[MessRecord],
    *,
    scale: int,
    blank_missing: bool = False,
) -> PivotTable:
    """Expand sparse per-member records into a dense day x member matrix.

    Missing cells are ``Decimal(0)`` so rows stay summable, or ``BLANK`` for
    display-only tables, which also omit the per-row ``total``.
    """
    index: dict[str, int] = {}
    for record in records:
        index[_cell_key(record.date, record.user_id)] = record.quantity

    member_names = [member.name for member in roster]
    column_minor: dict[str, int] = {name: 0 for name in member_names}

    rows: list[dict[str, Cell]] = []
    for day in date_range(period.start, period.end):
        row: dict[str, Cell] = {"date": day.isoformat()}
        row_minor = 0
        for member in roster:
            quantity = index.get(_cell_key(day, member.id))
            if quantity is None:
                row[member.name] = BLANK if blank_missing else Decimal(0)
                continue
            row[member.name] = to_units(quantity, scale)
            row_minor += quantity
            column_minor[member.name] += quantity
        if not blank_missing:
            row["total"] = to_units(row_minor, scale)
        rows.append(row)

    column_totals = {
        name: to_units(total, scale) for name, total in column_minor.items()
    }
    grand_total = to_units(sum(column_minor.values()), scale)
    return PivotTable(
        rows=rows,
        column_totals=column_totals,
        member_names=member_names,
        grand_total=grand_total,
        blank_missing=blank_missing,
    )
