import csv
import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from io import StringIO
from typing import Sequence

from pydantic import ValidationError

from models import MessRecord, User
from pivot import PivotTable, to_units
from schemas import DepositCSVRow


DEPOSIT_IMPORT_HEADERS = ["user_id", "date", "amount"]


class CSVHeaderError(ValueError):
    pass


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_units(value: Decimal, decimals: int) -> str:
    exponent = Decimal(1).scaleb(-decimals)
    return str(value.quantize(exponent, rounding=ROUND_HALF_UP))


def _writer(output: StringIO):
    return csv.writer(output, lineterminator="\n")


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        parts.append(f"{field}: {error['msg']}")
    return ", ".join(parts)


def parse_deposit_csv(
    content: str, active_user_ids: set[int]
) -> tuple[list[DepositCSVRow], list[str]]:
    """Parse a ``user_id,date,amount`` upload.

    A bad header rejects the whole file. Row failures are collected, numbered
    from the header as row 1, and the remaining rows are still returned.
    """
    reader = csv.reader(StringIO(content.lstrip("\ufeff")))
    headers = next(reader, None)
    if not headers or [h.strip() for h in headers[:3]] != DEPOSIT_IMPORT_HEADERS:
        raise CSVHeaderError(
            "Invalid CSV format. Expected headers: user_id, date, amount"
        )

    rows: list[DepositCSVRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=2):
        if not any(cell.strip() for cell in raw):
            continue
        if len(raw) < 3:
            errors.append(f"Row {idx}: Insufficient data")
            continue
        try:
            row = DepositCSVRow(
                user_id=raw[0].strip(),
                date=raw[1].strip(),
                amount=raw[2].strip(),
            )
        except ValidationError as exc:
            errors.append(f"Row {idx}: {_format_validation_error(exc)}")
            continue
        if row.user_id not in active_user_ids:
            errors.append(f"Row {idx}: user_id: Unknown or inactive member")
            continue
        rows.append(row)
    return rows, errors


def export_records(
    records: Sequence[MessRecord], *, include_description: bool = False
) -> str:
    output = StringIO()
    writer = _writer(output)
    headers = ["Date", "User", "Amount"]
    if include_description:
        headers.append("Description")
    writer.writerow(headers)
    for record in records:
        line = [
            record.date.isoformat(),
            sanitize_csv_value(record.user.name),
            format_units(to_units(record.quantity, 100), 2),
        ]
        if include_description:
            line.append(sanitize_csv_value(record.description or ""))
        writer.writerow(line)
    return output.getvalue()


def export_pivot(table: PivotTable, *, decimals: int) -> str:
    output = StringIO()
    writer = _writer(output)
    writer.writerow(
        ["Date", *(sanitize_csv_value(name) for name in table.member_names), "Total"]
    )
    for row in table.rows:
        line = [row["date"]]
        total = Decimal(0)
        for name in table.member_names:
            value = row[name]
            if isinstance(value, Decimal):
                total += value
                line.append(format_units(value, decimals))
            else:
                line.append(value)
        line.append(format_units(total, decimals))
        writer.writerow(line)
    return output.getvalue()


def deposit_template(roster: Sequence[User], today: date) -> str:
    output = StringIO()
    writer = _writer(output)
    writer.writerow(DEPOSIT_IMPORT_HEADERS)
    for member in roster:
        writer.writerow([member.id, today.isoformat(), "0.00"])
    return output.getvalue()
