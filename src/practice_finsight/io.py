# Practice FinSight - Financial planning & import tools for medical practices
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
I/O module for Practice FinSight.

This module reads a practice-software export (xlsx or csv) and normalizes it
into a list of ``ImportRow`` values suitable for the importer.

Expected input
--------------

A single sheet whose first row is a header. Columns are located by NAME
using a ``ColumnMapping`` (see ``mapping.py``); their position does not
matter and extra columns are ignored.

Normalization rules
-------------------

- ``date``: native date cells, ``D.M.YYYY`` strings (LATIDO), ISO
  ``YYYY-MM-DD`` strings, and Excel serial day numbers are accepted and
  normalized to ``datetime.date``.
- ``sessions``: non-negative integer. ``3.0`` is accepted, ``2.5`` is not.
- ``revenue``: optional. Text amounts follow the vendor's decimal separator
  (``1.234,56`` for LATIDO) and are converted to integer cents so that sums
  never drift.
- ``patient_type``: ``Kasse``/``Privat`` or ``insurance``/``private``.

Row-level problems (bad date, bad count, bad amount) are reported as errors
with their 1-based data-row number and the row is excluded; the rest of the
file is still processed. Cancelled invoices and repeated invoice numbers are
excluded with a warning.

File-level problems (unreadable file, no data rows, wrong template) raise
``ParseError``.
"""

import math
import numbers
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from io import BytesIO
from typing import Any, Literal, Optional, Union

import pandas as pd

from .mapping import ColumnMapping, resolve_columns

PatientType = Literal["insurance", "private"]

_PATIENT_TYPES: dict[str, PatientType] = {
    "kasse": "insurance",
    "insurance": "insurance",
    "privat": "private",
    "private": "private",
}

_CANCELLED_STATUSES = {"storno", "storniert", "cancelled", "canceled"}

# Excel's 1900 date system (including the fictitious 1900-02-29).
_EXCEL_EPOCH = date(1899, 12, 30)
_EXCEL_MAX_SERIAL = 2958465  # 9999-12-31

_DMY_RE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4}|\d{2})$")
_ISO_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[ T].*)?$")
_AMOUNT_NOISE_RE = re.compile(r"(?i)eur|€|\s")
_AMOUNT_RE = re.compile(r"^[+-]?[\d.,]+$")


class ParseError(ValueError):
    """Raised when a file cannot be parsed as a whole.

    ``row_count`` is the number of non-blank data rows found before the
    failure (0 when the file could not be read at all).
    """

    def __init__(self, message: str, *, row_count: int = 0) -> None:
        super().__init__(message)
        self.row_count = row_count


@dataclass(frozen=True)
class ImportIssue:
    """A row-attributed error or warning.

    ``row`` is the 1-based data-row number (0 for issues that concern the
    file or a monthly aggregate rather than a single row).
    """

    row: int
    message: str
    field: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    severity: Literal["error", "warning"] = "error"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"row": self.row, "message": self.message}
        if self.field is not None:
            out["field"] = self.field
        if self.data is not None:
            out["data"] = self.data
        return out


@dataclass(frozen=True)
class ImportRow:
    """One normalized session row of an export."""

    row: int
    date: date
    therapy_type_label: str
    session_count: int
    revenue_cents: Optional[int] = None
    patient_type: Optional[PatientType] = None
    invoice_number: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class ParsedExport:
    """Output of ``read_session_export``."""

    rows: list[ImportRow]
    errors: list[ImportIssue] = field(default_factory=list)
    warnings: list[ImportIssue] = field(default_factory=list)
    data_row_count: int = 0

    @property
    def skipped_count(self) -> int:
        return self.data_row_count - len(self.rows)


# ---------------------------------------------------------------------------
# Cell parsers
# ---------------------------------------------------------------------------


def _is_blank(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _is_number(value: object) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def parse_session_date(value: object) -> date:
    """
    Parse a date cell.

    Raises
    ------
    ValueError
        If the value is not a recognizable date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    if _is_number(value):
        serial = float(value)  # type: ignore[arg-type]
        if math.isnan(serial) or not 1 <= serial <= _EXCEL_MAX_SERIAL:
            raise ValueError(f"Invalid date: {value!r}")
        return _EXCEL_EPOCH + timedelta(days=int(serial))

    text = str(value).strip()

    m = _DMY_RE.match(text)
    if m:
        day, month, year = (int(g) for g in m.groups())
        if len(m.group(3)) == 2:
            year += 2000
        return date(year, month, day)

    m = _ISO_RE.match(text)
    if m:
        year, month, day = (int(g) for g in m.groups())
        return date(year, month, day)

    if text.isdigit():
        return parse_session_date(int(text))

    raise ValueError(f"Invalid date: {text!r}")


def parse_session_count(value: object) -> int:
    """
    Parse a session count cell into a non-negative integer.

    Raises
    ------
    ValueError
        If the value is not a whole number or is negative.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid session count: {value!r}")

    if isinstance(value, numbers.Integral):
        count = int(value)
    elif _is_number(value):
        as_float = float(value)  # type: ignore[arg-type]
        if not as_float.is_integer():
            raise ValueError(f"Session count must be a whole number, got {value!r}")
        count = int(as_float)
    else:
        text = str(value).strip()
        m = re.fullmatch(r"([+-]?\d+)(?:[.,]0+)?", text)
        if not m:
            raise ValueError(f"Invalid session count: {text!r}")
        count = int(m.group(1))

    if count < 0:
        raise ValueError(f"Session count cannot be negative, got {count}")
    return count


def _split_thousands(digits: str, sep: str) -> str:
    """Remove thousands separators, validating 3-digit groups."""
    parts = digits.split(sep)
    if not parts[0] or len(parts[0]) > 3 or any(len(p) != 3 for p in parts[1:]):
        raise ValueError(f"Invalid thousands grouping in {digits!r}")
    return "".join(parts)


def parse_amount_cents(value: object, decimal_separator: str = ".") -> int:
    """
    Parse a monetary cell into signed integer cents.

    Text rules
    ----------
    - Currency markers ('EUR', '€') and whitespace are ignored.
    - If both '.' and ',' occur, the rightmost one is the decimal separator.
    - A separator occurring several times is a thousands separator.
    - A single ``decimal_separator`` is a decimal point.
    - A single foreign separator is a thousands separator when exactly three
      digits follow it ('1.234' → 1234 for ',' locales), otherwise a decimal
      point ('240.00' → 240).

    Raises
    ------
    ValueError
        If the value is not a valid amount.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")

    if _is_number(value):
        as_float = float(value)  # type: ignore[arg-type]
        if not math.isfinite(as_float):
            raise ValueError(f"Invalid amount: {value!r}")
        amount = Decimal(str(value))
    else:
        text = _AMOUNT_NOISE_RE.sub("", str(value))
        if not text or not _AMOUNT_RE.match(text):
            raise ValueError(f"Invalid amount: {value!r}")

        sign = ""
        if text[0] in "+-":
            sign, text = text[0], text[1:]

        has_dot = "." in text
        has_comma = "," in text

        if has_dot and has_comma:
            decimal_sep = "." if text.rfind(".") > text.rfind(",") else ","
            thousands_sep = "," if decimal_sep == "." else "."
            int_part, _, frac_part = text.rpartition(decimal_sep)
            int_part = _split_thousands(int_part, thousands_sep)
        elif has_dot or has_comma:
            sep = "." if has_dot else ","
            if text.count(sep) > 1:
                int_part, frac_part = _split_thousands(text, sep), ""
            else:
                head, _, tail = text.partition(sep)
                if sep != decimal_separator and len(tail) == 3:
                    int_part, frac_part = _split_thousands(text, sep), ""
                else:
                    int_part, frac_part = head, tail
        else:
            int_part, frac_part = text, ""

        if not (int_part or frac_part) or not (int_part + frac_part).isdigit():
            raise ValueError(f"Invalid amount: {value!r}")

        try:
            amount = Decimal(f"{sign}{int_part or '0'}.{frac_part or '0'}")
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc

    cents = (amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def parse_patient_type(value: object) -> Optional[PatientType]:
    """Map a vendor patient-type cell to 'insurance' / 'private'.

    Raises
    ------
    ValueError
        If the value is not a known patient type.
    """
    if _is_blank(value):
        return None
    key = str(value).strip().lower()
    try:
        return _PATIENT_TYPES[key]
    except KeyError as exc:
        raise ValueError(f"Unknown patient type: {str(value).strip()!r}") from exc


def format_cents(cents: int) -> str:
    """Format integer cents as a plain decimal string ('1234.50')."""
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{whole}.{frac:02d}"


# ---------------------------------------------------------------------------
# File reading
# ---------------------------------------------------------------------------


def _read_frame(data: bytes, *, file_format: str, csv_delimiter: str) -> pd.DataFrame:
    """Read the first sheet of an xlsx file, or a csv file, into a DataFrame."""
    if not data:
        raise ParseError("The file is empty: it contains no data rows.")

    fmt = file_format.lower().lstrip(".")
    try:
        if fmt == "xlsx":
            return pd.read_excel(
                BytesIO(data), sheet_name=0, dtype=object, engine="openpyxl"
            )
        if fmt == "csv":
            return pd.read_csv(
                BytesIO(data),
                sep=csv_delimiter,
                dtype=str,
                skip_blank_lines=False,
                encoding="utf-8-sig",
            )
    except pd.errors.EmptyDataError as exc:
        raise ParseError("The file is empty: it contains no data rows.") from exc
    except Exception as exc:  # noqa: BLE001
        raise ParseError(f"Unable to read the {fmt} file: {exc}") from exc

    raise ParseError(f"Unsupported file format: {file_format!r}. Expected xlsx or csv.")


def _cell_text(value: object) -> Optional[str]:
    if _is_blank(value):
        return None
    if _is_number(value) and float(value).is_integer():  # type: ignore[arg-type]
        return str(int(value))  # type: ignore[call-overload]
    return str(value).strip()


def _parse_row(
    row_number: int,
    record: Mapping[str, object],
    columns: Mapping[str, str],
    mapping: ColumnMapping,
    warnings: list[ImportIssue],
) -> Union[ImportRow, ImportIssue]:
    """
    Parse one data row.

    Returns the ImportRow on success. A row that must be excluded is returned
    as an ImportIssue whose severity tells the caller whether it is a
    row-level error or a warning. Non-fatal remarks about a kept row are
    appended to ``warnings``.
    """

    def cell(field_name: str) -> object:
        column = columns.get(field_name)
        return None if column is None else record.get(column)

    status = _cell_text(cell("status"))
    if status is not None and status.lower() in _CANCELLED_STATUSES:
        return ImportIssue(
            row=row_number,
            message=f"Cancelled invoice ({status}) skipped.",
            data={"status": status},
            severity="warning",
        )

    raw_date = cell("date")
    if _is_blank(raw_date):
        return ImportIssue(row=row_number, field="date", message="Missing date.")
    try:
        session_date = parse_session_date(raw_date)
    except ValueError:
        return ImportIssue(
            row=row_number,
            field="date",
            message=(
                f"Invalid date: {str(raw_date).strip()!r} "
                f"(expected {mapping.date_format_hint})."
            ),
            data={"value": str(raw_date)},
        )

    label = _cell_text(cell("therapy_type"))
    if label is None:
        return ImportIssue(
            row=row_number, field="therapy_type", message="Missing therapy type."
        )

    raw_count = cell("sessions")
    if _is_blank(raw_count):
        return ImportIssue(
            row=row_number, field="sessions", message="Missing session count."
        )
    try:
        session_count = parse_session_count(raw_count)
    except ValueError as exc:
        return ImportIssue(
            row=row_number,
            field="sessions",
            message=str(exc),
            data={"value": str(raw_count)},
        )

    revenue_cents: Optional[int] = None
    raw_revenue = cell("revenue")
    if not _is_blank(raw_revenue):
        try:
            revenue_cents = parse_amount_cents(raw_revenue, mapping.decimal_separator)
        except ValueError as exc:
            return ImportIssue(
                row=row_number,
                field="revenue",
                message=str(exc),
                data={"value": str(raw_revenue)},
            )
        if revenue_cents < 0:
            return ImportIssue(
                row=row_number,
                message=(
                    f"Negative amount {format_cents(revenue_cents)} treated as a "
                    "cancellation and skipped."
                ),
                data={"value": str(raw_revenue)},
                severity="warning",
            )

    patient_type: Optional[PatientType] = None
    try:
        patient_type = parse_patient_type(cell("patient_type"))
    except ValueError as exc:
        warnings.append(
            ImportIssue(
                row=row_number,
                message=f"{exc}; value ignored.",
                severity="warning",
            )
        )

    return ImportRow(
        row=row_number,
        date=session_date,
        therapy_type_label=label,
        session_count=session_count,
        revenue_cents=revenue_cents,
        patient_type=patient_type,
        invoice_number=_cell_text(cell("invoice_number")),
        notes=_cell_text(cell("notes")),
    )


def read_session_export(
    data: bytes,
    mapping: ColumnMapping,
    *,
    file_format: str = "xlsx",
    csv_delimiter: str = ",",
) -> ParsedExport:
    """
    Read a practice-software export and normalize its rows.

    Parameters
    ----------
    data:
        Raw file content. Size and type checks are the caller's job.
    mapping:
        Vendor column mapping used to locate columns by header name.
    file_format:
        'xlsx' or 'csv'.
    csv_delimiter:
        Field delimiter for csv files.

    Returns
    -------
    ParsedExport
        Valid rows in file order, plus row-level errors and warnings.

    Raises
    ------
    ParseError
        If the file cannot be read, has no data rows, or does not contain
        the mapping's required columns.
    """
    frame = _read_frame(data, file_format=file_format, csv_delimiter=csv_delimiter)

    records = frame.to_dict(orient="records")
    numbered = [
        (index + 1, record)
        for index, record in enumerate(records)
        if not all(_is_blank(v) for v in record.values())
    ]
    if not numbered:
        raise ParseError("The file is empty: it contains no data rows.")

    resolution = resolve_columns(frame.columns, mapping)
    if not resolution.matched_any:
        expected = ", ".join(mapping.columns_by_field().values())
        raise ParseError(
            f"The file does not look like a {mapping.name} export: none of the "
            f"expected columns ({expected}) were found.",
            row_count=len(numbered),
        )
    if resolution.missing_required:
        missing = ", ".join(resolution.missing_required)
        raise ParseError(
            f"Missing required column(s) for the {mapping.name} format: {missing}.",
            row_count=len(numbered),
        )

    parsed = ParsedExport(rows=[], data_row_count=len(numbered))
    seen_invoices: dict[str, int] = {}

    for row_number, record in numbered:
        outcome = _parse_row(
            row_number, record, resolution.columns, mapping, parsed.warnings
        )

        if isinstance(outcome, ImportIssue):
            if outcome.severity == "warning":
                parsed.warnings.append(outcome)
            else:
                parsed.errors.append(outcome)
            continue

        if outcome.invoice_number:
            first_row = seen_invoices.get(outcome.invoice_number)
            if first_row is not None:
                parsed.warnings.append(
                    ImportIssue(
                        row=row_number,
                        message=(
                            f"Invoice {outcome.invoice_number!r} already appears in "
                            f"row {first_row}; row skipped."
                        ),
                        data={"invoice_number": outcome.invoice_number},
                        severity="warning",
                    )
                )
                continue
            seen_invoices[outcome.invoice_number] = row_number

        parsed.rows.append(outcome)

    return parsed


def rows_to_dataframe(rows: list[ImportRow]) -> pd.DataFrame:
    """Tabular view of parsed rows (amounts in major units) for display."""
    columns = [
        "row",
        "date",
        "therapy_type",
        "sessions",
        "revenue",
        "patient_type",
        "invoice_number",
        "notes",
    ]
    if not rows:
        return pd.DataFrame(columns=columns)

    return pd.DataFrame(
        [
            {
                "row": r.row,
                "date": r.date.isoformat(),
                "therapy_type": r.therapy_type_label,
                "sessions": r.session_count,
                "revenue": None if r.revenue_cents is None else r.revenue_cents / 100.0,
                "patient_type": r.patient_type,
                "invoice_number": r.invoice_number,
                "notes": r.notes,
            }
            for r in rows
        ],
        columns=columns,
    )
