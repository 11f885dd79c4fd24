# Practice FinSight - Financial planning & import tools for medical practices
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Column mappings for practice-software exports.

A practice-management export (LATIDO, or the generic "standard" template) is
a spreadsheet whose columns are identified by header NAME, never by position.
This module describes, for each supported vendor format:

- which header holds each ImportRow field,
- which fields are required,
- which decimal separator the vendor uses for amounts,

and resolves the actual header row of a file against that description.

This module exposes:
- ColumnMapping:       Description of one vendor format.
- LATIDO_MAPPING,
  STANDARD_MAPPING:    The built-in formats.
- get_column_mapping:  Lookup by format name.
- resolve_columns:     Match a header row against a mapping.
- get_import_templates: Sample files for each format.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional

REQUIRED_FIELDS = ("date", "therapy_type", "sessions")


@dataclass(frozen=True)
class ColumnMapping:
    """Header names used by one vendor export.

    Attributes:
        name: Short identifier of the format (e.g. 'latido').
        date_column: Header of the session/invoice date.
        therapy_type_column: Header of the free-text service label.
        sessions_column: Header of the session count.
        revenue_column: Header of the amount, if the vendor exports one.
        patient_type_column: Header of the patient type (Kasse/Privat).
        notes_column: Header of free-text notes.
        invoice_number_column: Header of the invoice number.
        status_column: Header of the payment status (used to drop
            cancelled invoices).
        decimal_separator: ',' for German-locale exports, '.' otherwise.
        date_format_hint: Human-readable date format for error messages.
    """

    name: str
    date_column: str
    therapy_type_column: str
    sessions_column: str
    revenue_column: Optional[str] = None
    patient_type_column: Optional[str] = None
    notes_column: Optional[str] = None
    invoice_number_column: Optional[str] = None
    status_column: Optional[str] = None
    decimal_separator: str = "."
    date_format_hint: str = "YYYY-MM-DD"

    def columns_by_field(self) -> dict[str, str]:
        """Return {field name: header name} for every configured column."""
        out = {
            "date": self.date_column,
            "therapy_type": self.therapy_type_column,
            "sessions": self.sessions_column,
        }
        optional = {
            "revenue": self.revenue_column,
            "patient_type": self.patient_type_column,
            "notes": self.notes_column,
            "invoice_number": self.invoice_number_column,
            "status": self.status_column,
        }
        out.update({k: v for k, v in optional.items() if v})
        return out


LATIDO_MAPPING = ColumnMapping(
    name="latido",
    date_column="Datum",
    therapy_type_column="Leistung",
    sessions_column="Anzahl",
    revenue_column="Betrag",
    patient_type_column="Patientenart",
    notes_column="Notizen",
    invoice_number_column="Rechnungsnummer",
    status_column="Zahlungsstatus",
    decimal_separator=",",
    date_format_hint="DD.MM.YYYY",
)

STANDARD_MAPPING = ColumnMapping(
    name="standard",
    date_column="Date",
    therapy_type_column="Therapy Type",
    sessions_column="Sessions",
    revenue_column="Revenue",
    patient_type_column="Patient Type",
    notes_column="Notes",
    invoice_number_column="Invoice Number",
    status_column="Status",
    decimal_separator=".",
    date_format_hint="YYYY-MM-DD",
)

VENDOR_FORMATS: dict[str, ColumnMapping] = {
    LATIDO_MAPPING.name: LATIDO_MAPPING,
    STANDARD_MAPPING.name: STANDARD_MAPPING,
}


def get_column_mapping(name: str) -> ColumnMapping:
    """Return the built-in mapping called ``name`` (case-insensitive).

    Raises:
        ValueError: if the format is unknown.
    """
    key = str(name).strip().lower()
    try:
        return VENDOR_FORMATS[key]
    except KeyError as exc:
        known = ", ".join(sorted(VENDOR_FORMATS))
        raise ValueError(
            f"Unknown import format {name!r}. Expected one of: {known}."
        ) from exc


def _normalize_header(value: object) -> str:
    return str(value).strip().lower()


@dataclass(frozen=True)
class ColumnResolution:
    """Result of matching a header row against a ColumnMapping.

    Attributes:
        columns: {field name: actual header as found in the file}.
        missing_required: Required headers not found in the file.
        matched_any: True if at least one of the mapping's headers was found.
    """

    columns: dict[str, str]
    missing_required: list[str]
    matched_any: bool


def resolve_columns(headers: Iterable[object], mapping: ColumnMapping) -> ColumnResolution:
    """Locate the mapping's columns in a header row.

    Header names are compared trimmed and case-insensitive. When a header
    occurs more than once, the first occurrence wins.

    Args:
        headers: Header cells as read from the file.
        mapping: Vendor format to resolve.

    Returns:
        A ColumnResolution. Callers decide whether missing columns are fatal.
    """
    by_normalized: dict[str, str] = {}
    for h in headers:
        by_normalized.setdefault(_normalize_header(h), h)

    columns: dict[str, str] = {}
    for field, header in mapping.columns_by_field().items():
        found = by_normalized.get(_normalize_header(header))
        if found is not None:
            columns[field] = found

    configured = mapping.columns_by_field()
    missing_required = [
        configured[f] for f in REQUIRED_FIELDS if f not in columns
    ]

    return ColumnResolution(
        columns=columns,
        missing_required=missing_required,
        matched_any=bool(columns),
    )


def get_import_templates() -> dict[str, str]:
    """Return a small CSV sample for each built-in format."""
    return {
        "standard": (
            "Date,Therapy Type,Sessions,Revenue,Patient Type,Notes\n"
            "2025-01-15,Psychotherapie,3,240,privat,Einzelsitzungen\n"
            "2025-01-16,Gruppentherapie,1,120,kasse,\n"
        ),
        "latido": (
            "Datum,Leistung,Anzahl,Betrag,Patientenart,Notizen\n"
            "15.01.2025,Psychotherapie,3,240.00,Privat,Einzelsitzungen\n"
            "16.01.2025,Gruppentherapie,1,120.00,Kasse,\n"
        ),
    }
