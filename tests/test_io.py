from datetime import date, datetime
from io import BytesIO

import pandas as pd
import pytest

from practice_finsight.io import (
    ImportIssue,
    ParseError,
    format_cents,
    parse_amount_cents,
    parse_patient_type,
    parse_session_count,
    parse_session_date,
    read_session_export,
    rows_to_dataframe,
)
from practice_finsight.mapping import LATIDO_MAPPING, STANDARD_MAPPING

LATIDO_COLUMNS = ["Datum", "Leistung", "Anzahl", "Betrag", "Rechnungsnummer"]


def make_xlsx(rows, columns) -> bytes:
    """Helper to build an in-memory xlsx file with a single sheet."""
    buffer = BytesIO()
    pd.DataFrame(rows, columns=columns).to_excel(buffer, index=False)
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Cell parsers
# ---------------------------------------------------------------------------


def test_parse_session_date_accepts_vendor_formats() -> None:
    assert parse_session_date("15.01.2025") == date(2025, 1, 15)
    assert parse_session_date("5.1.2025") == date(2025, 1, 5)
    assert parse_session_date("15.01.25") == date(2025, 1, 15)
    assert parse_session_date("2025-01-15") == date(2025, 1, 15)
    assert parse_session_date("2025-01-15 00:00:00") == date(2025, 1, 15)
    assert parse_session_date(datetime(2025, 1, 15, 9, 30)) == date(2025, 1, 15)
    assert parse_session_date(date(2025, 1, 15)) == date(2025, 1, 15)


def test_parse_session_date_accepts_excel_serials() -> None:
    assert parse_session_date(45672) == date(2025, 1, 15)
    assert parse_session_date(45672.0) == date(2025, 1, 15)
    assert parse_session_date("45672") == date(2025, 1, 15)


@pytest.mark.parametrize("value", ["31.02.2025", "15/01/2025", "yesterday", "", 0])
def test_parse_session_date_rejects_invalid_values(value) -> None:
    with pytest.raises(ValueError):
        parse_session_date(value)


def test_parse_session_count() -> None:
    assert parse_session_count(3) == 3
    assert parse_session_count(3.0) == 3
    assert parse_session_count("3") == 3
    assert parse_session_count(" 3,0 ") == 3
    assert parse_session_count(0) == 0


@pytest.mark.parametrize("value", [2.5, "2.5", -1, "-1", "three", True])
def test_parse_session_count_rejects_invalid_values(value) -> None:
    with pytest.raises(ValueError):
        parse_session_count(value)


def test_parse_amount_cents_german_locale() -> None:
    assert parse_amount_cents("240,00", ",") == 24000
    assert parse_amount_cents("1.234,56", ",") == 123456
    assert parse_amount_cents("1.234", ",") == 123400
    assert parse_amount_cents("240.00", ",") == 24000
    assert parse_amount_cents("€ 80,5", ",") == 8050
    assert parse_amount_cents("80 EUR", ",") == 8000
    assert parse_amount_cents("-50,00", ",") == -5000


def test_parse_amount_cents_dot_locale_and_numbers() -> None:
    assert parse_amount_cents("1,234.56", ".") == 123456
    assert parse_amount_cents("1,234,567", ".") == 123456700
    assert parse_amount_cents("80", ".") == 8000
    assert parse_amount_cents(240) == 24000
    assert parse_amount_cents(19.99) == 1999
    # Half-cent amounts round half up.
    assert parse_amount_cents(0.125) == 13


@pytest.mark.parametrize("value", ["abc", "12,3,4", "1.23.45", "", "-", True])
def test_parse_amount_cents_rejects_invalid_values(value) -> None:
    with pytest.raises(ValueError):
        parse_amount_cents(value, ",")


def test_parse_patient_type() -> None:
    assert parse_patient_type("Kasse") == "insurance"
    assert parse_patient_type("PRIVAT") == "private"
    assert parse_patient_type("insurance") == "insurance"
    assert parse_patient_type("") is None
    assert parse_patient_type(None) is None
    with pytest.raises(ValueError):
        parse_patient_type("Selbstzahler")


def test_format_cents() -> None:
    assert format_cents(24000) == "240.00"
    assert format_cents(5) == "0.05"
    assert format_cents(-123456) == "-1234.56"


# ---------------------------------------------------------------------------
# read_session_export
# ---------------------------------------------------------------------------


def test_read_latido_xlsx_basic() -> None:
    data = make_xlsx(
        [
            ["15.01.2025", "Psychotherapie", 3, "240,00", "R-1"],
            ["16.01.2025", "Gruppentherapie", 1, "1.120,50", "R-2"],
        ],
        LATIDO_COLUMNS,
    )

    parsed = read_session_export(data, LATIDO_MAPPING)

    assert parsed.errors == []
    assert parsed.warnings == []
    assert parsed.data_row_count == 2
    assert parsed.skipped_count == 0

    first, second = parsed.rows
    assert first.row == 1
    assert first.date == date(2025, 1, 15)
    assert first.therapy_type_label == "Psychotherapie"
    assert first.session_count == 3
    assert first.revenue_cents == 24000
    assert first.invoice_number == "R-1"
    assert second.revenue_cents == 112050


def test_read_xlsx_with_native_date_cells() -> None:
    data = make_xlsx(
        [[datetime(2025, 3, 2), "Psychotherapie", 2, 160.0, None]],
        LATIDO_COLUMNS,
    )

    parsed = read_session_export(data, LATIDO_MAPPING)

    assert parsed.rows[0].date == date(2025, 3, 2)
    assert parsed.rows[0].revenue_cents == 16000
    assert parsed.rows[0].invoice_number is None


def test_headers_are_matched_by_name_case_insensitively() -> None:
    data = make_xlsx(
        [["Extra", "Psychotherapie", "15.01.2025", 3]],
        ["Kommentar", " leistung ", "DATUM", "Anzahl"],
    )

    parsed = read_session_export(data, LATIDO_MAPPING)

    assert len(parsed.rows) == 1
    assert parsed.rows[0].therapy_type_label == "Psychotherapie"
    assert parsed.rows[0].revenue_cents is None


def test_read_standard_csv() -> None:
    data = (
        "Date,Therapy Type,Sessions,Revenue,Patient Type\n"
        "2025-01-15,Psychotherapie,3,240.00,private\n"
        "2025-02-01,Psychotherapie,1,,kasse\n"
    ).encode("utf-8")

    parsed = read_session_export(data, STANDARD_MAPPING, file_format="csv")

    assert [r.session_count for r in parsed.rows] == [3, 1]
    assert parsed.rows[0].revenue_cents == 24000
    assert parsed.rows[0].patient_type == "private"
    assert parsed.rows[1].revenue_cents is None
    assert parsed.rows[1].patient_type == "insurance"


def test_read_csv_with_semicolon_delimiter_and_bom() -> None:
    data = (
        "\ufeffDatum;Leistung;Anzahl;Betrag\n"
        "15.01.2025;Psychotherapie;3;240,00\n"
    ).encode("utf-8")

    parsed = read_session_export(
        data, LATIDO_MAPPING, file_format="csv", csv_delimiter=";"
    )

    assert parsed.rows[0].revenue_cents == 24000


def test_blank_rows_are_ignored_but_keep_row_numbers() -> None:
    data = (
        "Date,Therapy Type,Sessions\n"
        "2025-01-15,Psychotherapie,3\n"
        ",,\n"
        "2025-01-16,Psychotherapie,x\n"
    ).encode("utf-8")

    parsed = read_session_export(data, STANDARD_MAPPING, file_format="csv")

    assert parsed.data_row_count == 2
    assert len(parsed.rows) == 1
    assert len(parsed.errors) == 1
    assert parsed.errors[0].row == 3
    assert parsed.errors[0].field == "sessions"


def test_empty_file_raises_parse_error() -> None:
    with pytest.raises(ParseError, match="empty"):
        read_session_export(b"", LATIDO_MAPPING)


def test_header_only_file_raises_parse_error() -> None:
    data = make_xlsx([], LATIDO_COLUMNS)

    with pytest.raises(ParseError, match="no data rows") as excinfo:
        read_session_export(data, LATIDO_MAPPING)
    assert excinfo.value.row_count == 0


def test_wrong_template_raises_parse_error() -> None:
    data = make_xlsx(
        [["2025-01-15", "Psychotherapie", 3]],
        ["Date", "Therapy Type", "Sessions"],
    )

    with pytest.raises(ParseError, match="does not look like a latido export") as excinfo:
        read_session_export(data, LATIDO_MAPPING)
    assert excinfo.value.row_count == 1


def test_missing_required_column_raises_parse_error() -> None:
    data = make_xlsx([["15.01.2025", "Psychotherapie"]], ["Datum", "Leistung"])

    with pytest.raises(ParseError, match="Anzahl"):
        read_session_export(data, LATIDO_MAPPING)


def test_unreadable_xlsx_raises_parse_error() -> None:
    with pytest.raises(ParseError, match="Unable to read"):
        read_session_export(b"not a spreadsheet", LATIDO_MAPPING)


def test_malformed_date_produces_exactly_one_error() -> None:
    data = make_xlsx(
        [
            ["15.01.2025", "Psychotherapie", 3, "240,00", None],
            ["2025/13/45", "Psychotherapie", 1, "80,00", None],
            ["17.01.2025", "Psychotherapie", 2, "160,00", None],
        ],
        LATIDO_COLUMNS,
    )

    parsed = read_session_export(data, LATIDO_MAPPING)

    assert [r.row for r in parsed.rows] == [1, 3]
    assert len(parsed.errors) == 1
    error = parsed.errors[0]
    assert error.row == 2
    assert error.field == "date"
    assert "DD.MM.YYYY" in error.message
    assert parsed.skipped_count == 1


def test_missing_values_and_bad_amount_are_row_errors() -> None:
    data = make_xlsx(
        [
            [None, "Psychotherapie", 3, None, None],
            ["15.01.2025", None, 3, None, None],
            ["15.01.2025", "Psychotherapie", None, None, None],
            ["15.01.2025", "Psychotherapie", 3, "abc", None],
        ],
        LATIDO_COLUMNS,
    )

    parsed = read_session_export(data, LATIDO_MAPPING)

    assert parsed.rows == []
    assert [(e.row, e.field) for e in parsed.errors] == [
        (1, "date"),
        (2, "therapy_type"),
        (3, "sessions"),
        (4, "revenue"),
    ]


def test_cancelled_and_negative_rows_are_skipped_with_warnings() -> None:
    data = make_xlsx(
        [
            ["15.01.2025", "Psychotherapie", 3, "240,00", "bezahlt"],
            ["15.01.2025", "Psychotherapie", 1, "80,00", "Storniert"],
            ["16.01.2025", "Psychotherapie", 1, "-80,00", None],
        ],
        ["Datum", "Leistung", "Anzahl", "Betrag", "Zahlungsstatus"],
    )

    parsed = read_session_export(data, LATIDO_MAPPING)

    assert [r.row for r in parsed.rows] == [1]
    assert parsed.errors == []
    assert [w.row for w in parsed.warnings] == [2, 3]
    assert "Cancelled" in parsed.warnings[0].message
    assert "Negative amount" in parsed.warnings[1].message


def test_duplicate_invoice_numbers_in_one_file_are_skipped() -> None:
    data = make_xlsx(
        [
            ["15.01.2025", "Psychotherapie", 3, "240,00", "R-1"],
            ["15.01.2025", "Psychotherapie", 3, "240,00", "R-1"],
            ["16.01.2025", "Psychotherapie", 1, "80,00", "R-2"],
        ],
        LATIDO_COLUMNS,
    )

    parsed = read_session_export(data, LATIDO_MAPPING)

    assert [r.invoice_number for r in parsed.rows] == ["R-1", "R-2"]
    assert len(parsed.warnings) == 1
    assert parsed.warnings[0].row == 2
    assert parsed.warnings[0].data == {"invoice_number": "R-1"}


def test_unknown_patient_type_keeps_row_with_warning() -> None:
    data = make_xlsx(
        [["15.01.2025", "Psychotherapie", 3, "Selbstzahler"]],
        ["Datum", "Leistung", "Anzahl", "Patientenart"],
    )

    parsed = read_session_export(data, LATIDO_MAPPING)

    assert len(parsed.rows) == 1
    assert parsed.rows[0].patient_type is None
    assert len(parsed.warnings) == 1
    assert "Selbstzahler" in parsed.warnings[0].message


def test_issue_to_dict_omits_empty_fields() -> None:
    data = make_xlsx(
        [["not a date", "Psychotherapie", 3, None, None]],
        LATIDO_COLUMNS,
    )

    parsed = read_session_export(data, LATIDO_MAPPING)
    payload = parsed.errors[0].to_dict()

    assert payload["row"] == 1
    assert payload["field"] == "date"
    assert payload["data"] == {"value": "not a date"}

    assert ImportIssue(row=0, message="x").to_dict() == {
        "row": 0,
        "message": "x",
    }


def test_rows_to_dataframe() -> None:
    data = make_xlsx(
        [["15.01.2025", "Psychotherapie", 3, "240,00", "R-1"]],
        LATIDO_COLUMNS,
    )
    parsed = read_session_export(data, LATIDO_MAPPING)

    df = rows_to_dataframe(parsed.rows)

    assert list(df.columns) == [
        "row",
        "date",
        "therapy_type",
        "sessions",
        "revenue",
        "patient_type",
        "invoice_number",
        "notes",
    ]
    assert df.loc[0, "revenue"] == 240.0
    assert rows_to_dataframe([]).empty
