import pytest

from practice_finsight.io import read_session_export
from practice_finsight.mapping import (
    LATIDO_MAPPING,
    STANDARD_MAPPING,
    get_column_mapping,
    get_import_templates,
    resolve_columns,
)


def test_get_column_mapping_is_case_insensitive() -> None:
    assert get_column_mapping("latido") is LATIDO_MAPPING
    assert get_column_mapping(" Standard ") is STANDARD_MAPPING


def test_get_column_mapping_rejects_unknown_format() -> None:
    with pytest.raises(ValueError, match="Unknown import format"):
        get_column_mapping("medistar")


def test_columns_by_field_lists_configured_columns() -> None:
    columns = LATIDO_MAPPING.columns_by_field()

    assert columns["date"] == "Datum"
    assert columns["therapy_type"] == "Leistung"
    assert columns["sessions"] == "Anzahl"
    assert columns["revenue"] == "Betrag"
    assert columns["status"] == "Zahlungsstatus"


def test_resolve_columns_keeps_actual_header_spelling() -> None:
    resolution = resolve_columns(["DATUM ", "leistung", "Anzahl", "Foo"], LATIDO_MAPPING)

    assert resolution.matched_any
    assert resolution.missing_required == []
    assert resolution.columns == {
        "date": "DATUM ",
        "therapy_type": "leistung",
        "sessions": "Anzahl",
    }


def test_resolve_columns_reports_missing_required_headers() -> None:
    resolution = resolve_columns(["Datum", "Betrag"], LATIDO_MAPPING)

    assert resolution.matched_any
    assert resolution.missing_required == ["Leistung", "Anzahl"]


def test_resolve_columns_first_duplicate_header_wins() -> None:
    resolution = resolve_columns(["Date", "date", "Therapy Type", "Sessions"], STANDARD_MAPPING)

    assert resolution.columns["date"] == "Date"


def test_resolve_columns_with_foreign_template() -> None:
    resolution = resolve_columns(["Date", "Therapy Type", "Sessions"], LATIDO_MAPPING)

    assert not resolution.matched_any
    assert resolution.columns == {}


@pytest.mark.parametrize("name", ["latido", "standard"])
def test_templates_parse_with_their_own_mapping(name: str) -> None:
    template = get_import_templates()[name]

    parsed = read_session_export(
        template.encode("utf-8"), get_column_mapping(name), file_format="csv"
    )

    assert parsed.errors == []
    assert parsed.warnings == []
    assert [r.therapy_type_label for r in parsed.rows] == [
        "Psychotherapie",
        "Gruppentherapie",
    ]
    assert [r.revenue_cents for r in parsed.rows] == [24000, 12000]
