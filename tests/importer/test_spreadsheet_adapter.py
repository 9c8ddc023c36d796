from __future__ import annotations

import pandas as pd
import pytest

from registry_app.importer.adapters import SpreadsheetAdapter, detect_format
from registry_app.importer.contracts import get_school_alias_map, normalize_header
from registry_app.importer.errors import ParseError


def test_detect_format_rejects_unknown_extension():
    assert detect_format("Schools.XLSX") == "xlsx"
    with pytest.raises(ParseError) as excinfo:
        detect_format("schools.pdf")
    assert ".csv" in excinfo.value.message


def test_header_aliases_resolve_to_canonical_names():
    alias_map = get_school_alias_map()
    assert alias_map[normalize_header("School Name")] == "school_name"
    assert alias_map[normalize_header("EMIS No")] == "emis_code"
    assert alias_map[normalize_header(" lng ")] == "longitude"
    assert alias_map[normalize_header("Local-Council")] == "council"


def test_csv_rows_are_normalized_and_raw_values_kept(write_csv, make_row):
    path = write_csv([make_row(" bo 1001 ", **{"School Name": "  St.  Mary's   Primary "})])

    rows = list(SpreadsheetAdapter(path).iter_rows())

    assert len(rows) == 1
    parsed = rows[0]
    assert parsed.file_row_number == 2
    assert parsed.raw["EMIS Code"] == " bo 1001 "
    assert parsed.normalized["emis_code"] == "BO1001"
    assert parsed.normalized["school_name"] == "St. Mary's Primary"
    assert parsed.normalized["council"] == "Bo City Council"


def test_csv_with_alias_headers_and_extra_columns(write_csv):
    headers = ("name", "emis", "province", "district", "local_council", "level", "chiefdom", "section",
               "village", "lat", "lng", "elevation", "Notes")
    row = {
        "name": "Kono Model School",
        "emis": "KN2001",
        "province": "Eastern",
        "district": "Kono",
        "local_council": "Kono District Council",
        "level": "Secondary",
        "chiefdom": "Gbense",
        "section": "Koidu",
        "village": "Koidu",
        "lat": "8.64",
        "lng": "-10.97",
        "elevation": "390",
        "Notes": "ignored",
    }
    path = write_csv([row], headers=headers)

    adapter = SpreadsheetAdapter(path)
    rows = list(adapter.iter_rows())

    assert rows[0].normalized["town"] == "Koidu"
    assert rows[0].normalized["longitude"] == "-10.97"
    assert "Notes" not in rows[0].normalized
    assert adapter.statistics.ignored_headers == ("Notes",)


def test_missing_columns_fail_the_whole_file(write_csv, make_row, canonical_headers):
    headers = tuple(header for header in canonical_headers if header not in ("Council", "Altitude"))
    path = write_csv([make_row("BO1001")], headers=headers)

    with pytest.raises(ParseError) as excinfo:
        list(SpreadsheetAdapter(path).iter_rows())

    assert excinfo.value.missing == ("altitude", "council")
    assert excinfo.value.details["missingColumns"] == ["altitude", "council"]


def test_duplicate_columns_are_reported(write_csv, make_row, canonical_headers):
    path = write_csv([make_row("BO1001")], headers=(*canonical_headers, "lat"))

    with pytest.raises(ParseError) as excinfo:
        list(SpreadsheetAdapter(path).iter_rows())

    assert excinfo.value.duplicates == ("latitude",)


def test_blank_rows_are_skipped_and_line_numbers_preserved(tmp_path, make_row, canonical_headers):
    path = tmp_path / "gaps.csv"
    values = [make_row("BO1001")[header] for header in canonical_headers]
    lines = [",".join(canonical_headers), ",,,,,,,,,,,", ",".join(str(value) for value in values)]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    adapter = SpreadsheetAdapter(path)
    rows = list(adapter.iter_rows())

    assert [row.file_row_number for row in rows] == [3]
    assert adapter.statistics.rows_skipped_blank == 1


def test_header_only_file_is_rejected(write_csv):
    path = write_csv([])

    with pytest.raises(ParseError, match="no school rows"):
        list(SpreadsheetAdapter(path).iter_rows())


def test_empty_file_is_rejected(tmp_path):
    path = tmp_path / "empty.csv"
    path.write_text("", encoding="utf-8")

    with pytest.raises(ParseError, match="empty"):
        list(SpreadsheetAdapter(path).iter_rows())


def test_non_utf8_csv_is_a_parse_error(tmp_path, canonical_headers):
    path = tmp_path / "latin1.csv"
    path.write_bytes(",".join(canonical_headers).encode("utf-8") + b"\n\xff\xfe\xfa,bad\n")

    with pytest.raises(ParseError, match="UTF-8"):
        list(SpreadsheetAdapter(path).iter_rows())


def test_xlsx_numeric_cells_are_normalized(tmp_path, make_row, canonical_headers):
    path = tmp_path / "schools.xlsx"
    row = make_row("120045")
    row["EMIS Code"] = 120045
    row["Latitude"] = 7.9647
    row["Altitude"] = 80
    pd.DataFrame([row], columns=list(canonical_headers)).to_excel(path, index=False, engine="openpyxl")

    rows = list(SpreadsheetAdapter(path).iter_rows())

    assert rows[0].file_row_number == 2
    assert rows[0].normalized["emis_code"] == "120045"
    assert float(rows[0].normalized["latitude"]) == pytest.approx(7.9647)
    assert rows[0].raw["EMIS Code"] == 120045


def test_corrupt_workbook_is_a_parse_error(tmp_path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"not a workbook")

    with pytest.raises(ParseError, match="Unable to read workbook"):
        list(SpreadsheetAdapter(path).iter_rows())
