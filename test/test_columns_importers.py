from datetime import datetime

import pytest

from extraction.columns import extract_columns, parse_datetime, parse_priority
from extraction.importers import detect_format, parse_content
from schedule_ai.errors import ValidationError


def test_csv_rows_numbered_from_two_and_blank_lines_skipped():
    content = "Title,Date,Location\nDentist,2024-03-08 15:00,Main St\n\nGym,2024-03-09,\n"
    rows = parse_content(content, "csv")
    assert [r.row_number for r in rows] == [2, 4]
    assert rows[0].original_data["Title"] == "Dentist"
    assert rows[0].raw_text == "Dentist, 2024-03-08 15:00, Main St"


def test_excel_is_read_as_csv():
    rows = parse_content("Subject\nBudget review\n", "excel")
    assert len(rows) == 1
    assert rows[0].is_structured


def test_json_array_and_single_object():
    rows = parse_content('[{"title": "A"}, "plain line"]', "json")
    assert [r.row_number for r in rows] == [1, 2]
    assert rows[1].original_data == {"value": "plain line"}
    assert len(parse_content('{"title": "only"}', "json")) == 1


def test_invalid_json_is_a_validation_error():
    with pytest.raises(ValidationError):
        parse_content("[{", "json")


def test_text_one_record_per_non_empty_line():
    rows = parse_content("Team meeting 9am\n\n  Call mom  \n", "text")
    assert [(r.row_number, r.raw_text) for r in rows] == [(1, "Team meeting 9am"), (3, "Call mom")]
    assert not rows[0].is_structured


def test_unknown_format_rejected():
    with pytest.raises(ValidationError):
        parse_content("x", "xml")


def test_field_mapping_renames_columns():
    rows = parse_content("What,When\nStandup,2024-03-08 09:15\n", "csv", {"What": "title", "When": "date"})
    assert rows[0].original_data == {"title": "Standup", "date": "2024-03-08 09:15"}


def test_detect_format():
    assert detect_format('[{"a": 1}]') == "json"
    assert detect_format("a,b\n1,2\n") == "csv"
    assert detect_format("just some notes") == "text"


def test_extract_columns_case_insensitive_aliases():
    out = extract_columns({"Subject": "Board meeting", "VENUE": "HQ", "Start Date": "08/03/2024 10:00", "Importance": "high"})
    assert out.fields.title == "Board meeting"
    assert out.fields.location == "HQ"
    assert out.fields.start_at == datetime(2024, 3, 8, 10, 0)
    assert out.fields.priority == 2
    assert out.warnings == []


def test_unparsable_date_is_ignored_with_warning():
    out = extract_columns({"title": "Lunch", "date": "sometime soon"})
    assert out.fields.title == "Lunch"
    assert out.fields.start_at is None
    assert len(out.warnings) == 1


def test_parse_datetime_variants():
    assert parse_datetime("2024-03-08T09:30:00") == datetime(2024, 3, 8, 9, 30)
    assert parse_datetime("") is None
    assert parse_datetime("20240308") is None


def test_parse_priority():
    assert parse_priority("urgent") == 1
    assert parse_priority(4) == 4
    assert parse_priority("9") is None
    assert parse_priority("whenever") is None
