from datetime import date, datetime, time

import pytest
from pydantic import ValidationError

from schedule_ai.models import (
    AiAnalysisBlock,
    Event,
    ExcludedSlot,
    ImportBatch,
    OptimizedScheduleSlot,
    ParsedFields,
    ParsingRule,
    SchedulePreferences,
    ScheduleRecord,
    TaskInput,
)


def test_parsed_fields_blank_strings_become_none():
    p = ParsedFields(title="  ", location="")
    assert p.title is None
    assert p.location is None


def test_overlay_only_non_null_fields_win():
    base = ParsedFields(title="From column", location="Room 1")
    top = ParsedFields(title="From AI")
    merged = base.overlaid_with(top)
    assert merged.title == "From AI"
    assert merged.location == "Room 1"


def test_confidence_out_of_range():
    with pytest.raises(ValidationError):
        AiAnalysisBlock(confidence=1.2)


def test_record_confidence_and_conversion_flags():
    r = ScheduleRecord(batch_id="b", user_id="u", row_number=1)
    assert r.ai_confidence is None
    assert not r.is_converted
    r2 = r.model_copy(update={"ai": AiAnalysisBlock(confidence=0.5), "converted_event_id": "e"})
    assert r2.ai_confidence == 0.5
    assert r2.is_converted


def test_batch_success_rate():
    b = ImportBatch(user_id="u", total_found=4, succeeded=3)
    assert b.success_rate == 75.0
    assert ImportBatch(user_id="u").success_rate == 0.0


def test_event_title_required():
    with pytest.raises(ValidationError):
        Event(user_id="u", title="   ")


def test_event_available_for_analysis():
    e = Event(user_id="u", title="Standup")
    assert e.available_for_analysis
    locked = e.model_copy(update={"ai_analysis_locked": True, "ai_analysis_status": "completed"})
    assert not locked.available_for_analysis


def test_task_input_defaults():
    t = TaskInput(title="Write report")
    assert t.duration_minutes == 30
    assert t.priority == "medium"


def test_task_invalid_duration():
    with pytest.raises(ValidationError):
        TaskInput(title="Bad", duration_minutes=0)


def test_preferences_window_must_be_ordered():
    with pytest.raises(ValidationError):
        SchedulePreferences(work_start=time(18, 0), work_end=time(9, 0))


def test_available_minutes_subtracts_break_and_exclusions():
    prefs = SchedulePreferences(
        work_start=time(9, 0),
        work_end=time(17, 0),
        break_duration_min=60,
        excluded_slots=[ExcludedSlot(start=time(8, 0), end=time(10, 0), reason="school run")],
    )
    # 480 - 60 - 60 (only the part inside the window counts)
    assert prefs.available_minutes == 360


def test_slot_reminder_time():
    slot = OptimizedScheduleSlot(
        analysis_id="a",
        user_id="u",
        date=date(2024, 3, 8),
        start_time=time(9, 0),
        end_time=time(10, 0),
        task_title="Deep work",
        reminder_minutes_before=20,
    )
    assert slot.start_datetime == datetime(2024, 3, 8, 9, 0)
    assert slot.reminder_at == datetime(2024, 3, 8, 8, 40)


def test_rule_scope_and_accuracy():
    rule = ParsingRule(name="meetings", pattern="meeting", profession="business", usage_count=4, success_count=1)
    assert rule.applies_to("business")
    assert not rule.applies_to("teacher")
    assert ParsingRule(name="global", pattern="x").applies_to(None)
    assert rule.accuracy_rate == 25.0
