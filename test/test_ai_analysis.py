import asyncio
from datetime import datetime

import pytest

from conftest import NOW, BlockingAnalyzer, FakeAnalyzer
from llm.collaborators import TextAnalysis
from pipeline.ai_analysis import AiAnalysisPipeline, ProcessOptions, merge_fields
from pipeline.imports import ImportService
from schedule_ai.errors import CollaboratorError
from schedule_ai.models import ImportBatch, ParsedFields, ParsingRule, RuleAction, ScheduleRecord
from storage.base import RecordQuery

FRIDAY_9AM = datetime(2024, 3, 8, 9, 0)


async def _seed(imports, texts, profession=None, **record_kw):
    batch = ImportBatch(user_id="u1", profession=profession, total_found=len(texts))
    records = [
        ScheduleRecord(batch_id=batch.id, user_id="u1", row_number=i, raw_text=t, **record_kw)
        for i, t in enumerate(texts, start=1)
    ]
    await imports.create_batch(batch, records)
    return batch, records


def _pipeline(stores, analyzer, settings, clock, engine=None):
    from extraction.rules import ParsingEngine

    imports, _, _, rules = stores
    return AiAnalysisPipeline(imports, engine or ParsingEngine(rules), analyzer, settings=settings, clock=clock)


def test_merge_precedence():
    columnar = ParsedFields(title="col", location="Room 1", priority=4)
    rules = ParsedFields(title="rule", priority=2)
    ai = ParsedFields(title="ai")
    merged = merge_fields(columnar, rules, ai)
    assert (merged.title, merged.location, merged.priority) == ("ai", "Room 1", 2)


@pytest.mark.asyncio
async def test_example_batch_scenario(stores, services):
    imports, events, _, rules = stores
    meeting_rule = await rules.save_rule(
        ParsingRule(name="meetings", pattern="/meeting/i", profession="business", action=RuleAction(category="meeting"))
    )
    services.pipeline.analyzer.answers.update(
        {
            "Team meeting 9am Friday": TextAnalysis(
                fields=ParsedFields(title="Team meeting", start_at=FRIDAY_9AM), confidence=0.92
            ),
            "Maybe something later": TextAnalysis(fields=ParsedFields(title="Something"), confidence=0.4),
        }
    )
    batch, (a, b, c) = await _seed(imports, ["Team meeting 9am Friday", "", "Maybe something later"], "business")

    result = await services.pipeline.process_batch(batch.id)
    assert (result.processed, result.succeeded, result.failed, result.skipped) == (3, 2, 1, 0)

    a = await imports.get_record(a.id)
    assert a.processing_status == "parsed"
    assert a.ai.category == "meeting"
    assert a.parsed.title == "Team meeting"
    assert a.matched_rule_ids == [meeting_rule.id]
    assert not a.manual_review_required

    b = await imports.get_record(b.id)
    assert b.processing_status == "failed"
    assert b.manual_review_required
    assert b.ai is None

    c = await imports.get_record(c.id)
    assert c.processing_status == "parsed"
    assert c.manual_review_required

    stored_batch = await imports.get_batch(batch.id)
    assert stored_batch.status == "completed"
    assert stored_batch.started_at == NOW
    assert [e.kind for e in stored_batch.error_log] == ["validation"]

    conversion = await services.conversion.convert(batch.id, 0.7)
    assert (conversion.attempted, conversion.succeeded, conversion.failed, conversion.skipped) == (1, 1, 0, 0)
    a = await imports.get_record(a.id)
    event = await events.get_event(a.converted_event_id)
    assert event.title == "Team meeting"
    assert event.start_at == FRIDAY_9AM
    assert event.category == "meeting"
    assert (await imports.get_record(c.id)).converted_event_id is None
    assert (await rules.list_rules("business"))[0].success_count == 1


@pytest.mark.asyncio
async def test_analyzer_receives_hints_and_profession(stores, settings, clock):
    imports, _, _, rules = stores
    await rules.save_rule(ParsingRule(name="loc", pattern="room", action=RuleAction(location="Room 4")))
    analyzer = FakeAnalyzer()
    batch, _ = await _seed(imports, ["standup in room 4"], "dev")

    await _pipeline(stores, analyzer, settings, clock).process_batch(batch.id)

    call = analyzer.calls[0]
    assert call["profession"] == "dev"
    assert call["hints"]["location"] == "Room 4"
    assert call["hints"]["keywords"] == ["room"]


@pytest.mark.asyncio
async def test_timeout_leaves_record_failed_not_in_progress(stores, settings, clock):
    imports, _, _, _ = stores
    analyzer = BlockingAnalyzer(hold_s=1.0)
    batch, (record,) = await _seed(imports, ["Dentist 3pm"])

    result = await _pipeline(stores, analyzer, settings, clock).process_batch(
        batch.id, ProcessOptions(timeout_s=0.05)
    )
    analyzer.released.set()

    assert result.failed == 1
    stored = await imports.get_record(record.id)
    assert stored.ai_analysis_status == "failed"
    assert stored.processing_status == "failed"
    assert not stored.ai_analysis_locked
    assert any(e.startswith("[timeout]") for e in stored.parsing_errors)
    stored_batch = await imports.get_batch(batch.id)
    assert stored_batch.status == "failed"
    assert stored_batch.error_log[0].kind == "timeout"


@pytest.mark.asyncio
async def test_retry_budget_keeps_record_pending(stores, settings, clock):
    imports, _, _, _ = stores
    analyzer = FakeAnalyzer({"flaky": CollaboratorError("rate_limited", "slow down")})
    batch, (record,) = await _seed(imports, ["flaky"])
    pipeline = _pipeline(stores, analyzer, settings, clock)

    first = await pipeline.process_batch(batch.id, ProcessOptions(max_attempts=2))
    assert first.failed == 1
    stored = await imports.get_record(record.id)
    assert stored.processing_status == "pending"
    assert stored.retry_count == 1
    assert (await imports.get_batch(batch.id)).status == "processing"

    await pipeline.process_batch(batch.id, ProcessOptions(max_attempts=2))
    stored = await imports.get_record(record.id)
    assert stored.processing_status == "failed"
    assert (await imports.get_batch(batch.id)).status == "failed"


@pytest.mark.asyncio
async def test_unexpected_analyzer_error_is_unknown_kind(stores, settings, clock):
    imports, _, _, _ = stores
    analyzer = FakeAnalyzer({"boom": RuntimeError("kaput")})
    batch, (record,) = await _seed(imports, ["boom"])

    await _pipeline(stores, analyzer, settings, clock).process_batch(batch.id)

    stored_batch = await imports.get_batch(batch.id)
    assert stored_batch.error_log[0].kind == "unknown"
    assert (await imports.get_record(record.id)).processing_status == "failed"


@pytest.mark.asyncio
async def test_converted_and_locked_records_are_skipped(stores, settings, clock):
    imports, _, _, _ = stores
    analyzer = FakeAnalyzer()
    batch = ImportBatch(user_id="u1")
    converted = ScheduleRecord(
        batch_id=batch.id, user_id="u1", row_number=1, raw_text="done",
        processing_status="converted", converted_event_id="ev-1",
    )
    locked = ScheduleRecord(
        batch_id=batch.id, user_id="u1", row_number=2, raw_text="busy",
        ai_analysis_status="in_progress", ai_analysis_locked=True, claimed_at=NOW,
    )
    fresh = ScheduleRecord(batch_id=batch.id, user_id="u1", row_number=3, raw_text="new")
    await imports.create_batch(batch, [converted, locked, fresh])

    result = await _pipeline(stores, analyzer, settings, clock).process_batch(batch.id)

    assert (result.processed, result.skipped) == (1, 2)
    assert [c["text"] for c in analyzer.calls] == ["new"]
    assert (await imports.get_record(converted.id)).converted_event_id == "ev-1"


@pytest.mark.asyncio
async def test_limit_bounds_records_processed(stores, settings, clock):
    imports, _, _, _ = stores
    analyzer = FakeAnalyzer()
    batch, records = await _seed(imports, ["one", "two", "three"])

    result = await _pipeline(stores, analyzer, settings, clock).process_batch(batch.id, ProcessOptions(limit=2))

    assert result.processed == 2
    assert [c["text"] for c in analyzer.calls] == ["one", "two"]
    assert (await imports.get_batch(batch.id)).status == "processing"


@pytest.mark.asyncio
async def test_concurrent_runs_never_double_process(stores, settings, clock):
    imports, _, _, _ = stores
    analyzer = FakeAnalyzer()
    batch, records = await _seed(imports, [f"entry {i}" for i in range(6)])
    pipeline = _pipeline(stores, analyzer, settings, clock)

    first, second = await asyncio.gather(
        pipeline.process_batch(batch.id, ProcessOptions(concurrency=3)),
        pipeline.process_batch(batch.id, ProcessOptions(concurrency=3)),
    )

    assert first.succeeded + second.succeeded >= len(records)
    listed = await imports.list_records(RecordQuery(batch_id=batch.id))
    assert all(r.processing_status == "parsed" for r in listed)
    assert all(not r.ai_analysis_locked for r in listed)
    assert (await imports.get_batch(batch.id)).status == "completed"


@pytest.mark.asyncio
async def test_empty_batch_completes(stores, settings, clock):
    imports, _, _, _ = stores
    batch, _ = await _seed(imports, [])
    analyzer = FakeAnalyzer()
    result = await _pipeline(stores, analyzer, settings, clock).process_batch(batch.id)

    assert result.processed == 0
    assert analyzer.calls == []
    stored = await imports.get_batch(batch.id)
    assert stored.status == "completed"
    assert stored.total_found == 0
    assert stored.completed_at == NOW


@pytest.mark.asyncio
@pytest.mark.parametrize("content,fmt", [("   \n\n", "text"), ("title,date\n", "csv")])
async def test_blank_import_reaches_terminal_status(stores, settings, clock, content, fmt):
    imports, _, _, _ = stores
    batch = await ImportService(imports, clock=clock).create_batch("u1", content, declared_format=fmt)
    assert batch.total_found == 0

    await _pipeline(stores, FakeAnalyzer(), settings, clock).process_batch(batch.id)

    assert (await imports.get_batch(batch.id)).is_terminal
