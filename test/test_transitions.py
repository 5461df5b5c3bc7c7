from datetime import datetime

import pytest

from schedule_ai import transitions
from schedule_ai.errors import CollaboratorError, ConflictError, ValidationError
from schedule_ai.models import (
    AiAnalysisBlock,
    AiScheduleAnalysis,
    AnalysisMetrics,
    Event,
    ImportBatch,
    ParsedFields,
    ScheduleRecord,
)

NOW = datetime(2024, 3, 8, 8, 0)


def _record(**kw):
    return ScheduleRecord(batch_id="b", user_id="u", row_number=1, raw_text="x", **kw)


def test_claim_locks_record():
    claimed = transitions.claim_record(_record(), NOW)
    assert claimed.ai_analysis_status == "in_progress"
    assert claimed.ai_analysis_locked
    assert claimed.claimed_at == NOW


def test_claim_twice_conflicts():
    claimed = transitions.claim_record(_record(), NOW)
    with pytest.raises(ConflictError):
        transitions.claim_record(claimed, NOW)


def test_converted_record_cannot_be_claimed():
    with pytest.raises(ConflictError):
        transitions.claim_record(_record(converted_event_id="e1", processing_status="converted"), NOW)


def test_low_confidence_is_kept_but_flagged():
    claimed = transitions.claim_record(_record(), NOW)
    done = transitions.record_analyzed(
        claimed,
        parsed=ParsedFields(title="x"),
        ai=AiAnalysisBlock(confidence=0.4),
        keywords=[],
        matched_rule_ids=[],
        review_threshold=0.7,
        now=NOW,
    )
    assert done.processing_status == "parsed"
    assert done.ai_confidence == 0.4
    assert done.manual_review_required
    assert not done.ai_analysis_locked


def test_failure_budget():
    claimed = transitions.claim_record(_record(), NOW)
    error = CollaboratorError("timeout", "slow")
    once = transitions.record_analysis_failed(claimed, error, max_attempts=2, now=NOW)
    assert once.processing_status == "pending"
    assert once.retry_count == 1
    assert "[timeout] slow" in once.parsing_errors

    again = transitions.claim_record(once, NOW)
    twice = transitions.record_analysis_failed(again, error, max_attempts=2, now=NOW)
    assert twice.processing_status == "failed"


def test_invalid_record_needs_review():
    claimed = transitions.claim_record(_record(), NOW)
    out = transitions.record_invalid(claimed, ValidationError("no text"), NOW)
    assert out.processing_status == "failed"
    assert out.manual_review_required


def test_summarize_batch_failed_only_without_successes():
    batch = ImportBatch(user_id="u", status="processing")
    failed = _record(processing_status="failed")
    parsed = _record(processing_status="parsed")

    assert transitions.summarize_batch(batch, [failed, failed], NOW).status == "failed"
    mixed = transitions.summarize_batch(batch, [failed, parsed], NOW)
    assert mixed.status == "completed"
    assert (mixed.succeeded, mixed.failed, mixed.total_found) == (1, 1, 2)


def test_summarize_batch_stays_processing_while_pending():
    batch = ImportBatch(user_id="u", status="processing")
    out = transitions.summarize_batch(batch, [_record(), _record(processing_status="parsed")], NOW)
    assert out.status == "processing"
    assert out.completed_at is None


def test_event_stays_locked_after_analysis_until_reset():
    event = Event(user_id="u", title="Review")
    claimed = transitions.claim_event(event, "an-1", NOW)
    done = transitions.event_analyzed(claimed, {"confidence": 0.9}, NOW)
    assert done.ai_analysis_locked
    with pytest.raises(ConflictError):
        transitions.claim_event(done, "an-2", NOW)
    reset = transitions.reset_event_analysis(done)
    assert reset.available_for_analysis


def test_failed_event_analysis_unlocks():
    claimed = transitions.claim_event(Event(user_id="u", title="Review"), "an-1", NOW)
    failed = transitions.event_analysis_failed(claimed, CollaboratorError("bad_response", "junk"))
    assert not failed.ai_analysis_locked
    assert failed.ai_analysis_result == {"error": "junk", "kind": "bad_response"}


def test_complete_analysis_partial_when_tasks_unplaced():
    analysis = AiScheduleAnalysis(user_id="u", target_date=NOW.date(), status="processing")
    out = transitions.complete_analysis(
        analysis,
        response={},
        metrics=AnalysisMetrics(unplaced_task_ids=["t2"]),
        ai_model="fake",
        processing_time_ms=1.0,
        now=NOW,
    )
    assert out.status == "partial"


def test_only_finished_analyses_can_be_approved():
    analysis = AiScheduleAnalysis(user_id="u", target_date=NOW.date(), status="failed")
    with pytest.raises(ConflictError):
        transitions.approve_analysis(analysis, 5, None)
