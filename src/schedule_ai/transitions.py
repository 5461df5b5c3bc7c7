"""Pure state transitions for records, batches, events, analyses and slots.

Every function takes the current entity and returns the next one; nothing
here touches storage. Persisting the result is a separate conditional write
keyed on the ``version`` that was read. Invalid transitions raise
``ConflictError``.
"""

from __future__ import annotations

from datetime import datetime
from statistics import fmean
from typing import Any, Dict, Iterable, List, Optional

from schedule_ai.errors import ConflictError, ScheduleError, ValidationError
from schedule_ai.models import (
    AiAnalysisBlock,
    AiScheduleAnalysis,
    AnalysisMetrics,
    Event,
    ImportBatch,
    OptimizedScheduleSlot,
    ParsedFields,
    ScheduleRecord,
)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def _require_unconverted(record: ScheduleRecord) -> None:
    if record.converted_event_id is not None or record.processing_status == "converted":
        raise ConflictError(f"Record {record.id} is already converted")


def _require_claimed(record: ScheduleRecord) -> None:
    if record.ai_analysis_status != "in_progress":
        raise ConflictError(f"Record {record.id} is not claimed for analysis")


def claim_record(record: ScheduleRecord, now: datetime) -> ScheduleRecord:
    _require_unconverted(record)
    if record.ai_analysis_locked or record.ai_analysis_status == "in_progress":
        raise ConflictError(f"Record {record.id} is already being analyzed")
    return record.model_copy(
        update={
            "ai_analysis_status": "in_progress",
            "ai_analysis_locked": True,
            "claimed_at": now,
            "updated_at": now,
        }
    )


def record_analyzed(
    record: ScheduleRecord,
    *,
    parsed: ParsedFields,
    ai: AiAnalysisBlock,
    keywords: List[str],
    matched_rule_ids: List[str],
    review_threshold: float,
    now: datetime,
) -> ScheduleRecord:
    _require_claimed(record)
    needs_review = ai.confidence < review_threshold
    return record.model_copy(
        update={
            "parsed": parsed,
            "ai": ai,
            "detected_keywords": keywords,
            "matched_rule_ids": matched_rule_ids,
            "ai_analysis_status": "completed",
            "ai_analysis_locked": False,
            "claimed_at": None,
            "retry_count": 0,
            "processing_status": "parsed",
            "conversion_status": "pending",
            "manual_review_required": needs_review,
            "manual_review_notes": (
                f"AI confidence {ai.confidence:.2f} is below {review_threshold:.2f}"
                if needs_review
                else None
            ),
            "updated_at": now,
        }
    )


def record_analysis_failed(
    record: ScheduleRecord,
    error: ScheduleError,
    *,
    max_attempts: int,
    now: datetime,
) -> ScheduleRecord:
    """Release the claim; the record fails for good once the budget is spent."""
    _require_claimed(record)
    retry_count = record.retry_count + 1
    update: Dict[str, Any] = {
        "ai_analysis_status": "failed",
        "ai_analysis_locked": False,
        "claimed_at": None,
        "retry_count": retry_count,
        "parsing_errors": [*record.parsing_errors, str(error)],
        "updated_at": now,
    }
    if retry_count >= max_attempts:
        update["processing_status"] = "failed"
    return record.model_copy(update=update)


def record_invalid(record: ScheduleRecord, error: ValidationError, now: datetime) -> ScheduleRecord:
    _require_claimed(record)
    return record.model_copy(
        update={
            "ai_analysis_status": "failed",
            "ai_analysis_locked": False,
            "claimed_at": None,
            "processing_status": "failed",
            "manual_review_required": True,
            "manual_review_notes": error.message,
            "parsing_errors": [*record.parsing_errors, error.message],
            "updated_at": now,
        }
    )


def record_claim_expired(record: ScheduleRecord, now: datetime) -> ScheduleRecord:
    _require_claimed(record)
    return record.model_copy(
        update={
            "ai_analysis_status": "failed",
            "ai_analysis_locked": False,
            "claimed_at": None,
            "retry_count": record.retry_count + 1,
            "parsing_errors": [*record.parsing_errors, "[timeout] analysis claim expired"],
            "updated_at": now,
        }
    )


def record_converted(record: ScheduleRecord, event_id: str, now: datetime) -> ScheduleRecord:
    _require_unconverted(record)
    return record.model_copy(
        update={
            "processing_status": "converted",
            "conversion_status": "success",
            "converted_event_id": event_id,
            "updated_at": now,
        }
    )


def record_conversion_failed(record: ScheduleRecord, message: str, now: datetime) -> ScheduleRecord:
    _require_unconverted(record)
    return record.model_copy(
        update={
            "conversion_status": "failed",
            "parsing_errors": [*record.parsing_errors, message],
            "updated_at": now,
        }
    )


def record_needs_review(record: ScheduleRecord, reason: str, now: datetime) -> ScheduleRecord:
    _require_unconverted(record)
    return record.model_copy(
        update={
            "manual_review_required": True,
            "conversion_status": "manual_review",
            "manual_review_notes": reason,
            "updated_at": now,
        }
    )


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


def start_batch(batch: ImportBatch, now: datetime) -> ImportBatch:
    if batch.status != "pending":
        return batch
    return batch.model_copy(update={"status": "processing", "started_at": now})


def summarize_batch(
    batch: ImportBatch,
    records: Iterable[ScheduleRecord],
    now: datetime,
) -> ImportBatch:
    """Recompute counters; the batch turns terminal once no record is pending.

    ``failed`` is chosen only when some record failed and none succeeded.
    """
    records = list(records)
    succeeded = sum(1 for r in records if r.processing_status in ("parsed", "converted"))
    failed = sum(1 for r in records if r.processing_status == "failed")
    confidences = [r.ai_confidence for r in records if r.ai_confidence is not None]

    update: Dict[str, Any] = {
        "total_found": len(records),
        "succeeded": succeeded,
        "failed": failed,
        "ai_confidence_score": round(fmean(confidences), 2) if confidences else None,
    }
    any_pending = any(r.processing_status == "pending" for r in records)
    if not any_pending and batch.status != "pending":
        update["status"] = "failed" if failed > 0 and succeeded == 0 else "completed"
        update["completed_at"] = batch.completed_at or now
    return batch.model_copy(update=update)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def claim_event(event: Event, analysis_id: str, now: datetime) -> Event:
    if not event.available_for_analysis:
        raise ConflictError(f"Event {event.id} is locked for AI analysis")
    return event.model_copy(
        update={
            "ai_analysis_status": "in_progress",
            "ai_analysis_locked": True,
            "ai_analysis_id": analysis_id,
            "claimed_at": now,
        }
    )


def event_analyzed(event: Event, result: Dict[str, Any], now: datetime) -> Event:
    if event.ai_analysis_status != "in_progress":
        raise ConflictError(f"Event {event.id} is not claimed for analysis")
    # stays locked until reset
    return event.model_copy(
        update={
            "ai_analysis_status": "completed",
            "ai_analysis_result": result,
            "ai_analyzed_at": now,
            "claimed_at": None,
        }
    )


def event_analysis_failed(event: Event, error: ScheduleError) -> Event:
    if event.ai_analysis_status != "in_progress":
        raise ConflictError(f"Event {event.id} is not claimed for analysis")
    return event.model_copy(
        update={
            "ai_analysis_status": "failed",
            "ai_analysis_locked": False,
            "ai_analysis_result": {"error": error.message, "kind": error.kind},
            "claimed_at": None,
        }
    )


def reset_event_analysis(event: Event) -> Event:
    return event.model_copy(
        update={
            "ai_analysis_status": "pending",
            "ai_analysis_locked": False,
            "ai_analysis_id": None,
            "ai_analysis_result": None,
            "ai_analyzed_at": None,
            "claimed_at": None,
        }
    )


# ---------------------------------------------------------------------------
# Schedule analyses and slots
# ---------------------------------------------------------------------------


def start_analysis(analysis: AiScheduleAnalysis) -> AiScheduleAnalysis:
    if analysis.status != "pending":
        raise ConflictError(f"Analysis {analysis.id} is {analysis.status}, expected pending")
    return analysis.model_copy(update={"status": "processing"})


def fail_analysis(
    analysis: AiScheduleAnalysis,
    error: ScheduleError,
    now: datetime,
    processing_time_ms: Optional[float] = None,
) -> AiScheduleAnalysis:
    return analysis.model_copy(
        update={
            "status": "failed",
            "error_details": {"kind": error.kind, "message": error.message},
            "processing_time_ms": processing_time_ms,
            "completed_at": now,
        }
    )


def complete_analysis(
    analysis: AiScheduleAnalysis,
    *,
    response: Dict[str, Any],
    metrics: AnalysisMetrics,
    ai_model: Optional[str],
    processing_time_ms: Optional[float],
    now: datetime,
) -> AiScheduleAnalysis:
    if analysis.status != "processing":
        raise ConflictError(f"Analysis {analysis.id} is {analysis.status}, expected processing")
    return analysis.model_copy(
        update={
            "status": "partial" if metrics.unplaced_task_ids else "completed",
            "ai_response": response,
            "metrics": metrics,
            "ai_model": ai_model,
            "processing_time_ms": processing_time_ms,
            "completed_at": now,
        }
    )


def approve_analysis(
    analysis: AiScheduleAnalysis,
    rating: Optional[int],
    feedback: Optional[str],
) -> AiScheduleAnalysis:
    if analysis.status not in ("completed", "partial"):
        raise ConflictError(f"Analysis {analysis.id} is {analysis.status} and cannot be approved")
    return analysis.model_copy(
        update={"user_approved": True, "user_rating": rating, "user_feedback": feedback}
    )


def confirm_slot(slot: OptimizedScheduleSlot, now: datetime) -> OptimizedScheduleSlot:
    if slot.status == "cancelled":
        raise ConflictError(f"Slot {slot.id} is cancelled")
    return slot.model_copy(update={"user_confirmed": True, "confirmed_at": now})


def complete_slot(slot: OptimizedScheduleSlot, now: datetime) -> OptimizedScheduleSlot:
    if slot.status != "scheduled":
        raise ConflictError(f"Slot {slot.id} is {slot.status}")
    return slot.model_copy(update={"status": "completed", "completed_at": now})


def cancel_slot(slot: OptimizedScheduleSlot) -> OptimizedScheduleSlot:
    if slot.status != "scheduled":
        raise ConflictError(f"Slot {slot.id} is {slot.status}")
    return slot.model_copy(update={"status": "cancelled"})
