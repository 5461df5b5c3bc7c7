from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from schedule_ai import transitions
from schedule_ai.config import PipelineSettings
from schedule_ai.errors import ConflictError, StorageError
from schedule_ai.metrics import EVENTS_CONVERTED_TOTAL
from schedule_ai.models import Clock, Event, ScheduleRecord
from storage.base import ImportStore, RecordQuery, RuleStore

logger = logging.getLogger(__name__)

DEFAULT_EVENT_DURATION = timedelta(hours=1)


@dataclass
class ConversionResult:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


def build_event(record: ScheduleRecord, now: datetime, reminder_minutes: Optional[int] = None) -> Event:
    """Event fields sourced from the record's merged parsed and AI fields."""
    parsed = record.parsed
    end_at = parsed.end_at
    if end_at is None and parsed.start_at is not None:
        end_at = parsed.start_at + DEFAULT_EVENT_DURATION

    return Event(
        user_id=record.user_id,
        title=parsed.title,
        description=parsed.description,
        location=parsed.location,
        start_at=parsed.start_at,
        end_at=end_at,
        priority=parsed.priority or 3,
        category=record.ai.category if record.ai else None,
        source="import",
        source_record_id=record.id,
        metadata={
            "batch_id": record.batch_id,
            "row_number": record.row_number,
            "ai_confidence": record.ai_confidence,
            "keywords": list(record.detected_keywords),
        },
        reminder_minutes_before=reminder_minutes if parsed.start_at is not None else None,
        created_at=now,
    )


class ConversionEngine:
    """Promotes qualifying records into events, at most once per record."""

    def __init__(
        self,
        imports: ImportStore,
        rules: RuleStore,
        settings: Optional[PipelineSettings] = None,
        clock: Clock = datetime.now,
    ):
        self.imports = imports
        self.rules = rules
        self.settings = settings or PipelineSettings()
        self.clock = clock

    async def convert(
        self,
        batch_id: str,
        min_confidence: Optional[float] = None,
        record_ids: Optional[Sequence[str]] = None,
    ) -> ConversionResult:
        if min_confidence is None:
            min_confidence = self.settings.default_min_confidence
        await self.imports.get_batch(batch_id)

        records = await self.imports.list_records(
            RecordQuery(batch_id=batch_id, record_ids=list(record_ids) if record_ids is not None else None)
        )
        result = ConversionResult()

        for record in records:
            confidence = record.ai_confidence
            # no score means not eligible, never "passing"
            if confidence is None or confidence < min_confidence:
                continue
            if record.is_converted or record.processing_status == "converted":
                result.skipped += 1
                continue
            if record.ai_analysis_status == "in_progress":
                result.skipped += 1
                continue

            result.attempted += 1
            outcome = await self._convert_record(record)
            setattr(result, outcome, getattr(result, outcome) + 1)

        logger.info(
            f"Batch {batch_id} conversion at >= {min_confidence}: attempted={result.attempted} "
            f"succeeded={result.succeeded} failed={result.failed} skipped={result.skipped}"
        )
        return result

    async def _convert_record(self, record: ScheduleRecord) -> str:
        now = self.clock()

        if not record.parsed.title:
            logger.warning(f"Record {record.id} has no resolvable title; flagged for manual review")
            try:
                await self.imports.update_record(
                    transitions.record_needs_review(record, "No title could be resolved for this entry", now)
                )
            except ConflictError:
                logger.info(f"Record {record.id} changed concurrently; manual review flag not written")
            return "skipped"

        event = build_event(record, now, reminder_minutes=self.settings.default_reminder_minutes)
        converted = transitions.record_converted(record, event.id, now)

        try:
            await self.imports.convert_record(converted, event)
        except ConflictError:
            logger.info(f"Record {record.id} was converted or changed concurrently; skipping")
            return "skipped"
        except StorageError as e:
            logger.error(f"Event creation failed for record {record.id}: {e.message}")
            try:
                await self.imports.update_record(
                    transitions.record_conversion_failed(record, f"Event creation failed: {e.message}", now)
                )
            except (ConflictError, StorageError):
                logger.exception(f"Could not record conversion failure on record {record.id}")
            return "failed"

        EVENTS_CONVERTED_TOTAL.inc()
        if record.matched_rule_ids:
            await self.rules.increment_success(record.matched_rule_ids)
        logger.info(f"Record {record.id} converted to event {event.id}")
        return "succeeded"
