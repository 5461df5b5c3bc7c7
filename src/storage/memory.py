"""
In-memory stores.

Used by the test suite and by the API when PostgreSQL is disabled. A single
``InMemoryDatabase`` holds every table behind one lock so that multi-table
steps (event creation + record update, analysis + slots) are atomic.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Sequence, TypeVar

from pydantic import BaseModel

from schedule_ai.errors import ConflictError, NotFoundError
from schedule_ai.models import (
    AiScheduleAnalysis,
    BatchError,
    Event,
    ImportBatch,
    OptimizedScheduleSlot,
    ParsingRule,
    ScheduleRecord,
)
from storage.base import (
    AnalysisQuery,
    AnalysisStore,
    EventQuery,
    EventStore,
    ImportStore,
    RecordQuery,
    RuleStore,
    SlotQuery,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _copy(model: M) -> M:
    return model.model_copy(deep=True)


class InMemoryDatabase:
    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.batches: Dict[str, ImportBatch] = {}
        self.records: Dict[str, ScheduleRecord] = {}
        self.events: Dict[str, Event] = {}
        self.analyses: Dict[str, AiScheduleAnalysis] = {}
        self.slots: Dict[str, OptimizedScheduleSlot] = {}
        self.rules: Dict[str, ParsingRule] = {}

    def get(self, table: Dict[str, M], resource: str, key: str) -> M:
        try:
            return table[key]
        except KeyError:
            raise NotFoundError(resource, key) from None

    def swap(self, table: Dict[str, M], resource: str, entity: M) -> M:
        """Write ``entity`` if the stored version matches, bumping the version."""
        current = self.get(table, resource, entity.id)
        if current.version != entity.version:
            raise ConflictError(
                f"{resource} {entity.id} changed concurrently "
                f"(expected version {entity.version}, found {current.version})"
            )
        stored = entity.model_copy(update={"version": entity.version + 1}, deep=True)
        table[entity.id] = stored
        return _copy(stored)


class InMemoryImportStore(ImportStore):
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def create_batch(self, batch, records):
        with self.db.lock:
            self.db.batches[batch.id] = _copy(batch)
            for record in records:
                self.db.records[record.id] = _copy(record)
            return _copy(batch)

    async def get_batch(self, batch_id: str) -> ImportBatch:
        with self.db.lock:
            return _copy(self.db.get(self.db.batches, "ImportBatch", batch_id))

    async def update_batch(self, batch: ImportBatch) -> ImportBatch:
        with self.db.lock:
            return self.db.swap(self.db.batches, "ImportBatch", batch)

    async def append_batch_errors(self, batch_id: str, errors: Sequence[BatchError]) -> None:
        with self.db.lock:
            current = self.db.get(self.db.batches, "ImportBatch", batch_id)
            current.error_log.extend(_copy(e) for e in errors)

    async def add_records(self, batch_id, records):
        with self.db.lock:
            batch = self.db.get(self.db.batches, "ImportBatch", batch_id)
            if batch.is_terminal:
                raise ConflictError(f"ImportBatch {batch_id} is {batch.status}; no records can be added")
            for record in records:
                self.db.records[record.id] = _copy(record)
            return [_copy(r) for r in records]

    async def get_record(self, record_id: str) -> ScheduleRecord:
        with self.db.lock:
            return _copy(self.db.get(self.db.records, "ScheduleRecord", record_id))

    async def list_records(self, query: RecordQuery) -> List[ScheduleRecord]:
        with self.db.lock:
            rows = [r for r in self.db.records.values() if _record_matches(r, query)]
            rows.sort(key=lambda r: r.row_number)
            if query.limit is not None:
                rows = rows[: query.limit]
            return [_copy(r) for r in rows]

    async def update_record(self, record: ScheduleRecord) -> ScheduleRecord:
        with self.db.lock:
            return self.db.swap(self.db.records, "ScheduleRecord", record)

    async def convert_record(self, record: ScheduleRecord, event: Event) -> Event:
        with self.db.lock:
            current = self.db.get(self.db.records, "ScheduleRecord", record.id)
            if current.converted_event_id is not None:
                raise ConflictError(
                    f"ScheduleRecord {record.id} already converted to {current.converted_event_id}"
                )
            self.db.swap(self.db.records, "ScheduleRecord", record)
            self.db.events[event.id] = _copy(event)
            return _copy(event)


def _record_matches(record: ScheduleRecord, query: RecordQuery) -> bool:
    if query.batch_id is not None and record.batch_id != query.batch_id:
        return False
    if query.processing_statuses is not None and record.processing_status not in query.processing_statuses:
        return False
    if query.record_ids is not None and record.id not in query.record_ids:
        return False
    if query.manual_review_only and not record.manual_review_required:
        return False
    if query.claimed_before is not None:
        if record.ai_analysis_status != "in_progress" or record.claimed_at is None:
            return False
        if record.claimed_at >= query.claimed_before:
            return False
    return True


class InMemoryEventStore(EventStore):
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def create_event(self, event: Event) -> Event:
        with self.db.lock:
            self.db.events[event.id] = _copy(event)
            return _copy(event)

    async def get_event(self, event_id: str) -> Event:
        with self.db.lock:
            return _copy(self.db.get(self.db.events, "Event", event_id))

    async def update_event(self, event: Event) -> Event:
        with self.db.lock:
            return self.db.swap(self.db.events, "Event", event)

    async def list_events(self, query: EventQuery) -> List[Event]:
        with self.db.lock:
            rows = [e for e in self.db.events.values() if _event_matches(e, query)]
            rows.sort(key=lambda e: (e.start_at or datetime.max, e.created_at))
            return [_copy(e) for e in rows]

    async def mark_event_notified(self, event_id: str, sent_at: datetime) -> bool:
        with self.db.lock:
            current = self.db.get(self.db.events, "Event", event_id)
            if current.notification_sent:
                return False
            self.db.events[event_id] = current.model_copy(
                update={
                    "notification_sent": True,
                    "notification_sent_at": sent_at,
                    "version": current.version + 1,
                }
            )
            return True


def _event_matches(event: Event, query: EventQuery) -> bool:
    if query.user_id is not None and event.user_id != query.user_id:
        return False
    if query.status is not None and event.status != query.status:
        return False
    if query.notification_sent is not None and event.notification_sent != query.notification_sent:
        return False
    if query.has_reminder is not None and (event.reminder_minutes_before is not None) != query.has_reminder:
        return False
    if query.claimed_before is not None:
        if event.ai_analysis_status != "in_progress" or event.claimed_at is None:
            return False
        if event.claimed_at >= query.claimed_before:
            return False
    return True


class InMemoryAnalysisStore(AnalysisStore):
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def create_analysis(self, analysis: AiScheduleAnalysis) -> AiScheduleAnalysis:
        with self.db.lock:
            self.db.analyses[analysis.id] = _copy(analysis)
            return _copy(analysis)

    async def get_analysis(self, analysis_id: str) -> AiScheduleAnalysis:
        with self.db.lock:
            return _copy(self.db.get(self.db.analyses, "AiScheduleAnalysis", analysis_id))

    async def update_analysis(self, analysis: AiScheduleAnalysis) -> AiScheduleAnalysis:
        with self.db.lock:
            return self.db.swap(self.db.analyses, "AiScheduleAnalysis", analysis)

    async def list_analyses(self, query: AnalysisQuery) -> List[AiScheduleAnalysis]:
        with self.db.lock:
            rows = [
                a
                for a in self.db.analyses.values()
                if (query.user_id is None or a.user_id == query.user_id)
                and (query.target_date is None or a.target_date == query.target_date)
                and (query.statuses is None or a.status in query.statuses)
            ]
            rows.sort(key=lambda a: a.created_at, reverse=True)
            if query.limit is not None:
                rows = rows[: query.limit]
            return [_copy(a) for a in rows]

    async def save_result(self, analysis, slots):
        with self.db.lock:
            stored = self.db.swap(self.db.analyses, "AiScheduleAnalysis", analysis)
            for slot in slots:
                self.db.slots[slot.id] = _copy(slot)
            return stored

    async def get_slot(self, slot_id: str) -> OptimizedScheduleSlot:
        with self.db.lock:
            return _copy(self.db.get(self.db.slots, "OptimizedScheduleSlot", slot_id))

    async def update_slot(self, slot: OptimizedScheduleSlot) -> OptimizedScheduleSlot:
        with self.db.lock:
            return self.db.swap(self.db.slots, "OptimizedScheduleSlot", slot)

    async def list_slots(self, query: SlotQuery) -> List[OptimizedScheduleSlot]:
        with self.db.lock:
            rows = [
                s
                for s in self.db.slots.values()
                if (query.analysis_id is None or s.analysis_id == query.analysis_id)
                and (query.user_id is None or s.user_id == query.user_id)
                and (query.date is None or s.date == query.date)
                and (query.status is None or s.status == query.status)
                and (query.notification_sent is None or s.notification_sent == query.notification_sent)
            ]
            rows.sort(key=lambda s: (s.date, s.start_time))
            return [_copy(s) for s in rows]

    async def mark_slot_notified(self, slot_id: str, sent_at: datetime) -> bool:
        with self.db.lock:
            current = self.db.get(self.db.slots, "OptimizedScheduleSlot", slot_id)
            if current.notification_sent:
                return False
            self.db.slots[slot_id] = current.model_copy(
                update={
                    "notification_sent": True,
                    "notification_sent_at": sent_at,
                    "version": current.version + 1,
                }
            )
            return True

    async def attach_slot_event(self, slot: OptimizedScheduleSlot, event: Event) -> Event:
        with self.db.lock:
            current = self.db.get(self.db.slots, "OptimizedScheduleSlot", slot.id)
            if current.event_id is not None:
                raise ConflictError(f"OptimizedScheduleSlot {slot.id} already has event {current.event_id}")
            self.db.swap(
                self.db.slots,
                "OptimizedScheduleSlot",
                slot.model_copy(update={"event_id": event.id}),
            )
            self.db.events[event.id] = _copy(event)
            return _copy(event)


class InMemoryRuleStore(RuleStore):
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def list_rules(self, profession: Optional[str]) -> List[ParsingRule]:
        with self.db.lock:
            rules = [r for r in self.db.rules.values() if r.applies_to(profession)]
            # sort is stable, so ties keep insertion order
            rules.sort(key=lambda r: r.priority_order)
            return [_copy(r) for r in rules]

    async def save_rule(self, rule: ParsingRule) -> ParsingRule:
        with self.db.lock:
            self.db.rules[rule.id] = _copy(rule)
            return _copy(rule)

    async def increment_usage(self, rule_ids: Sequence[str]) -> None:
        with self.db.lock:
            for rule_id in rule_ids:
                rule = self.db.rules.get(rule_id)
                if rule is None:
                    logger.warning(f"Usage reported for unknown rule {rule_id}")
                    continue
                rule.usage_count += 1

    async def increment_success(self, rule_ids: Sequence[str]) -> None:
        with self.db.lock:
            for rule_id in rule_ids:
                rule = self.db.rules.get(rule_id)
                if rule is None:
                    logger.warning(f"Success reported for unknown rule {rule_id}")
                    continue
                rule.success_count += 1
