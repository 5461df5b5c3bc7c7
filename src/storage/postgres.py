"""
PostgreSQL-backed stores.

Entities are stored as a JSONB document next to the columns that queries
and conditional updates need. Every conditional write checks the status
string asyncpg returns (``"UPDATE 1"``); anything else means the row moved
on and is reported as ``ConflictError``. Driver failures become
``StorageError``.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple, Type, TypeVar

import asyncpg
from pydantic import BaseModel

from schedule_ai.errors import ConflictError, NotFoundError, StorageError
from schedule_ai.models import (
    AiScheduleAnalysis,
    BatchError,
    Event,
    ImportBatch,
    OptimizedScheduleSlot,
    ParsingRule,
    ScheduleRecord,
)
from storage import db
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


@contextmanager
def _storage_errors(action: str):
    try:
        yield
    except (asyncpg.PostgresError, OSError) as e:
        logger.error(f"Database error while trying to {action}: {e}")
        raise StorageError(f"{action} failed: {e}") from e


def _doc(model: BaseModel) -> str:
    return model.model_dump_json(exclude={"version"})


def _load(model_type: Type[M], row) -> M:
    data = json.loads(row["data"])
    data["version"] = row["version"]
    return model_type.model_validate(data)


class _Where:
    """Accumulates ``AND`` conditions with numbered asyncpg placeholders."""

    def __init__(self) -> None:
        self.clauses: List[str] = []
        self.args: List[Any] = []

    def add(self, clause: str, *values: Any) -> None:
        # each "{}" in the clause takes the next placeholder
        placeholders = []
        for value in values:
            self.args.append(value)
            placeholders.append(f"${len(self.args)}")
        self.clauses.append(clause.format(*placeholders))

    def sql(self) -> str:
        return f"WHERE {' AND '.join(self.clauses)}" if self.clauses else ""

    def next_placeholder(self, value: Any) -> str:
        self.args.append(value)
        return f"${len(self.args)}"


def _check_updated(result: str, resource: str, entity_id: str, expected_version: int) -> None:
    if result != "UPDATE 1":
        raise ConflictError(
            f"{resource} {entity_id} changed concurrently (expected version {expected_version})"
        )


# ---------------------------------------------------------------------------
# Imports
# ---------------------------------------------------------------------------

_INSERT_RECORD = """
    INSERT INTO schedule_records (
        id, batch_id, user_id, row_number, processing_status, ai_analysis_status,
        ai_analysis_locked, claimed_at, manual_review_required, converted_event_id,
        version, data
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb)
"""

_UPDATE_RECORD = """
    UPDATE schedule_records
    SET processing_status = $3,
        ai_analysis_status = $4,
        ai_analysis_locked = $5,
        claimed_at = $6,
        manual_review_required = $7,
        converted_event_id = $8,
        data = $9::jsonb,
        version = version + 1
    WHERE id = $1 AND version = $2
"""

_INSERT_EVENT = """
    INSERT INTO events (
        id, user_id, status, start_at, reminder_minutes_before, notification_sent,
        ai_analysis_status, claimed_at, source_record_id, source_slot_id,
        version, created_at, data
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb)
"""


def _record_args(record: ScheduleRecord) -> Tuple[Any, ...]:
    return (
        record.processing_status,
        record.ai_analysis_status,
        record.ai_analysis_locked,
        record.claimed_at,
        record.manual_review_required,
        record.converted_event_id,
        _doc(record),
    )


def _event_insert_args(event: Event) -> Tuple[Any, ...]:
    return (
        event.id,
        event.user_id,
        event.status,
        event.start_at,
        event.reminder_minutes_before,
        event.notification_sent,
        event.ai_analysis_status,
        event.claimed_at,
        event.source_record_id,
        event.source_slot_id,
        event.version,
        event.created_at,
        _doc(event),
    )


def _bumped(model: M) -> M:
    return model.model_copy(update={"version": model.version + 1})


class PostgresImportStore(ImportStore):
    async def create_batch(self, batch, records):
        with _storage_errors("create import batch"):
            async with db.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO import_batches (id, user_id, status, version, created_at, data)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                    """,
                    batch.id, batch.user_id, batch.status, batch.version, batch.created_at, _doc(batch),
                )
                await conn.executemany(
                    _INSERT_RECORD,
                    [(r.id, r.batch_id, r.user_id, r.row_number, *_record_args(r)[:6], r.version, _doc(r)) for r in records],
                )
        logger.info(f"Stored batch {batch.id} with {len(records)} records")
        return batch

    async def get_batch(self, batch_id: str) -> ImportBatch:
        with _storage_errors("load import batch"):
            row = await db.fetchrow("SELECT version, data FROM import_batches WHERE id = $1", batch_id)
        if row is None:
            raise NotFoundError("ImportBatch", batch_id)
        return _load(ImportBatch, row)

    async def update_batch(self, batch: ImportBatch) -> ImportBatch:
        with _storage_errors("update import batch"):
            # error_log is appended separately and must survive counter updates
            result = await db.execute(
                """
                UPDATE import_batches
                SET status = $3,
                    data = $4::jsonb || jsonb_build_object('error_log', COALESCE(data->'error_log', '[]'::jsonb)),
                    version = version + 1
                WHERE id = $1 AND version = $2
                """,
                batch.id, batch.version, batch.status, _doc(batch),
            )
        _check_updated(result, "ImportBatch", batch.id, batch.version)
        return await self.get_batch(batch.id)

    async def append_batch_errors(self, batch_id: str, errors: Sequence[BatchError]) -> None:
        payload = json.dumps([json.loads(e.model_dump_json()) for e in errors])
        with _storage_errors("append batch errors"):
            await db.execute(
                """
                UPDATE import_batches
                SET data = jsonb_set(data, '{error_log}', COALESCE(data->'error_log', '[]'::jsonb) || $2::jsonb)
                WHERE id = $1
                """,
                batch_id, payload,
            )

    async def add_records(self, batch_id, records):
        with _storage_errors("add records"):
            async with db.transaction() as conn:
                status = await conn.fetchval(
                    "SELECT status FROM import_batches WHERE id = $1 FOR UPDATE", batch_id
                )
                if status is None:
                    raise NotFoundError("ImportBatch", batch_id)
                if status in ("completed", "failed"):
                    raise ConflictError(f"ImportBatch {batch_id} is {status}; no records can be added")
                await conn.executemany(
                    _INSERT_RECORD,
                    [(r.id, r.batch_id, r.user_id, r.row_number, *_record_args(r)[:6], r.version, _doc(r)) for r in records],
                )
        return list(records)

    async def get_record(self, record_id: str) -> ScheduleRecord:
        with _storage_errors("load record"):
            row = await db.fetchrow("SELECT version, data FROM schedule_records WHERE id = $1", record_id)
        if row is None:
            raise NotFoundError("ScheduleRecord", record_id)
        return _load(ScheduleRecord, row)

    async def list_records(self, query: RecordQuery) -> List[ScheduleRecord]:
        where = _Where()
        if query.batch_id is not None:
            where.add("batch_id = {}", query.batch_id)
        if query.processing_statuses is not None:
            where.add("processing_status = ANY({}::text[])", list(query.processing_statuses))
        if query.record_ids is not None:
            where.add("id = ANY({}::text[])", list(query.record_ids))
        if query.manual_review_only:
            where.add("manual_review_required")
        if query.claimed_before is not None:
            where.add("ai_analysis_status = 'in_progress' AND claimed_at < {}", query.claimed_before)

        sql = f"SELECT version, data FROM schedule_records {where.sql()} ORDER BY row_number"
        if query.limit is not None:
            sql += f" LIMIT {where.next_placeholder(query.limit)}"
        with _storage_errors("list records"):
            rows = await db.fetch(sql, *where.args)
        return [_load(ScheduleRecord, r) for r in rows]

    async def update_record(self, record: ScheduleRecord) -> ScheduleRecord:
        with _storage_errors("update record"):
            result = await db.execute(_UPDATE_RECORD, record.id, record.version, *_record_args(record))
        _check_updated(result, "ScheduleRecord", record.id, record.version)
        return _bumped(record)

    async def convert_record(self, record: ScheduleRecord, event: Event) -> Event:
        with _storage_errors("convert record"):
            async with db.transaction() as conn:
                result = await conn.execute(
                    _UPDATE_RECORD + "  AND converted_event_id IS NULL",
                    record.id, record.version, *_record_args(record),
                )
                _check_updated(result, "ScheduleRecord", record.id, record.version)
                await conn.execute(_INSERT_EVENT, *_event_insert_args(event))
        return event


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class PostgresEventStore(EventStore):
    async def create_event(self, event: Event) -> Event:
        with _storage_errors("create event"):
            await db.execute(_INSERT_EVENT, *_event_insert_args(event))
        return event

    async def get_event(self, event_id: str) -> Event:
        with _storage_errors("load event"):
            row = await db.fetchrow("SELECT version, data FROM events WHERE id = $1", event_id)
        if row is None:
            raise NotFoundError("Event", event_id)
        return _load(Event, row)

    async def update_event(self, event: Event) -> Event:
        with _storage_errors("update event"):
            result = await db.execute(
                """
                UPDATE events
                SET status = $3,
                    start_at = $4,
                    reminder_minutes_before = $5,
                    notification_sent = $6,
                    ai_analysis_status = $7,
                    claimed_at = $8,
                    data = $9::jsonb,
                    version = version + 1
                WHERE id = $1 AND version = $2
                """,
                event.id, event.version, event.status, event.start_at, event.reminder_minutes_before,
                event.notification_sent, event.ai_analysis_status, event.claimed_at, _doc(event),
            )
        _check_updated(result, "Event", event.id, event.version)
        return _bumped(event)

    async def list_events(self, query: EventQuery) -> List[Event]:
        where = _Where()
        if query.user_id is not None:
            where.add("user_id = {}", query.user_id)
        if query.status is not None:
            where.add("status = {}", query.status)
        if query.notification_sent is not None:
            where.add("notification_sent = {}", query.notification_sent)
        if query.has_reminder is not None:
            where.add(
                "reminder_minutes_before IS NOT NULL" if query.has_reminder else "reminder_minutes_before IS NULL"
            )
        if query.claimed_before is not None:
            where.add("ai_analysis_status = 'in_progress' AND claimed_at < {}", query.claimed_before)

        with _storage_errors("list events"):
            rows = await db.fetch(
                f"SELECT version, data FROM events {where.sql()} ORDER BY start_at NULLS LAST, created_at",
                *where.args,
            )
        return [_load(Event, r) for r in rows]

    async def mark_event_notified(self, event_id: str, sent_at: datetime) -> bool:
        with _storage_errors("mark event notified"):
            result = await db.execute(
                """
                UPDATE events
                SET notification_sent = TRUE,
                    data = data || jsonb_build_object('notification_sent', TRUE, 'notification_sent_at', $2::text),
                    version = version + 1
                WHERE id = $1 AND notification_sent = FALSE
                """,
                event_id, sent_at.isoformat(),
            )
        if result == "UPDATE 1":
            return True
        await self.get_event(event_id)
        return False


# ---------------------------------------------------------------------------
# Analyses and slots
# ---------------------------------------------------------------------------

_INSERT_SLOT = """
    INSERT INTO schedule_slots (
        id, analysis_id, user_id, slot_date, start_time, status, notification_sent,
        event_id, version, data
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
"""

_UPDATE_ANALYSIS = """
    UPDATE schedule_analyses
    SET status = $3, data = $4::jsonb, version = version + 1
    WHERE id = $1 AND version = $2
"""

_UPDATE_SLOT = """
    UPDATE schedule_slots
    SET status = $3, notification_sent = $4, event_id = $5, data = $6::jsonb, version = version + 1
    WHERE id = $1 AND version = $2
"""


def _slot_insert_args(slot: OptimizedScheduleSlot) -> Tuple[Any, ...]:
    return (
        slot.id, slot.analysis_id, slot.user_id, slot.date, slot.start_time, slot.status,
        slot.notification_sent, slot.event_id, slot.version, _doc(slot),
    )


class PostgresAnalysisStore(AnalysisStore):
    async def create_analysis(self, analysis: AiScheduleAnalysis) -> AiScheduleAnalysis:
        with _storage_errors("create analysis"):
            await db.execute(
                """
                INSERT INTO schedule_analyses (id, user_id, target_date, status, version, created_at, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                """,
                analysis.id, analysis.user_id, analysis.target_date, analysis.status,
                analysis.version, analysis.created_at, _doc(analysis),
            )
        return analysis

    async def get_analysis(self, analysis_id: str) -> AiScheduleAnalysis:
        with _storage_errors("load analysis"):
            row = await db.fetchrow("SELECT version, data FROM schedule_analyses WHERE id = $1", analysis_id)
        if row is None:
            raise NotFoundError("AiScheduleAnalysis", analysis_id)
        return _load(AiScheduleAnalysis, row)

    async def update_analysis(self, analysis: AiScheduleAnalysis) -> AiScheduleAnalysis:
        with _storage_errors("update analysis"):
            result = await db.execute(
                _UPDATE_ANALYSIS, analysis.id, analysis.version, analysis.status, _doc(analysis)
            )
        _check_updated(result, "AiScheduleAnalysis", analysis.id, analysis.version)
        return _bumped(analysis)

    async def list_analyses(self, query: AnalysisQuery) -> List[AiScheduleAnalysis]:
        where = _Where()
        if query.user_id is not None:
            where.add("user_id = {}", query.user_id)
        if query.target_date is not None:
            where.add("target_date = {}", query.target_date)
        if query.statuses is not None:
            where.add("status = ANY({}::text[])", list(query.statuses))

        sql = f"SELECT version, data FROM schedule_analyses {where.sql()} ORDER BY created_at DESC"
        if query.limit is not None:
            sql += f" LIMIT {where.next_placeholder(query.limit)}"
        with _storage_errors("list analyses"):
            rows = await db.fetch(sql, *where.args)
        return [_load(AiScheduleAnalysis, r) for r in rows]

    async def save_result(self, analysis, slots):
        with _storage_errors("save analysis result"):
            async with db.transaction() as conn:
                result = await conn.execute(
                    _UPDATE_ANALYSIS, analysis.id, analysis.version, analysis.status, _doc(analysis)
                )
                _check_updated(result, "AiScheduleAnalysis", analysis.id, analysis.version)
                if slots:
                    await conn.executemany(_INSERT_SLOT, [_slot_insert_args(s) for s in slots])
        return _bumped(analysis)

    async def get_slot(self, slot_id: str) -> OptimizedScheduleSlot:
        with _storage_errors("load slot"):
            row = await db.fetchrow("SELECT version, data FROM schedule_slots WHERE id = $1", slot_id)
        if row is None:
            raise NotFoundError("OptimizedScheduleSlot", slot_id)
        return _load(OptimizedScheduleSlot, row)

    async def update_slot(self, slot: OptimizedScheduleSlot) -> OptimizedScheduleSlot:
        with _storage_errors("update slot"):
            result = await db.execute(
                _UPDATE_SLOT, slot.id, slot.version, slot.status, slot.notification_sent, slot.event_id, _doc(slot)
            )
        _check_updated(result, "OptimizedScheduleSlot", slot.id, slot.version)
        return _bumped(slot)

    async def list_slots(self, query: SlotQuery) -> List[OptimizedScheduleSlot]:
        where = _Where()
        if query.analysis_id is not None:
            where.add("analysis_id = {}", query.analysis_id)
        if query.user_id is not None:
            where.add("user_id = {}", query.user_id)
        if query.date is not None:
            where.add("slot_date = {}", query.date)
        if query.status is not None:
            where.add("status = {}", query.status)
        if query.notification_sent is not None:
            where.add("notification_sent = {}", query.notification_sent)

        with _storage_errors("list slots"):
            rows = await db.fetch(
                f"SELECT version, data FROM schedule_slots {where.sql()} ORDER BY slot_date, start_time",
                *where.args,
            )
        return [_load(OptimizedScheduleSlot, r) for r in rows]

    async def mark_slot_notified(self, slot_id: str, sent_at: datetime) -> bool:
        with _storage_errors("mark slot notified"):
            result = await db.execute(
                """
                UPDATE schedule_slots
                SET notification_sent = TRUE,
                    data = data || jsonb_build_object('notification_sent', TRUE, 'notification_sent_at', $2::text),
                    version = version + 1
                WHERE id = $1 AND notification_sent = FALSE
                """,
                slot_id, sent_at.isoformat(),
            )
        if result == "UPDATE 1":
            return True
        # distinguish "already sent" from an unknown id
        await self.get_slot(slot_id)
        return False

    async def attach_slot_event(self, slot: OptimizedScheduleSlot, event: Event) -> Event:
        linked = slot.model_copy(update={"event_id": event.id})
        with _storage_errors("attach slot event"):
            async with db.transaction() as conn:
                result = await conn.execute(
                    _UPDATE_SLOT + "  AND event_id IS NULL",
                    linked.id, linked.version, linked.status, linked.notification_sent, linked.event_id, _doc(linked),
                )
                _check_updated(result, "OptimizedScheduleSlot", slot.id, slot.version)
                await conn.execute(_INSERT_EVENT, *_event_insert_args(event))
        return event


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def _load_rule(row) -> ParsingRule:
    data = json.loads(row["data"])
    data["usage_count"] = row["usage_count"]
    data["success_count"] = row["success_count"]
    return ParsingRule.model_validate(data)


class PostgresRuleStore(RuleStore):
    async def list_rules(self, profession: Optional[str]) -> List[ParsingRule]:
        with _storage_errors("list rules"):
            rows = await db.fetch(
                """
                SELECT data, usage_count, success_count FROM parsing_rules
                WHERE is_active AND (profession IS NULL OR profession = $1)
                ORDER BY priority_order, seq
                """,
                profession,
            )
        return [_load_rule(r) for r in rows]

    async def save_rule(self, rule: ParsingRule) -> ParsingRule:
        with _storage_errors("save rule"):
            await db.execute(
                """
                INSERT INTO parsing_rules (id, profession, priority_order, is_active, usage_count, success_count, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
                ON CONFLICT (id) DO UPDATE
                SET profession = EXCLUDED.profession,
                    priority_order = EXCLUDED.priority_order,
                    is_active = EXCLUDED.is_active,
                    data = EXCLUDED.data
                """,
                rule.id, rule.profession, rule.priority_order, rule.is_active,
                rule.usage_count, rule.success_count, rule.model_dump_json(),
            )
        return rule

    async def increment_usage(self, rule_ids: Sequence[str]) -> None:
        with _storage_errors("increment rule usage"):
            await db.execute(
                "UPDATE parsing_rules SET usage_count = usage_count + 1 WHERE id = ANY($1::text[])",
                list(rule_ids),
            )

    async def increment_success(self, rule_ids: Sequence[str]) -> None:
        with _storage_errors("increment rule success"):
            await db.execute(
                "UPDATE parsing_rules SET success_count = success_count + 1 WHERE id = ANY($1::text[])",
                list(rule_ids),
            )
