"""
Store interfaces shared by the in-memory and PostgreSQL backends.

All writes of a mutable entity are conditional: the caller passes the entity
it read (with its ``version``) transformed into the next state, and the store
writes it only if the stored version still matches, bumping the version.
A lost race raises ``ConflictError``; a persistence failure raises
``StorageError`` and leaves prior state untouched.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Sequence

from schedule_ai.models import (
    AiScheduleAnalysis,
    BatchError,
    Event,
    ImportBatch,
    OptimizedScheduleSlot,
    ParsingRule,
    ScheduleRecord,
)


@dataclass
class RecordQuery:
    """Filters for listing records; results are ordered by row number."""
    batch_id: Optional[str] = None
    processing_statuses: Optional[Sequence[str]] = None
    record_ids: Optional[Sequence[str]] = None
    manual_review_only: bool = False
    # only records whose analysis claim is older than this
    claimed_before: Optional[datetime] = None
    limit: Optional[int] = None


@dataclass
class EventQuery:
    user_id: Optional[str] = None
    status: Optional[str] = None
    notification_sent: Optional[bool] = None
    has_reminder: Optional[bool] = None
    claimed_before: Optional[datetime] = None


@dataclass
class AnalysisQuery:
    """Results are ordered newest first."""
    user_id: Optional[str] = None
    target_date: Optional[date] = None
    statuses: Optional[Sequence[str]] = None
    limit: Optional[int] = None


@dataclass
class SlotQuery:
    """Results are ordered by date and start time."""
    analysis_id: Optional[str] = None
    user_id: Optional[str] = None
    date: Optional[date] = None
    status: Optional[str] = None
    notification_sent: Optional[bool] = None


class ImportStore(ABC):
    @abstractmethod
    async def create_batch(
        self, batch: ImportBatch, records: Sequence[ScheduleRecord]
    ) -> ImportBatch:
        """Persist a batch together with its initial records."""

    @abstractmethod
    async def get_batch(self, batch_id: str) -> ImportBatch:
        """Raises NotFoundError for unknown ids."""

    @abstractmethod
    async def update_batch(self, batch: ImportBatch) -> ImportBatch:
        ...

    @abstractmethod
    async def append_batch_errors(self, batch_id: str, errors: Sequence[BatchError]) -> None:
        """Append to the batch error log without a version check."""

    @abstractmethod
    async def add_records(
        self, batch_id: str, records: Sequence[ScheduleRecord]
    ) -> List[ScheduleRecord]:
        """Attach records; raises ConflictError once the batch is terminal."""

    @abstractmethod
    async def get_record(self, record_id: str) -> ScheduleRecord:
        ...

    @abstractmethod
    async def list_records(self, query: RecordQuery) -> List[ScheduleRecord]:
        ...

    @abstractmethod
    async def update_record(self, record: ScheduleRecord) -> ScheduleRecord:
        ...

    @abstractmethod
    async def convert_record(self, record: ScheduleRecord, event: Event) -> Event:
        """Create ``event`` and write ``record`` in one transaction.

        The write only happens if the stored record still has the version of
        ``record`` and no ``converted_event_id``; otherwise nothing is written
        and ConflictError is raised.
        """


class EventStore(ABC):
    @abstractmethod
    async def create_event(self, event: Event) -> Event:
        ...

    @abstractmethod
    async def get_event(self, event_id: str) -> Event:
        ...

    @abstractmethod
    async def update_event(self, event: Event) -> Event:
        ...

    @abstractmethod
    async def list_events(self, query: EventQuery) -> List[Event]:
        ...

    @abstractmethod
    async def mark_event_notified(self, event_id: str, sent_at: datetime) -> bool:
        """Set notification_sent only if it is still false; True if a row changed."""


class AnalysisStore(ABC):
    @abstractmethod
    async def create_analysis(self, analysis: AiScheduleAnalysis) -> AiScheduleAnalysis:
        ...

    @abstractmethod
    async def get_analysis(self, analysis_id: str) -> AiScheduleAnalysis:
        ...

    @abstractmethod
    async def update_analysis(self, analysis: AiScheduleAnalysis) -> AiScheduleAnalysis:
        ...

    @abstractmethod
    async def list_analyses(self, query: AnalysisQuery) -> List[AiScheduleAnalysis]:
        ...

    @abstractmethod
    async def save_result(
        self,
        analysis: AiScheduleAnalysis,
        slots: Sequence[OptimizedScheduleSlot],
    ) -> AiScheduleAnalysis:
        """Write the finished analysis and all of its slots, or nothing."""

    @abstractmethod
    async def get_slot(self, slot_id: str) -> OptimizedScheduleSlot:
        ...

    @abstractmethod
    async def update_slot(self, slot: OptimizedScheduleSlot) -> OptimizedScheduleSlot:
        ...

    @abstractmethod
    async def list_slots(self, query: SlotQuery) -> List[OptimizedScheduleSlot]:
        ...

    @abstractmethod
    async def mark_slot_notified(self, slot_id: str, sent_at: datetime) -> bool:
        """Set notification_sent only if it is still false; True if a row changed."""

    @abstractmethod
    async def attach_slot_event(self, slot: OptimizedScheduleSlot, event: Event) -> Event:
        """Create ``event`` and link it to the slot if the slot has none yet."""


class RuleStore(ABC):
    @abstractmethod
    async def list_rules(self, profession: Optional[str]) -> List[ParsingRule]:
        """Active global and profession rules, ascending ``priority_order``."""

    @abstractmethod
    async def save_rule(self, rule: ParsingRule) -> ParsingRule:
        ...

    @abstractmethod
    async def increment_usage(self, rule_ids: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def increment_success(self, rule_ids: Sequence[str]) -> None:
        ...
