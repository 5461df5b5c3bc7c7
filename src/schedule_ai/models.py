from __future__ import annotations

import uuid
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Injectable time source; tests pass a fixed clock.
Clock = Callable[[], datetime]


def new_id() -> str:
    return str(uuid.uuid4())


def naive_local(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes become naive local time, matching the Clock."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


SourceKind = Literal["file", "manual", "api"]
DeclaredFormat = Literal["csv", "excel", "json", "text"]
BatchStatus = Literal["pending", "processing", "completed", "failed"]
ProcessingStatus = Literal["pending", "parsed", "converted", "failed"]
ConversionStatus = Literal["pending", "success", "failed", "manual_review"]
AiAnalysisStatus = Literal["pending", "in_progress", "completed", "failed"]
AnalysisStatus = Literal["pending", "processing", "completed", "failed", "partial"]
SlotStatus = Literal["scheduled", "completed", "cancelled"]
EventStatus = Literal["scheduled", "completed", "cancelled"]
EventSource = Literal["manual", "import", "ai_optimization"]
PriorityLabel = Literal["critical", "high", "medium", "low"]
PreferredTime = Literal["morning", "afternoon", "evening"]
DeliveryMethod = Literal["push", "email", "in_app"]

# Alias so the slot field named ``date`` does not shadow the type.
SlotDate = date

TERMINAL_BATCH_STATUSES = frozenset({"completed", "failed"})


# ---------------------------------------------------------------------------
# Import batches and records
# ---------------------------------------------------------------------------


class ParsedFields(BaseModel):
    """Candidate event fields; every field stays ``None`` until resolved."""

    title: Optional[str] = None
    description: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    location: Optional[str] = None
    # 1 = most urgent, 5 = least
    priority: Optional[int] = Field(None, ge=1, le=5)

    @field_validator("title", "description", "location")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v2 = v.strip()
        return v2 or None

    @field_validator("start_at", "end_at")
    @classmethod
    def local_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return naive_local(v)

    def overlaid_with(self, other: "ParsedFields") -> "ParsedFields":
        """Copy of ``self`` where every non-null field of ``other`` wins."""
        updates = {
            name: getattr(other, name)
            for name in type(self).model_fields
            if getattr(other, name) is not None
        }
        return self.model_copy(update=updates)


class AiAnalysisBlock(BaseModel):
    confidence: float = Field(..., ge=0.0, le=1.0)
    category: Optional[str] = None
    importance: Optional[float] = Field(None, ge=0.0, le=1.0)
    raw_payload: Dict[str, Any] = Field(default_factory=dict)
    analyzed_at: Optional[datetime] = None


class BatchError(BaseModel):
    record_ref: Optional[str] = None
    message: str
    kind: str = "unknown"
    at: datetime = Field(default_factory=datetime.now)


class ImportBatch(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    source_kind: SourceKind = "manual"
    declared_format: DeclaredFormat = "text"
    original_filename: Optional[str] = None
    byte_size: int = Field(0, ge=0)
    raw_content: Optional[str] = None
    profession: Optional[str] = None

    status: BatchStatus = "pending"
    total_found: int = Field(0, ge=0)
    succeeded: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_log: List[BatchError] = Field(default_factory=list)

    detected_format: Optional[str] = None
    ai_confidence_score: Optional[float] = None

    version: int = 0
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BATCH_STATUSES

    @property
    def success_rate(self) -> float:
        if self.total_found == 0:
            return 0.0
        return round(self.succeeded / self.total_found * 100, 2)


class ScheduleRecord(BaseModel):
    """One raw line/row of an import batch."""

    id: str = Field(default_factory=new_id)
    batch_id: str
    user_id: str
    row_number: int = Field(..., ge=0)
    raw_text: str = ""
    original_data: Dict[str, Any] = Field(default_factory=dict)

    parsed: ParsedFields = Field(default_factory=ParsedFields)
    detected_keywords: List[str] = Field(default_factory=list)
    matched_rule_ids: List[str] = Field(default_factory=list)

    ai: Optional[AiAnalysisBlock] = None
    ai_analysis_status: AiAnalysisStatus = "pending"
    ai_analysis_locked: bool = False
    claimed_at: Optional[datetime] = None
    retry_count: int = Field(0, ge=0)

    processing_status: ProcessingStatus = "pending"
    conversion_status: Optional[ConversionStatus] = None
    converted_event_id: Optional[str] = None

    manual_review_required: bool = False
    manual_review_notes: Optional[str] = None
    parsing_errors: List[str] = Field(default_factory=list)

    version: int = 0
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def ai_confidence(self) -> Optional[float]:
        return self.ai.confidence if self.ai is not None else None

    @property
    def is_converted(self) -> bool:
        return self.converted_event_id is not None

    @property
    def duration_minutes(self) -> Optional[int]:
        if self.parsed.start_at is None or self.parsed.end_at is None:
            return None
        return int((self.parsed.end_at - self.parsed.start_at).total_seconds() // 60)

    @property
    def available_for_analysis(self) -> bool:
        return (
            not self.ai_analysis_locked
            and self.ai_analysis_status in ("pending", "failed")
            and self.converted_event_id is None
        )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class Event(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    location: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    priority: int = Field(3, ge=1, le=5)
    category: Optional[str] = None
    status: EventStatus = "scheduled"
    source: EventSource = "manual"
    source_record_id: Optional[str] = None
    source_slot_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    reminder_minutes_before: Optional[int] = Field(None, ge=0)
    notification_sent: bool = False
    notification_sent_at: Optional[datetime] = None

    ai_analysis_status: AiAnalysisStatus = "pending"
    ai_analysis_locked: bool = False
    ai_analysis_id: Optional[str] = None
    ai_analysis_result: Optional[Dict[str, Any]] = None
    ai_analyzed_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None

    version: int = 0
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        v2 = v.strip()
        if not v2:
            raise ValueError("title must not be blank")
        return v2

    @field_validator("start_at", "end_at")
    @classmethod
    def local_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return naive_local(v)

    @property
    def available_for_analysis(self) -> bool:
        return not self.ai_analysis_locked and self.ai_analysis_status in ("pending", "failed")


# ---------------------------------------------------------------------------
# Optimization
# ---------------------------------------------------------------------------


class TaskInput(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = Field(..., min_length=1)
    description: str = ""
    duration_minutes: int = Field(30, ge=1)
    priority: PriorityLabel = "medium"
    preferred_time: Optional[PreferredTime] = None
    category: str = "general"

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        v2 = v.strip()
        if not v2:
            raise ValueError("title must not be blank")
        return v2


class ExcludedSlot(BaseModel):
    start: time
    end: time
    reason: str = ""


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


class SchedulePreferences(BaseModel):
    work_start: time = Field(default_factory=lambda: time(8, 0))
    work_end: time = Field(default_factory=lambda: time(18, 0))
    break_duration_min: int = Field(60, ge=0)
    excluded_slots: List[ExcludedSlot] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    default_reminder_minutes: int = Field(15, ge=0)

    @model_validator(mode="after")
    def work_window_ordered(self) -> "SchedulePreferences":
        if self.work_end <= self.work_start:
            raise ValueError("work_end must be after work_start")
        return self

    @property
    def available_minutes(self) -> int:
        """Minutes in the work window minus the break and excluded slots."""
        start, end = _minutes(self.work_start), _minutes(self.work_end)
        excluded = 0
        for slot in self.excluded_slots:
            lo = max(start, _minutes(slot.start))
            hi = min(end, _minutes(slot.end))
            if hi > lo:
                excluded += hi - lo
        return max(0, end - start - self.break_duration_min - excluded)


class AnalysisMetrics(BaseModel):
    total_scheduled_minutes: int = 0
    available_minutes: int = 0
    utilization_rate: float = 0.0
    unplaced_task_ids: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class AiScheduleAnalysis(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    target_date: date
    end_date: Optional[date] = None
    tasks: List[TaskInput] = Field(default_factory=list)
    preferences: SchedulePreferences = Field(default_factory=SchedulePreferences)

    status: AnalysisStatus = "pending"
    ai_model: Optional[str] = None
    ai_response: Optional[Dict[str, Any]] = None
    metrics: Optional[AnalysisMetrics] = None
    error_details: Optional[Dict[str, Any]] = None
    processing_time_ms: Optional[float] = None

    retry_count: int = Field(0, ge=0)
    retried_from_id: Optional[str] = None

    user_approved: bool = False
    user_rating: Optional[int] = Field(None, ge=1, le=5)
    user_feedback: Optional[str] = None

    version: int = 0
    created_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None


class OptimizedScheduleSlot(BaseModel):
    id: str = Field(default_factory=new_id)
    analysis_id: str
    user_id: str
    date: SlotDate
    start_time: time
    end_time: time
    duration_minutes: int = Field(0, ge=0)

    task_id: Optional[str] = None
    task_title: str = Field(..., min_length=1)
    task_description: Optional[str] = None
    location: Optional[str] = None
    priority: PriorityLabel = "medium"
    category: Optional[str] = None
    reasoning: Optional[str] = None
    suitability_score: Optional[float] = None
    is_flexible: bool = False

    reminder_minutes_before: int = Field(15, ge=0)
    notification_sent: bool = False
    notification_sent_at: Optional[datetime] = None

    user_confirmed: bool = False
    confirmed_at: Optional[datetime] = None
    status: SlotStatus = "scheduled"
    completed_at: Optional[datetime] = None

    original_record_id: Optional[str] = None
    event_id: Optional[str] = None

    version: int = 0

    @property
    def start_datetime(self) -> datetime:
        return datetime.combine(self.date, self.start_time)

    @property
    def end_datetime(self) -> datetime:
        return datetime.combine(self.date, self.end_time)

    @property
    def reminder_at(self) -> datetime:
        return self.start_datetime - timedelta(minutes=self.reminder_minutes_before)


# ---------------------------------------------------------------------------
# Parsing rules
# ---------------------------------------------------------------------------


class RuleAction(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=5)
    category: Optional[str] = None
    importance: Optional[float] = Field(None, ge=0.0, le=1.0)
    keywords: List[str] = Field(default_factory=list)


class RuleCondition(BaseModel):
    # contains | not_contains | regex | min_length | max_length
    type: str
    value: Any = None


class ParsingRule(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    profession: Optional[str] = None
    rule_type: str = "keyword_detection"
    pattern: str
    action: RuleAction = Field(default_factory=RuleAction)
    conditions: List[RuleCondition] = Field(default_factory=list)
    priority_order: int = 100
    positive_examples: List[str] = Field(default_factory=list)
    negative_examples: List[str] = Field(default_factory=list)
    usage_count: int = Field(0, ge=0)
    success_count: int = Field(0, ge=0)
    is_active: bool = True

    @property
    def accuracy_rate(self) -> float:
        if self.usage_count == 0:
            return 0.0
        return round(self.success_count / self.usage_count * 100, 2)

    def applies_to(self, profession: Optional[str]) -> bool:
        return self.is_active and (self.profession is None or self.profession == profession)


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


class DueReminder(BaseModel):
    target: Literal["slot", "event"]
    target_id: str
    user_id: str
    title: str
    message: str
    start_at: datetime
    trigger_at: datetime
    priority_level: int = Field(3, ge=1, le=4)
    delivery_method: DeliveryMethod = "in_app"
