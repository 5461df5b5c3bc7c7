from __future__ import annotations
from datetime import datetime, time
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator, model_validator

from schedule_ai.models import PriorityLabel


class RecordAnalysisResult(BaseModel):
    """What the model returns for one raw schedule entry."""
    title: Optional[str] = None
    description: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    location: Optional[str] = None
    priority: Optional[int] = Field(default=None, ge=1, le=5)
    category: Optional[str] = None
    importance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    keywords: List[str] = Field(default_factory=list)


class SlotPayload(BaseModel):
    task_id: str
    task_title: str = Field(..., min_length=1)
    start_time: time
    end_time: time
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    priority: PriorityLabel = "medium"
    location: Optional[str] = None
    category: Optional[str] = None
    reasoning: Optional[str] = None
    suitability_score: Optional[float] = None
    can_be_rescheduled: bool = False
    reminder_minutes_before: Optional[int] = Field(default=None, ge=0)

    @field_validator("priority", mode="before")
    @classmethod
    def lower_priority(cls, v):
        return v.lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def end_after_start(self) -> "SlotPayload":
        if self.end_time <= self.start_time:
            raise ValueError(f"slot for task {self.task_id} ends before it starts")
        return self

    @property
    def minutes(self) -> int:
        if self.duration_minutes is not None:
            return self.duration_minutes
        start = self.start_time.hour * 60 + self.start_time.minute
        end = self.end_time.hour * 60 + self.end_time.minute
        return end - start


class OptimizationSummary(BaseModel):
    total_productive_time: Optional[int] = None
    break_time: Optional[int] = None
    utilization_rate: Optional[float] = None
    high_priority_coverage: Optional[float] = None
    recommendations: List[str] = Field(default_factory=list)


class ScheduleOptimizationResult(BaseModel):
    schedule_slots: List[SlotPayload] = Field(default_factory=list)
    optimization_summary: OptimizationSummary = Field(default_factory=OptimizationSummary)
    # tasks the model explicitly could not place
    unplaced_task_ids: List[str] = Field(default_factory=list)
