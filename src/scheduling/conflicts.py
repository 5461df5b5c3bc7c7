from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Literal, Sequence

from schedule_ai.models import OptimizedScheduleSlot

MIN_BREAK = timedelta(minutes=5)


@dataclass
class SlotConflict:
    type: Literal["overlap", "insufficient_break"]
    slot_ids: List[str] = field(default_factory=list)
    message: str = ""


def find_conflicts(slots: Sequence[OptimizedScheduleSlot]) -> List[SlotConflict]:
    """Check consecutive scheduled slots for overlaps and too-short breaks."""
    ordered = sorted(
        (s for s in slots if s.status == "scheduled"),
        key=lambda s: s.start_datetime,
    )
    conflicts: List[SlotConflict] = []
    for current, nxt in zip(ordered, ordered[1:]):
        gap = nxt.start_datetime - current.end_datetime
        if gap < timedelta(0):
            conflicts.append(
                SlotConflict(
                    type="overlap",
                    slot_ids=[current.id, nxt.id],
                    message=f"'{current.task_title}' conflicts with '{nxt.task_title}'",
                )
            )
        elif gap < MIN_BREAK:
            conflicts.append(
                SlotConflict(
                    type="insufficient_break",
                    slot_ids=[current.id, nxt.id],
                    message=f"No break between '{current.task_title}' and '{nxt.task_title}'",
                )
            )
    return conflicts
