"""Normalisation of loosely-shaped task dicts into ``TaskInput``."""

from __future__ import annotations

import re
from typing import Any, Iterable, List, Mapping, Optional

from schedule_ai.errors import ValidationError
from schedule_ai.models import PreferredTime, PriorityLabel, TaskInput

DEFAULT_DURATIONS = {"critical": 60, "high": 60, "medium": 45, "low": 30}

_PRIORITY_SYNONYMS = {
    "critical": "critical",
    "urgent": "critical",
    "asap": "critical",
    "high": "high",
    "important": "high",
    "medium": "medium",
    "normal": "medium",
    "low": "low",
    "minor": "low",
}

_DURATION = re.compile(
    r"^\s*(?:(?P<h>\d+(?:\.\d+)?)\s*h(?:ours?|rs?)?)?\s*(?:(?P<m>\d+)\s*m(?:in(?:utes?|s)?)?)?\s*$",
    re.IGNORECASE,
)


def normalize_priority(value: Any) -> PriorityLabel:
    if isinstance(value, bool) or value is None:
        return "medium"
    if isinstance(value, (int, float)):
        n = int(value)
        if n <= 1:
            return "critical"
        if n == 2:
            return "high"
        if n == 3:
            return "medium"
        return "low"
    text = str(value).strip().lower()
    if text.isdigit():
        return normalize_priority(int(text))
    return _PRIORITY_SYNONYMS.get(text, "medium")


def parse_duration(value: Any, priority: PriorityLabel = "medium") -> int:
    """Minutes from ints, digit strings or "1h30m" style strings; priority default otherwise."""
    default = DEFAULT_DURATIONS[priority]
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value) if value >= 1 else default
    text = str(value).strip()
    if text.isdigit():
        return int(text) if int(text) >= 1 else default
    m = _DURATION.match(text)
    if m is None or not (m.group("h") or m.group("m")):
        return default
    minutes = round(float(m.group("h") or 0) * 60) + int(m.group("m") or 0)
    return minutes if minutes >= 1 else default


def detect_preferred_time(*texts: Optional[str]) -> Optional[PreferredTime]:
    blob = " ".join(t for t in texts if t).lower()
    if "morning" in blob:
        return "morning"
    if "afternoon" in blob:
        return "afternoon"
    if "evening" in blob or "night" in blob:
        return "evening"
    return None


def normalize_task(raw: Mapping[str, Any]) -> TaskInput:
    title = str(raw.get("title") or raw.get("name") or "").strip()
    if not title:
        raise ValidationError("Task title is required", field="title")
    description = str(raw.get("description") or "")
    priority = normalize_priority(raw.get("priority"))
    duration = parse_duration(raw.get("duration_minutes", raw.get("duration")), priority)

    preferred = raw.get("preferred_time")
    if preferred not in ("morning", "afternoon", "evening"):
        preferred = detect_preferred_time(title, description)

    data = {
        "title": title,
        "description": description,
        "duration_minutes": duration,
        "priority": priority,
        "preferred_time": preferred,
        "category": str(raw.get("category") or "general"),
    }
    if raw.get("id") is not None:
        data["id"] = str(raw["id"])
    return TaskInput(**data)


def normalize_tasks(raw_tasks: Iterable[Mapping[str, Any]]) -> List[TaskInput]:
    tasks = [normalize_task(raw) for raw in raw_tasks]
    ids = [t.id for t in tasks]
    if len(set(ids)) != len(ids):
        raise ValidationError("Task ids must be unique", field="id")
    return tasks
