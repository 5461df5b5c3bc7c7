from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from schedule_ai.models import ParsedFields, naive_local

logger = logging.getLogger(__name__)

# header aliases, compared case-insensitively
TITLE_COLUMNS = ("title", "event", "subject")
DESCRIPTION_COLUMNS = ("description", "notes", "details")
LOCATION_COLUMNS = ("location", "venue", "place")
START_COLUMNS = ("start date", "startdate", "date", "datetime")
END_COLUMNS = ("end date", "enddate", "end_time")
PRIORITY_COLUMNS = ("priority", "importance")

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y",
)

_PRIORITY_LABELS = {
    "critical": 1,
    "urgent": 1,
    "asap": 1,
    "high": 2,
    "important": 2,
    "medium": 3,
    "normal": 3,
    "low": 4,
    "minor": 5,
}

_datetime_adapter = TypeAdapter(datetime)


@dataclass
class ColumnExtraction:
    fields: ParsedFields = field(default_factory=ParsedFields)
    warnings: List[str] = field(default_factory=list)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Best-effort date parsing for spreadsheet cells; naive result or None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        parsed = None
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            # bare numbers would be read as unix timestamps
            if text.isdigit():
                return None
            try:
                parsed = _datetime_adapter.validate_python(text)
            except PydanticValidationError:
                return None
    return naive_local(parsed)


def parse_priority(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = int(value)
    else:
        text = str(value).strip().lower()
        if not text:
            return None
        if text in _PRIORITY_LABELS:
            return _PRIORITY_LABELS[text]
        try:
            number = int(float(text))
        except ValueError:
            return None
    return number if 1 <= number <= 5 else None


def _lookup(row: Mapping[str, Any], aliases: tuple) -> Any:
    lowered = {str(k).strip().lower(): v for k, v in row.items()}
    for alias in aliases:
        value = lowered.get(alias)
        if value is not None and str(value).strip() != "":
            return value
    return None


def extract_columns(row: Mapping[str, Any]) -> ColumnExtraction:
    """Map well-known spreadsheet columns onto candidate event fields."""
    result = ColumnExtraction()

    def _text(aliases: tuple) -> Optional[str]:
        value = _lookup(row, aliases)
        return str(value) if value is not None else None

    values: Dict[str, Any] = {
        "title": _text(TITLE_COLUMNS),
        "description": _text(DESCRIPTION_COLUMNS),
        "location": _text(LOCATION_COLUMNS),
    }

    for name, aliases in (("start_at", START_COLUMNS), ("end_at", END_COLUMNS)):
        raw = _lookup(row, aliases)
        if raw is None:
            continue
        parsed = parse_datetime(raw)
        if parsed is None:
            msg = f"Unparsable {name} value {raw!r}"
            logger.warning(msg)
            result.warnings.append(msg)
        values[name] = parsed

    raw_priority = _lookup(row, PRIORITY_COLUMNS)
    if raw_priority is not None:
        values["priority"] = parse_priority(raw_priority)
        if values["priority"] is None:
            result.warnings.append(f"Unrecognised priority {raw_priority!r}")

    result.fields = ParsedFields(**values)
    return result
