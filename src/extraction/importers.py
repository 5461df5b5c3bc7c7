"""Split uploaded or pasted content into raw rows, one per future record."""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from schedule_ai.errors import ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("csv", "excel", "json", "text")


@dataclass
class RawRow:
    row_number: int
    raw_text: str
    original_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_structured(self) -> bool:
        return bool(self.original_data)


def apply_field_mapping(row: Mapping[str, Any], mapping: Optional[Mapping[str, str]]) -> Dict[str, Any]:
    """Rename source columns per ``mapping``; unmapped columns are kept."""
    if not mapping:
        return dict(row)
    out: Dict[str, Any] = {}
    for key, value in row.items():
        out[mapping.get(key, key)] = value
    return out


def _row_text(row: Mapping[str, Any]) -> str:
    return ", ".join(str(v).strip() for v in row.values() if v is not None and str(v).strip())


def parse_csv(content: str, mapping: Optional[Mapping[str, str]] = None) -> List[RawRow]:
    reader = csv.DictReader(io.StringIO(content))
    if reader.fieldnames is None:
        return []
    rows: List[RawRow] = []
    for raw in reader:
        # short rows get None, long rows spill into the None key
        cells = {k.strip(): (v.strip() if isinstance(v, str) else v) for k, v in raw.items() if k is not None}
        if not any(v for v in cells.values()):
            continue
        data = apply_field_mapping(cells, mapping)
        rows.append(RawRow(row_number=reader.line_num, raw_text=_row_text(data), original_data=data))
    return rows


def parse_json(content: str, mapping: Optional[Mapping[str, str]] = None) -> List[RawRow]:
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON content: {e}", field="content") from e

    items = payload if isinstance(payload, list) else [payload]
    rows: List[RawRow] = []
    for i, item in enumerate(items, start=1):
        if isinstance(item, dict):
            data = apply_field_mapping(item, mapping)
            rows.append(RawRow(row_number=i, raw_text=_row_text(data), original_data=data))
        else:
            rows.append(RawRow(row_number=i, raw_text=str(item), original_data={"value": item}))
    return rows


def parse_text(content: str) -> List[RawRow]:
    rows: List[RawRow] = []
    for i, line in enumerate(content.splitlines(), start=1):
        text = line.strip()
        if text:
            rows.append(RawRow(row_number=i, raw_text=text))
    return rows


def parse_content(
    content: str,
    declared_format: str,
    field_mapping: Optional[Mapping[str, str]] = None,
) -> List[RawRow]:
    fmt = (declared_format or "").lower()
    if fmt in ("csv", "excel"):
        # spreadsheet uploads arrive exported as CSV text
        return parse_csv(content, field_mapping)
    if fmt == "json":
        return parse_json(content, field_mapping)
    if fmt == "text":
        return parse_text(content)
    raise ValidationError(f"Unsupported import format: {declared_format}", field="declared_format")


def detect_format(content: str) -> str:
    """Guess the content format; used to fill ``detected_format`` on a batch."""
    stripped = content.lstrip()
    if stripped.startswith(("[", "{")):
        try:
            json.loads(stripped)
            return "json"
        except json.JSONDecodeError:
            pass
    lines = [ln for ln in stripped.splitlines() if ln.strip()]
    if len(lines) >= 2:
        commas = lines[0].count(",")
        if commas > 0 and lines[1].count(",") == commas:
            return "csv"
    return "text"
