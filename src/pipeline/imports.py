from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Mapping, Optional

from extraction.columns import extract_columns
from extraction.importers import RawRow, detect_format, parse_content
from schedule_ai.models import Clock, ImportBatch, ParsedFields, ScheduleRecord
from storage.base import ImportStore

logger = logging.getLogger(__name__)


class ImportService:
    """Turns uploaded or pasted content into an ImportBatch and its records."""

    def __init__(self, imports: ImportStore, clock: Clock = datetime.now):
        self.imports = imports
        self.clock = clock

    def _record_for(self, batch: ImportBatch, row: RawRow) -> ScheduleRecord:
        parsed = ParsedFields()
        warnings: List[str] = []
        if row.is_structured:
            extraction = extract_columns(row.original_data)
            parsed = extraction.fields
            warnings = extraction.warnings
        return ScheduleRecord(
            batch_id=batch.id,
            user_id=batch.user_id,
            row_number=row.row_number,
            raw_text=row.raw_text,
            original_data=row.original_data,
            parsed=parsed,
            parsing_errors=warnings,
            updated_at=self.clock(),
        )

    async def create_batch(
        self,
        user_id: str,
        content: str,
        declared_format: str = "text",
        source_kind: str = "manual",
        original_filename: Optional[str] = None,
        profession: Optional[str] = None,
        field_mapping: Optional[Mapping[str, str]] = None,
    ) -> ImportBatch:
        rows = parse_content(content, declared_format, field_mapping)

        batch = ImportBatch(
            user_id=user_id,
            source_kind=source_kind,
            declared_format=declared_format,
            original_filename=original_filename,
            byte_size=len(content.encode("utf-8")),
            raw_content=content,
            profession=profession,
            total_found=len(rows),
            detected_format=detect_format(content),
            created_at=self.clock(),
        )
        records = [self._record_for(batch, row) for row in rows]

        saved = await self.imports.create_batch(batch, records)
        logger.info(
            f"Import batch {saved.id} created for user {user_id}: "
            f"{len(records)} records from {declared_format} content"
        )
        return saved
