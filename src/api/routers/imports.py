import logging
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_services
from api.state import Services
from pipeline.ai_analysis import ProcessOptions
from schedule_ai.models import DeclaredFormat, SourceKind
from storage.base import RecordQuery

router = APIRouter(prefix="/imports", tags=["imports"])
logger = logging.getLogger(__name__)


class ImportIn(BaseModel):
    user_id: str
    content: str
    declared_format: DeclaredFormat = "text"
    source_kind: SourceKind = "manual"
    original_filename: Optional[str] = None
    profession: Optional[str] = None
    field_mapping: Optional[Dict[str, str]] = None


class ProcessIn(BaseModel):
    min_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    limit: Optional[int] = Field(None, ge=1)
    max_attempts: Optional[int] = Field(None, ge=1)
    timeout_s: Optional[float] = Field(None, gt=0)
    concurrency: Optional[int] = Field(None, ge=1)


class ConvertIn(BaseModel):
    min_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    record_ids: Optional[List[str]] = None


@router.post("")
async def create_import(payload: ImportIn, services: Services = Depends(get_services)) -> dict:
    batch = await services.import_service.create_batch(
        user_id=payload.user_id,
        content=payload.content,
        declared_format=payload.declared_format,
        source_kind=payload.source_kind,
        original_filename=payload.original_filename,
        profession=payload.profession,
        field_mapping=payload.field_mapping,
    )
    return batch.model_dump(mode="json", exclude={"raw_content"})


@router.get("/{batch_id}")
async def get_import(batch_id: str, services: Services = Depends(get_services)) -> dict:
    batch = await services.imports.get_batch(batch_id)
    data = batch.model_dump(mode="json", exclude={"raw_content"})
    data["success_rate"] = batch.success_rate
    return data


@router.get("/{batch_id}/records")
async def list_import_records(
    batch_id: str,
    status: Optional[Literal["pending", "parsed", "converted", "failed"]] = None,
    manual_review_only: bool = False,
    services: Services = Depends(get_services),
) -> dict:
    await services.imports.get_batch(batch_id)
    records = await services.imports.list_records(
        RecordQuery(
            batch_id=batch_id,
            processing_statuses=[status] if status else None,
            manual_review_only=manual_review_only,
        )
    )
    return {
        "batch_id": batch_id,
        "records": [r.model_dump(mode="json") for r in records],
        "total": len(records),
    }


@router.post("/{batch_id}/process")
async def process_import(
    batch_id: str,
    payload: Optional[ProcessIn] = None,
    services: Services = Depends(get_services),
) -> dict:
    opts = ProcessOptions(**(payload or ProcessIn()).model_dump())
    result = await services.pipeline.process_batch(batch_id, opts)
    batch = await services.imports.get_batch(batch_id)
    return {"batch_id": batch_id, "status": batch.status, **vars(result)}


@router.post("/{batch_id}/convert")
async def convert_import(
    batch_id: str,
    payload: Optional[ConvertIn] = None,
    services: Services = Depends(get_services),
) -> dict:
    payload = payload or ConvertIn()
    result = await services.conversion.convert(batch_id, payload.min_confidence, payload.record_ids)
    return {"batch_id": batch_id, **vars(result)}
