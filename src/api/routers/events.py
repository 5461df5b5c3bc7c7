import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_services
from api.state import Services
from schedule_ai.models import Event

router = APIRouter(prefix="/events", tags=["events"])
logger = logging.getLogger(__name__)


class EventIn(BaseModel):
    user_id: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    priority: int = Field(3, ge=1, le=5)
    category: Optional[str] = None
    reminder_minutes_before: Optional[int] = Field(None, ge=0)


class AnalyzeIn(BaseModel):
    timeout_s: Optional[float] = Field(None, gt=0)
    profession: Optional[str] = None


@router.post("")
async def create_event(payload: EventIn, services: Services = Depends(get_services)) -> dict:
    event = await services.events.create_event(Event(**payload.model_dump(), source="manual"))
    logger.info(f"Created manual event {event.id} for {event.user_id}")
    return event.model_dump(mode="json")


@router.get("/{event_id}")
async def get_event(event_id: str, services: Services = Depends(get_services)) -> dict:
    event = await services.events.get_event(event_id)
    return event.model_dump(mode="json")


@router.post("/{event_id}/analyze")
async def analyze_event(
    event_id: str,
    payload: Optional[AnalyzeIn] = None,
    services: Services = Depends(get_services),
) -> dict:
    payload = payload or AnalyzeIn()
    event = await services.event_analysis.analyze_event(
        event_id, timeout_s=payload.timeout_s, profession=payload.profession
    )
    return event.model_dump(mode="json")


@router.post("/{event_id}/analysis/reset")
async def reset_event_analysis(event_id: str, services: Services = Depends(get_services)) -> dict:
    event = await services.event_analysis.reset_analysis(event_id)
    return event.model_dump(mode="json")
