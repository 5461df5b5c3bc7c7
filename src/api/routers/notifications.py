import logging
from typing import Optional

from fastapi import APIRouter, Depends
from datetime import datetime

from api.dependencies import get_services
from api.state import Services

router = APIRouter(prefix="/notifications", tags=["notifications"])
logger = logging.getLogger(__name__)


@router.get("/due")
async def due_notifications(
    now: Optional[datetime] = None,
    services: Services = Depends(get_services),
) -> dict:
    due = await services.notifications.due_notifications(now)
    return {
        "notifications": [r.model_dump(mode="json") for r in due],
        "total": len(due),
    }


@router.post("/slots/{slot_id}/sent")
async def mark_slot_sent(slot_id: str, services: Services = Depends(get_services)) -> dict:
    changed = await services.notifications.mark_slot_sent(slot_id)
    return {"slot_id": slot_id, "changed": changed}


@router.post("/events/{event_id}/sent")
async def mark_event_sent(event_id: str, services: Services = Depends(get_services)) -> dict:
    changed = await services.notifications.mark_event_sent(event_id)
    return {"event_id": event_id, "changed": changed}
