import logging
from dataclasses import asdict
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_services
from api.state import Services
from schedule_ai.errors import NotFoundError
from schedule_ai.models import AiScheduleAnalysis, SchedulePreferences
from scheduling.tasks import normalize_tasks

router = APIRouter(prefix="/schedule", tags=["schedule"])
logger = logging.getLogger(__name__)


class OptimizeIn(BaseModel):
    user_id: str
    tasks: List[Dict[str, Any]]
    target_date: Optional[date] = None
    preferences: Optional[SchedulePreferences] = None
    timeout_s: Optional[float] = Field(None, gt=0)


class ApproveIn(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    feedback: Optional[str] = None


class RetryIn(BaseModel):
    timeout_s: Optional[float] = Field(None, gt=0)


async def _with_slots(services: Services, analysis: AiScheduleAnalysis) -> dict:
    slots = await services.optimizer.slots_for(analysis.id)
    data = analysis.model_dump(mode="json")
    data["slots"] = [s.model_dump(mode="json") for s in slots]
    return data


@router.post("/optimize")
async def optimize_schedule(payload: OptimizeIn, services: Services = Depends(get_services)) -> dict:
    tasks = normalize_tasks(payload.tasks)
    preferences = payload.preferences or services.preferences.load(payload.user_id)
    analysis = await services.optimizer.optimize(
        payload.user_id,
        tasks,
        preferences,
        payload.target_date,
        payload.timeout_s,
    )
    return await _with_slots(services, analysis)


@router.get("/analyses/latest")
async def latest_analysis(user_id: str, target_date: date, services: Services = Depends(get_services)) -> dict:
    analysis = await services.optimizer.latest_completed(user_id, target_date)
    if analysis is None:
        raise NotFoundError("AiScheduleAnalysis", f"{user_id}@{target_date.isoformat()}")
    return await _with_slots(services, analysis)


@router.get("/analyses/{analysis_id}")
async def get_analysis(analysis_id: str, services: Services = Depends(get_services)) -> dict:
    analysis = await services.analyses.get_analysis(analysis_id)
    return await _with_slots(services, analysis)


@router.post("/analyses/{analysis_id}/approve")
async def approve_analysis(
    analysis_id: str,
    payload: Optional[ApproveIn] = None,
    services: Services = Depends(get_services),
) -> dict:
    payload = payload or ApproveIn()
    analysis = await services.optimizer.approve(analysis_id, payload.rating, payload.feedback)
    return analysis.model_dump(mode="json")


@router.post("/analyses/{analysis_id}/retry")
async def retry_analysis(
    analysis_id: str,
    payload: Optional[RetryIn] = None,
    services: Services = Depends(get_services),
) -> dict:
    payload = payload or RetryIn()
    analysis = await services.optimizer.retry(analysis_id, payload.timeout_s)
    return await _with_slots(services, analysis)


@router.get("/conflicts")
async def get_conflicts(user_id: str, target_date: date, services: Services = Depends(get_services)) -> dict:
    conflicts = await services.optimizer.conflicts(user_id, target_date)
    return {
        "user_id": user_id,
        "date": target_date.isoformat(),
        "conflicts": [asdict(c) for c in conflicts],
    }


@router.post("/slots/{slot_id}/confirm")
async def confirm_slot(slot_id: str, services: Services = Depends(get_services)) -> dict:
    slot = await services.optimizer.confirm_slot(slot_id)
    return slot.model_dump(mode="json")


@router.post("/slots/{slot_id}/complete")
async def complete_slot(slot_id: str, services: Services = Depends(get_services)) -> dict:
    slot = await services.optimizer.complete_slot(slot_id)
    return slot.model_dump(mode="json")


@router.post("/slots/{slot_id}/cancel")
async def cancel_slot(slot_id: str, services: Services = Depends(get_services)) -> dict:
    slot = await services.optimizer.cancel_slot(slot_id)
    return slot.model_dump(mode="json")


@router.post("/slots/{slot_id}/event")
async def materialize_slot_event(slot_id: str, services: Services = Depends(get_services)) -> dict:
    event = await services.optimizer.materialize_event(slot_id)
    return event.model_dump(mode="json")


@router.get("/preferences/{user_id}")
async def get_preferences(user_id: str, services: Services = Depends(get_services)) -> dict:
    return services.preferences.load(user_id).model_dump(mode="json")


@router.put("/preferences/{user_id}")
async def put_preferences(
    user_id: str,
    payload: SchedulePreferences,
    services: Services = Depends(get_services),
) -> dict:
    services.preferences.save(user_id, payload)
    logger.info(f"Saved schedule preferences for {user_id}")
    return payload.model_dump(mode="json")
