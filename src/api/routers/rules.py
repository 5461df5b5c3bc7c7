import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends

from api.dependencies import get_services
from api.state import Services
from extraction.rules import test_with_examples
from schedule_ai.models import ParsingRule

router = APIRouter(prefix="/rules", tags=["rules"])
logger = logging.getLogger(__name__)


@router.get("")
async def list_rules(profession: Optional[str] = None, services: Services = Depends(get_services)) -> dict:
    rules = await services.rules.list_rules(profession)
    return {"rules": [r.model_dump(mode="json") for r in rules], "total": len(rules)}


@router.post("")
async def save_rule(rule: ParsingRule, services: Services = Depends(get_services)) -> dict:
    saved = await services.rules.save_rule(rule)
    logger.info(f"Saved parsing rule {saved.id} ({saved.name})")
    return saved.model_dump(mode="json")


@router.post("/test")
async def test_rule(rule: ParsingRule) -> dict:
    report = test_with_examples(rule)
    return {**asdict(report), "passed": report.passed}
