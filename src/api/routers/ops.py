import os

from fastapi import APIRouter, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from api import state
from schedule_ai.config import USE_POSTGRES
from storage import db

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint for container orchestration."""
    health = {
        "status": "healthy" if state.services is not None else "starting",
        "profile": os.getenv("DEPLOYMENT_PROFILE", "unknown"),
        "storage": "postgres" if USE_POSTGRES else "in-memory",
    }

    if USE_POSTGRES:
        db_health = await db.health_check()
        health["database"] = db_health
        if db_health["status"] != "healthy":
            health["status"] = "degraded"

    return health


@router.get("/metrics")
async def metrics() -> Response:
    """
    Prometheus scrape endpoint.
    """
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
