from fastapi import HTTPException

from api import state
from api.state import Services


def get_services() -> Services:
    if state.services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return state.services
