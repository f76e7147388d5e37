# api/sessions.py
from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict

from api.security import require_session

router = APIRouter(prefix="/api/session", tags=["session"])


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    created_at: datetime
    last_seen_at: datetime


@router.post("", response_model=SessionOut)
def create_session(request: Request):
    return request.app.state.store.create_session()


@router.get("", response_model=SessionOut)
def current_session(request: Request, session_id: str = Depends(require_session)):
    # require_session already refreshed last_seen_at
    return request.app.state.store.touch_session(session_id)
