# api/security.py
from typing import Optional

from fastapi import Header, Request

from common.errors import InvalidRequest


def require_session(request: Request, x_session_id: Optional[str] = Header(None)) -> str:
    """Resolve the caller's session from X-Session-Id and refresh last_seen_at."""
    if not x_session_id or not x_session_id.strip():
        raise InvalidRequest("Missing X-Session-Id header")
    session = request.app.state.store.touch_session(x_session_id.strip())
    return session.id
