"""Auth routes.

GET /auth/session — The caller's materialized session (user + organization binding).
"""

from fastapi import APIRouter, Depends

from security_manager.api.dependencies import require_session
from security_manager.api.schemas import SessionView
from security_manager.services.sessions import UserSession

router = APIRouter()


@router.get("/session", response_model=SessionView)
async def get_session(session: UserSession = Depends(require_session)):
    return SessionView.from_session(session)
