"""FastAPI API endpoints under /api.

Endpoint groups: sessions (start, inspect, turns, action pause/resume, end,
discard). All of them go through the SessionManager on app.state.sessions.
"""

from fastapi import APIRouter

from .sessions import router as sessions_router

router = APIRouter()
router.include_router(sessions_router)
