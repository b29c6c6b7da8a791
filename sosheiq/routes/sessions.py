"""Conversation session endpoints: start, turns, action pause, end."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from sosheiq.errors import (
    EngineError,
    MalformedResponse,
    ServiceError,
    SessionEnded,
    SessionNotFound,
    TurnInProgress,
    error_message_for,
)
from sosheiq.models import Scenario
from sosheiq.sessions import Session, SessionManager

from .models import ActionBody, TurnBody

router = APIRouter()


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def _session_view(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "state": session.state.model_dump(mode="json"),
        "messages": [m.model_dump(mode="json") for m in session.history],
        "ended": session.ended,
        "end_reason": session.end_reason,
    }


def _http_error(
    e: EngineError, retry_input: str | None = None, retry_gesture: str | None = None,
) -> HTTPException:
    if isinstance(e, SessionNotFound):
        return HTTPException(404, "Session not found")
    entry = error_message_for(e)
    if isinstance(e, (TurnInProgress, SessionEnded)):
        return HTTPException(409, {"code": entry.code, "title": entry.title,
                                   "message": entry.user_message})
    if isinstance(e, (MalformedResponse, ServiceError)):
        return HTTPException(502, {
            "code": entry.code,
            "title": entry.title,
            "message": entry.user_message,
            "severity": entry.severity,
            "retry_input": retry_input,
            "retry_gesture": retry_gesture,
        })
    return HTTPException(500, {"code": entry.code, "message": str(e)})


@router.post("/sessions", status_code=201)
async def start_session(scenario: Scenario, sessions: SessionManager = Depends(get_sessions)):
    """Start a conversation from a scenario; returns the opening state and messages."""
    try:
        session = await sessions.start(scenario)
    except EngineError as e:
        raise _http_error(e)
    return _session_view(session)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, sessions: SessionManager = Depends(get_sessions)):
    """Current state and full message history of a session."""
    try:
        session = sessions.get(session_id)
    except SessionNotFound as e:
        raise _http_error(e)
    return _session_view(session)


@router.post("/sessions/{session_id}/turns")
async def send_turn(session_id: str, body: TurnBody, sessions: SessionManager = Depends(get_sessions)):
    """Send a user message, a gesture, or both (or the silent-continue token) and run one turn."""
    try:
        reply, outcome = await sessions.turn(
            session_id, body.message, gesture=body.gesture, fast_forward=body.fast_forward,
        )
    except EngineError as e:
        raise _http_error(e, retry_input=body.message, retry_gesture=body.gesture)
    except ValueError as e:
        raise HTTPException(400, str(e))
    session = sessions.get(session_id)
    return {
        "state": session.state.model_dump(mode="json"),
        "gesture_message": outcome.gesture_message.model_dump(mode="json") if outcome.gesture_message else None,
        "user_message": outcome.user_message.model_dump(mode="json"),
        "reply": reply.model_dump(mode="json"),
        "outcome": outcome.model_dump(mode="json", exclude={"user_message", "gesture_message"}),
    }


@router.post("/sessions/{session_id}/action")
async def set_action_paused(session_id: str, body: ActionBody, sessions: SessionManager = Depends(get_sessions)):
    """Pause or resume the active action."""
    try:
        session = sessions.set_paused(session_id, body.paused)
    except EngineError as e:
        raise _http_error(e)
    action = session.state.active_action
    return {"active_action": action.model_dump(mode="json") if action else None}


@router.post("/sessions/{session_id}/end")
async def end_session(session_id: str, sessions: SessionManager = Depends(get_sessions)):
    """Generate the analysis report; the session is discarded afterwards."""
    try:
        report = await sessions.end(session_id)
    except EngineError as e:
        raise _http_error(e)
    return report.model_dump(mode="json", by_alias=True)


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, sessions: SessionManager = Depends(get_sessions)):
    """Discard a session without analysis."""
    try:
        sessions.discard(session_id)
    except SessionNotFound as e:
        raise _http_error(e)
    return {"ok": True}
