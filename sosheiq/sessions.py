"""In-memory session registry.

Each session owns its SessionState and message history. Sessions share
nothing, so any number of them can run turns in parallel without locks.
Within one session turns are strictly sequential: a turn that arrives while
another is in flight is rejected with TurnInProgress.

A turn runs as its own task behind asyncio.shield(). If the caller is
cancelled (client disconnects), the external calls still finish, but the
result is thrown away and nothing is committed. The session stays busy
until that task is done.

Sessions live only as long as the process.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from sosheiq.errors import (
    EngineError,
    SessionEnded,
    SessionNotFound,
    TurnInProgress,
    error_message_for,
)
from sosheiq.models import (
    AnalysisReport,
    ChatMessage,
    DialogueChunk,
    EndReason,
    Scenario,
    SessionState,
    TurnOutcome,
)
from sosheiq.pipeline import TurnOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class Session:
    id: str
    state: SessionState
    history: list[ChatMessage] = field(default_factory=list)
    busy: bool = False
    ended: bool = False
    end_reason: EndReason | None = None


class SessionManager:
    def __init__(self, orchestrator: TurnOrchestrator) -> None:
        self.orchestrator = orchestrator
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"No session {session_id!r}")
        return session

    async def start(self, scenario: Scenario) -> Session:
        state, opening = await self.orchestrator.start_session(scenario)
        session = Session(id=uuid.uuid4().hex, state=state)
        if state.backstory:
            session.history.append(ChatMessage(
                sender="backstory",
                segments=(DialogueChunk(text=state.backstory, type="action"),),
            ))
        session.history.append(opening)
        self._sessions[session.id] = session
        logger.info("Session %s created (%d active)", session.id, len(self._sessions))
        return session

    def _check_idle(self, session: Session) -> None:
        if session.ended:
            raise SessionEnded(f"Session {session.id} has ended ({session.end_reason})")
        if session.busy:
            raise TurnInProgress(f"Session {session.id} already has a turn in flight")

    async def turn(
        self,
        session_id: str,
        user_input: str = "",
        *,
        gesture: str | None = None,
        fast_forward: bool = False,
    ) -> tuple[ChatMessage, TurnOutcome]:
        """Run one turn and commit it. Returns (persona message, outcome).

        On an engine failure a retryable system message is appended to the
        history and the error is re-raised.
        """
        session = self.get(session_id)
        self._check_idle(session)
        session.busy = True

        task = asyncio.ensure_future(self.orchestrator.process_turn(
            session.state, list(session.history), user_input, gesture=gesture, fast_forward=fast_forward,
        ))
        try:
            new_state, reply, outcome = await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.info("Turn for session %s cancelled; result will be discarded", session_id)
            task.add_done_callback(lambda t: self._release_cancelled(session, t))
            raise
        except EngineError as e:
            session.busy = False
            entry = error_message_for(e)
            session.history.append(ChatMessage(
                sender="system",
                segments=(DialogueChunk(text=entry.user_message),),
                retry_input=user_input,
                retry_gesture=gesture,
            ))
            logger.warning("Turn for session %s failed: %s: %s", session_id, type(e).__name__, e)
            raise
        except Exception:
            session.busy = False
            raise

        session.state = new_state
        if outcome.gesture_message is not None:
            session.history.append(outcome.gesture_message)
        session.history.extend([outcome.user_message, reply])
        if outcome.ended:
            session.ended = True
            session.end_reason = outcome.end_reason
            logger.info("Session %s ended: %s", session_id, outcome.end_reason)
        session.busy = False
        return reply, outcome

    @staticmethod
    def _release_cancelled(session: Session, task: asyncio.Future) -> None:
        session.busy = False
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Discarded turn for session %s had failed: %s", session.id, task.exception())

    def set_paused(self, session_id: str, paused: bool) -> Session:
        session = self.get(session_id)
        self._check_idle(session)
        session.state = self.orchestrator.set_action_paused(session.state, paused)
        return session

    async def end(self, session_id: str) -> AnalysisReport:
        """Generate the analysis report and discard the session.

        If the report cannot be generated the session is kept so the caller
        can try again.
        """
        session = self.get(session_id)
        if session.busy:
            raise TurnInProgress(f"Session {session.id} already has a turn in flight")
        session.busy = True
        try:
            report = await self.orchestrator.end_session(session.state, session.history)
        finally:
            session.busy = False
        self._sessions.pop(session_id, None)
        logger.info("Session %s analysed and discarded", session_id)
        return report

    def discard(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is None:
            raise SessionNotFound(f"No session {session_id!r}")
        logger.info("Session %s discarded", session_id)
