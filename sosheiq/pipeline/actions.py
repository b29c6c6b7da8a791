"""Active-action lifecycle: one long-running activity with monotonic progress.

States:  None -> Active -> (Paused <-> Active) -> Completing(100) -> None

Rules:
  - A proposal is accepted only if its description matches the active action,
    or if no action is active (which starts a new one).
  - progress = max(current, proposed). A lower proposal is a non-authoritative
    hint and is floored at the current value, not rejected.
  - `paused` is set by the orchestrator (user pause/resume), never by the
    text service. Progress updates still apply while paused.
  - Fast-forward forces the active action to 100.
  - At 100 the action is kept for one more turn with pending_clear raised, so
    exactly one caller observes the completed state. The next turn removes it
    before considering that turn's proposal; a proposal that repeats the
    completed action's description on that turn is ignored.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

from sosheiq.errors import InvariantViolation
from sosheiq.models import ActionProposal, ActiveAction, clamp

logger = logging.getLogger(__name__)


def _same(a: str | None, b: str | None) -> bool:
    if a is None or b is None:
        return False
    return " ".join(a.casefold().split()) == " ".join(b.casefold().split())


class ActionUpdate(NamedTuple):
    action: ActiveAction | None
    pending_clear: bool


class ActionLifecycleManager:
    def advance(
        self,
        action: ActiveAction | None,
        proposal: ActionProposal | None,
        *,
        pending_clear: bool = False,
        fast_forward: bool = False,
    ) -> ActionUpdate:
        completed: str | None = None
        if pending_clear:
            completed = action.description if action is not None else None
            if action is not None:
                logger.info("Action completed and cleared: %r", action.description)
            action = None

        if action is not None and action.progress == 100:
            violation = InvariantViolation(
                f"action {action.description!r} at 100% without pending_clear"
            )
            logger.warning("%s; clearing it now", violation)
            completed = action.description
            action = None

        if proposal is not None and proposal.description.strip():
            action = self._apply(action, proposal, completed)

        if fast_forward and action is not None and action.progress < 100:
            logger.info("Fast-forwarding action %r", action.description)
            action = action.model_copy(update={"progress": 100})

        return ActionUpdate(action, action is not None and action.progress == 100)

    def _apply(
        self,
        action: ActiveAction | None,
        proposal: ActionProposal,
        completed: str | None,
    ) -> ActiveAction | None:
        proposed = clamp(proposal.progress)

        if action is None:
            if _same(proposal.description, completed):
                logger.debug("Ignoring echo of completed action %r", proposal.description)
                return None
            logger.info("Action started: %r at %d%%", proposal.description, proposed)
            return ActiveAction(description=proposal.description.strip(), progress=proposed)

        if not _same(proposal.description, action.description):
            logger.warning(
                "Ignoring proposal for %r while %r is active",
                proposal.description, action.description,
            )
            return action

        if proposed < action.progress:
            logger.debug(
                "Flooring progress for %r: proposed %d < current %d",
                action.description, proposed, action.progress,
            )
            return action
        return action.model_copy(update={"progress": proposed})

    @staticmethod
    def set_paused(action: ActiveAction | None, paused: bool) -> ActiveAction | None:
        if action is None or action.paused == paused:
            return action
        return action.model_copy(update={"paused": paused})
