"""Goal lifecycle: the single conversational goal the user is working towards.

States:  None -> Stated/Proposed -> Active -> Achieved -> None

Two kinds of goal:

  stated   Set in the scenario. Its text is pinned for the whole session and
           only progress/achieved vary. Once achieved it is spent: it does not
           re-arm unless the scenario sets allow_goal_rearm.
  dynamic  Proposed by the text service (emergingGoal) when no stated goal is
           armed. A different proposal replaces the current goal. Dynamic
           goals re-arm freely.

Achievement is a two-step edge. The turn that sets achieved=true commits the
goal with achieved=True and raises pending_clear; the next turn clears it
before looking at that turn's proposal. On the clearing turn a proposal that
merely repeats the cleared text is ignored, so an echoing model cannot
resurrect the goal it just completed.

Progress is clamped to [0, 100] and is informational only.
"""

from __future__ import annotations

import logging
import re
from typing import NamedTuple

from sosheiq.errors import InvariantViolation
from sosheiq.models import ActiveGoal, GoalChange, Scenario, clamp

logger = logging.getLogger(__name__)

# Goals must be instructions to the user, not the persona's own intentions.
_PERSONA_PERSPECTIVE = re.compile(
    r"^\s*(i\b|i'm\b|my\b|me\b|as the ai\b)|\bthe user\b|\bthe ai\b",
    re.IGNORECASE,
)


def _same(a: str | None, b: str | None) -> bool:
    if a is None or b is None:
        return False
    return " ".join(a.casefold().split()) == " ".join(b.casefold().split())


class GoalUpdate(NamedTuple):
    goal: ActiveGoal | None
    pending_clear: bool
    stated_goal_spent: bool
    change: GoalChange | None


class GoalLifecycleManager:
    def __init__(self, stated_goal: str | None = None, allow_rearm: bool = False) -> None:
        self.stated_goal = stated_goal.strip() if stated_goal and stated_goal.strip() else None
        self.allow_rearm = allow_rearm

    @classmethod
    def for_scenario(cls, scenario: Scenario) -> "GoalLifecycleManager":
        return cls(scenario.conversation_goal, scenario.allow_goal_rearm)

    def initial(self) -> GoalUpdate:
        """Goal state at session start: the stated goal, if any, is active at 0%."""
        if self.stated_goal is None:
            return GoalUpdate(None, False, False, None)
        return GoalUpdate(
            ActiveGoal(text=self.stated_goal),
            False,
            False,
            GoalChange(type="new", to_text=self.stated_goal),
        )

    def advance(
        self,
        goal: ActiveGoal | None,
        *,
        pending_clear: bool = False,
        stated_goal_spent: bool = False,
        proposed_text: str | None = None,
        proposed_progress: int | None = None,
        proposed_achieved: bool = False,
    ) -> GoalUpdate:
        """Apply one turn's goal proposal.

        `proposed_progress` is None when the service did not report progress;
        the current value is then kept.
        """
        change: GoalChange | None = None
        cleared_text: str | None = None
        spent = stated_goal_spent

        if pending_clear:
            if goal is not None:
                cleared_text = goal.text
                change = GoalChange(type="cleared", from_text=goal.text)
                if _same(goal.text, self.stated_goal) and not self.allow_rearm:
                    spent = True
            goal = None

        # Armed stated goal: pinned text, service text ignored.
        if self.stated_goal is not None and not spent:
            if goal is None:
                goal = ActiveGoal(text=self.stated_goal)
                change = GoalChange(type="new", from_text=cleared_text, to_text=self.stated_goal)
            return self._progress(goal, proposed_progress, proposed_achieved, change, spent)

        text = (proposed_text or "").strip()
        if text and not self._accepts(text, cleared_text, spent):
            text = ""

        if not text or (goal is not None and _same(goal.text, text)):
            if goal is None:
                return GoalUpdate(None, False, spent, change)
            return self._progress(goal, proposed_progress, proposed_achieved, change, spent)

        previous = goal.text if goal is not None else cleared_text
        kind = "replaced" if goal is not None else "new"
        logger.info("Goal %s: %r -> %r", kind, previous, text)
        return self._progress(
            ActiveGoal(text=text),
            proposed_progress,
            proposed_achieved,
            GoalChange(type=kind, from_text=previous, to_text=text),
            spent,
        )

    def _accepts(self, text: str, cleared_text: str | None, spent: bool) -> bool:
        if _same(text, cleared_text):
            logger.debug("Ignoring echo of just-cleared goal %r", text)
            return False
        if spent and _same(text, self.stated_goal):
            logger.debug("Stated goal %r is spent and does not re-arm", text)
            return False
        if _PERSONA_PERSPECTIVE.search(text):
            logger.warning("Ignoring goal written from the persona's perspective: %r", text)
            return False
        return True

    def _progress(
        self,
        goal: ActiveGoal,
        proposed_progress: int | None,
        proposed_achieved: bool,
        change: GoalChange | None,
        spent: bool,
    ) -> GoalUpdate:
        if goal.achieved:
            # An achieved goal must be cleared on the following turn.
            violation = InvariantViolation(f"goal {goal.text!r} is already achieved")
            logger.warning("%s; keeping last known-good goal state", violation)
            return GoalUpdate(goal, True, spent, change)

        if proposed_achieved:
            achieved = goal.model_copy(update={"progress": 100, "achieved": True})
            logger.info("Goal achieved: %r", goal.text)
            return GoalUpdate(
                achieved,
                True,
                spent,
                GoalChange(type="achieved", from_text=change.from_text if change else None,
                           to_text=goal.text),
            )

        if proposed_progress is not None:
            progress = clamp(proposed_progress)
            if progress != goal.progress:
                goal = goal.model_copy(update={"progress": progress})
                if change is None:
                    change = GoalChange(type="progress", to_text=goal.text)
        return GoalUpdate(goal, False, spent, change)
