"""Turn orchestration engine.

One user turn flows through:
  1. TurnOrchestrator builds the prompt and calls the text service.
  2. The reply is parsed into a TurnResult (sosheiq.parser).
  3. EngagementTracker      - decay, clamp, low-engagement streak.
  4. GoalLifecycleManager   - stated/dynamic goal, achieved-then-cleared.
  5. ActionLifecycleManager - monotonic progress, 100-then-cleared, pause.
  6. visuals                - copy-forward of stable fields, image decision.
  7. The image service runs when the visuals warrant a new picture.

Every tracker is a pure function of (previous value, proposal). The
orchestrator composes their results into a new frozen SessionState.
"""

from .actions import ActionLifecycleManager, ActionUpdate  # noqa: F401
from .engagement import EngagementTracker, EngagementUpdate  # noqa: F401
from .goals import GoalLifecycleManager, GoalUpdate  # noqa: F401
from .orchestrator import TurnOrchestrator, to_second_person  # noqa: F401
from .visuals import (  # noqa: F401
    changed_fields,
    reconcile,
    should_generate_image,
)
