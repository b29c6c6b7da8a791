"""Turn orchestrator: runs one user turn end-to-end.

Turn flow:
  1. Build the turn context from the state, the last `history_window`
     messages and the user input, and render the turn template.
  2. Call the text service ("turn" stage) through the RetryPolicy.
  3. Parse the reply into a TurnResult. MalformedResponse propagates.
  4. Engagement -> goals -> actions -> visuals, each returning a partial
     update that is composed into a new SessionState.
  5. If the visuals warrant it, call the image service with a prompt built
     from the reconciled visuals. Failures reuse the previous image.
  6. Build the user-side message (with feedback) and the persona message.
  7. Annotate end conditions on the TurnOutcome.

Nothing is committed until every step succeeded: the caller gets the new
state back and decides whether to keep it. The input state is frozen and
never mutated, so a failed or cancelled turn leaves it as it was.

Silent turns: the input SILENT_USER_ACTION_TOKEN means "the user stays
silent / keeps doing what they were doing". The reply must carry an
inferred second-person action, which becomes a user_silent_action message
scored like a spoken turn.

Gestures: an optional non-verbal action sent with the dialogue is stored as
its own user_silent_action message ahead of the spoken one. A gesture sent
alone takes the feedback itself.
"""

from __future__ import annotations

import logging
import random
import re
from collections.abc import Sequence

from sosheiq.config import Settings
from sosheiq.errors import ImageGenerationFailed, MalformedResponse
from sosheiq.images import ImageService
from sosheiq.llm import LLM
from sosheiq.models import (
    AnalysisReport,
    ChatMessage,
    DialogueChunk,
    EstablishedVisuals,
    FeedbackBlock,
    Scenario,
    SessionState,
    StartResult,
    TurnFeedback,
    TurnOutcome,
)
from sosheiq.parser import (
    parse_analysis_report,
    parse_start_response,
    parse_turn_response,
)
from sosheiq.prompts import (
    DEFAULT_ANALYSIS_PROMPT,
    DEFAULT_START_PROMPT,
    DEFAULT_TURN_PROMPT,
    SILENT_USER_ACTION_TOKEN,
    build_analysis_context,
    build_image_prompt,
    build_start_context,
    build_turn_context,
    infer_missing_persona_details,
    render_prompt,
)
from sosheiq.retry import RetryPolicy

from . import visuals as visual_tracker
from .actions import ActionLifecycleManager
from .engagement import EngagementTracker
from .goals import GoalLifecycleManager

logger = logging.getLogger(__name__)

SILENT_FALLBACK_ACTION = "you wait quietly"


# ---------------------------------------------------------------------------
# Silent-action normalisation
# ---------------------------------------------------------------------------

_THIRD_PERSON_SUBJECT = re.compile(r"^(the user|user|he|she|they)\s+", re.IGNORECASE)
_FIRST_PERSON = {
    "i": "you", "i'm": "you're", "i've": "you've", "i'll": "you'll", "my": "your",
    "he's": "you're", "she's": "you're", "they're": "you're",
}
_IRREGULAR = {
    "is": "are", "was": "were", "has": "have", "does": "do",
    "isn't": "aren't", "wasn't": "weren't", "hasn't": "haven't", "doesn't": "don't",
    "focuses": "focus", "refocuses": "refocus",
}


def _base_form(verb: str) -> str:
    lower = verb.lower()
    if lower in _IRREGULAR:
        return _IRREGULAR[lower]
    if lower.endswith("ies") and len(lower) > 4:
        return verb[:-3] + "y"
    if lower.endswith(("ches", "shes", "sses", "xes", "zzes", "oes")):
        return verb[:-2]
    if lower.endswith("s") and not lower.endswith(("ss", "us", "is")):
        return verb[:-1]
    return verb


def to_second_person(action: str | None) -> str:
    """Normalise an inferred user action to second person.

    "nods in agreement" -> "you nod in agreement"; "I smile" -> "you smile";
    an empty inference becomes SILENT_FALLBACK_ACTION.
    """
    text = (action or "").strip().strip("*").strip()
    if not text:
        return SILENT_FALLBACK_ACTION
    first, _, rest = text.partition(" ")
    lower = first.lower()
    if lower in ("you", "you're", "your"):
        return lower + (" " + rest if rest else "")
    if lower in _FIRST_PERSON:
        if lower == "i":
            verb, _, tail = rest.partition(" ")
            if verb.lower() in ("am", "was"):
                rest = ("are" if verb.lower() == "am" else "were") + (" " + tail if tail else "")
        return _FIRST_PERSON[lower] + (" " + rest if rest else "")

    subject = _THIRD_PERSON_SUBJECT.match(text)
    if subject:
        text = text[subject.end():]
        first, _, rest = text.partition(" ")
    verb = _base_form(first)
    return "you " + verb[:1].lower() + verb[1:] + (" " + rest if rest else "")


def _clean_gesture(gesture: str | None) -> str:
    """Drop one wrapping asterisk each side: "*smiles*" becomes "smiles"."""
    return re.sub(r"^\*|\*$", "", (gesture or "").strip()).strip()


def _feedback(block: FeedbackBlock) -> TurnFeedback:
    return TurnFeedback(
        engagement_delta=block.engagement_delta,
        effectiveness_score=block.user_turn_effectiveness_score,
        positive_trait=block.positive_trait_contribution,
        negative_trait=block.negative_trait_contribution,
        badge_reasoning=block.badge_reasoning,
        next_step_suggestion=block.next_step_suggestion,
        alternative_suggestion=block.alternative_suggestion,
    )


def fallback_start_result(scenario: Scenario) -> StartResult:
    """Default opening used when the start reply cannot be parsed."""
    name = scenario.ai_name or "Alex"
    noun = "man" if scenario.ai_gender == "Male" else "woman"
    return StartResult(
        ai_name=name,
        conversation_starter="ai",
        initial_dialogue_chunks=[DialogueChunk(text=f"Hello! I'm {name}. Let's talk.")],
        initial_body_language="Neutral and open.",
        initial_ai_thoughts="I'm ready to see how this interaction goes. I hope you're engaging.",
        initial_conversation_momentum=55,
        established_visuals={
            "character_description": f"a {noun} named {name} with brown hair",
            "clothing_description": "wearing a simple gray t-shirt",
            "held_objects": "hands are free",
            "body_position": "standing",
            "gaze_direction": "looking at you",
            "position_relative_to_user": "a few feet away",
            "environment_description": "in a neutral, non-descript room",
            "current_pose_and_action": "standing with a neutral expression",
            "facial_accessories": "",
        },
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class TurnOrchestrator:
    """Composes the trackers around the text and image services.

    Holds no per-session state: every call takes the state it works on and
    returns a new one, so one orchestrator serves any number of sessions.
    """

    def __init__(
        self,
        llm: LLM,
        image_service: ImageService | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        image_retry_policy: RetryPolicy | None = None,
        engagement: EngagementTracker | None = None,
        initial_engagement: int = 30,
        history_window: int = 10,
        analysis_history_window: int = 30,
        start_template: str = DEFAULT_START_PROMPT,
        turn_template: str = DEFAULT_TURN_PROMPT,
        analysis_template: str = DEFAULT_ANALYSIS_PROMPT,
        rng: random.Random | None = None,
    ) -> None:
        self.llm = llm
        self.image_service = image_service
        self.retry_policy = retry_policy or RetryPolicy()
        self.image_retry_policy = image_retry_policy or self.retry_policy
        self.engagement = engagement or EngagementTracker()
        self.actions = ActionLifecycleManager()
        self.initial_engagement = initial_engagement
        self.history_window = history_window
        self.analysis_history_window = analysis_history_window
        self.start_template = start_template
        self.turn_template = turn_template
        self.analysis_template = analysis_template
        self.rng = rng or random.Random()

    @classmethod
    def from_settings(
        cls, settings: Settings, llm: LLM, image_service: ImageService | None = None
    ) -> "TurnOrchestrator":
        policy = RetryPolicy(
            max_attempts=settings.retry_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            timeout_seconds=settings.call_timeout_seconds,
        )
        return cls(
            llm,
            image_service,
            retry_policy=policy,
            engagement=EngagementTracker(
                decay_per_turn=settings.engagement_decay_per_turn,
                termination_streak=settings.max_zero_engagement_streak,
            ),
            initial_engagement=settings.initial_engagement,
            history_window=settings.history_window,
            analysis_history_window=settings.analysis_history_window,
        )

    # -- session start --------------------------------------------------------

    async def start_session(self, scenario: Scenario) -> tuple[SessionState, ChatMessage]:
        """Open a session: resolve the persona, call "start", render the first image."""
        scenario = infer_missing_persona_details(scenario, self.rng)
        prompt = render_prompt(
            self.start_template,
            build_start_context(scenario, initial_engagement=self.initial_engagement),
        )
        logger.debug("start prompt: %d chars", len(prompt))
        raw = await self.retry_policy.run(lambda: self.llm("start", prompt), label="start")

        try:
            result = parse_start_response(raw)
        except MalformedResponse as e:
            logger.warning("Start reply unusable (%s); using default persona opening", e)
            result = fallback_start_result(scenario)

        if result.ai_name and result.ai_name != scenario.ai_name:
            logger.info("Persona name %r kept; service proposed %r", scenario.ai_name, result.ai_name)

        visuals = visual_tracker.reconcile(EstablishedVisuals(), result.established_visuals)
        goal = GoalLifecycleManager.for_scenario(scenario).initial()
        image, image_prompt, _ = await self._generate_image(visuals, None)

        state = SessionState(
            scenario=scenario,
            visuals=visuals,
            engagement=self.initial_engagement,
            active_goal=goal.goal,
            conversation_momentum=result.initial_conversation_momentum,
            current_image=image,
            image_prompt=image_prompt,
            backstory=result.scenario_backstory,
            conversation_starter=result.conversation_starter,
        )
        message = ChatMessage(
            sender="persona",
            segments=tuple(result.initial_dialogue_chunks),
            body_language=result.initial_body_language or None,
            thoughts=result.initial_ai_thoughts,
            image=image,
            momentum=result.initial_conversation_momentum,
            goal_change=goal.change,
            contextual_summary=result.contextual_summary,
        )
        logger.info(
            "Session started: persona=%r, starter=%s, goal=%r",
            scenario.ai_name, result.conversation_starter,
            goal.goal.text if goal.goal else None,
        )
        return state, message

    # -- turns ----------------------------------------------------------------

    async def process_turn(
        self,
        state: SessionState,
        history: Sequence[ChatMessage],
        user_input: str = "",
        *,
        gesture: str | None = None,
        fast_forward: bool = False,
    ) -> tuple[SessionState, ChatMessage, TurnOutcome]:
        """Run one user turn and return (new state, persona message, outcome).

        `gesture` is an optional non-verbal action ("*smiles*") sent with or
        instead of the dialogue. Both reach the prompt, gesture first, one
        per line.

        Raises MalformedResponse or a ServiceError when the text call fails;
        `state` is untouched in that case.
        """
        dialogue = user_input.strip()
        gesture_text = _clean_gesture(gesture)
        silent = dialogue == SILENT_USER_ACTION_TOKEN
        if silent and gesture_text:
            raise ValueError("a gesture cannot be combined with a silent turn")
        if not silent and not dialogue and not gesture_text:
            raise ValueError("user_input or gesture must not be empty")

        # 1-3. Context, text call, parse
        context = build_turn_context(
            state,
            history,
            SILENT_USER_ACTION_TOKEN if silent else "\n".join(p for p in (gesture_text, dialogue) if p),
            history_window=self.history_window,
            fast_forward=fast_forward,
        )
        prompt = render_prompt(self.turn_template, context)
        logger.debug("turn %d prompt: %d chars", state.turn + 1, len(prompt))
        raw = await self.retry_policy.run(lambda: self.llm("turn", prompt), label="turn")
        result = parse_turn_response(raw)
        block = result.feedback_on_user_turn

        # 4. Trackers
        eng = self.engagement.apply(state.engagement, block.engagement_delta, state.zero_engagement_streak)

        goal = GoalLifecycleManager.for_scenario(state.scenario).advance(
            state.active_goal,
            pending_clear=state.goal_pending_clear,
            stated_goal_spent=state.stated_goal_spent,
            proposed_text=result.emerging_goal,
            proposed_progress=result.goal_progress if "goal_progress" in result.model_fields_set else None,
            proposed_achieved=result.achieved,
        )

        action = self.actions.advance(
            state.active_action,
            result.active_action,
            pending_clear=state.action_pending_clear,
            fast_forward=fast_forward,
        )

        visuals = visual_tracker.reconcile(state.visuals, result.updated_established_visuals)
        wants_image = visual_tracker.should_generate_image(
            state.visuals, visuals, result.should_generate_new_image
        )

        # 5. Image
        image, image_prompt, image_failed = state.current_image, state.image_prompt, False
        regenerated = False
        if wants_image and self.image_service is not None:
            new_image, new_prompt, image_failed = await self._generate_image(visuals, state.current_image)
            if not image_failed:
                image, image_prompt, regenerated = new_image, new_prompt, True

        # 7. End conditions
        end_reason = None
        if result.is_ending_conversation:
            end_reason = "persona_ended"
        elif eng.engagement >= 100:
            end_reason = "max_engagement"
        elif eng.should_terminate_low_engagement:
            end_reason = "low_engagement"

        new_state = state.model_copy(update={
            "visuals": visuals,
            "engagement": eng.engagement,
            "zero_engagement_streak": eng.zero_streak,
            "active_goal": goal.goal,
            "goal_pending_clear": goal.pending_clear,
            "stated_goal_spent": goal.stated_goal_spent,
            "active_action": action.action,
            "action_pending_clear": action.pending_clear,
            "conversation_momentum": result.conversation_momentum,
            "current_image": image,
            "image_prompt": image_prompt,
            "persona_details": result.updated_persona_details or state.persona_details,
            "turn": state.turn + 1,
        })

        # 6. Messages
        feedback = _feedback(block)
        gesture_message = None
        if silent:
            inferred = to_second_person(block.inferred_user_action)
            if inferred != (block.inferred_user_action or "").strip():
                logger.debug("Normalised inferred action %r -> %r", block.inferred_user_action, inferred)
            user_message = ChatMessage(
                sender="user_silent_action",
                segments=(DialogueChunk(text=inferred, type="action"),),
                feedback=feedback,
            )
        elif not dialogue:
            user_message = ChatMessage(
                sender="user_silent_action",
                segments=(DialogueChunk(text=gesture_text, type="action"),),
                feedback=feedback,
            )
        else:
            # Feedback belongs to the spoken part when there is one.
            if gesture_text:
                gesture_message = ChatMessage(
                    sender="user_silent_action",
                    segments=(DialogueChunk(text=gesture_text, type="action"),),
                )
            user_message = ChatMessage(
                sender="user",
                segments=(DialogueChunk(text=dialogue),),
                feedback=feedback,
            )

        summary = result.contextual_summary
        if summary is None and regenerated:
            summary = visual_tracker.summarise_change(state.visuals, visuals)
        persona_message = ChatMessage(
            sender="persona",
            segments=tuple(result.dialogue_chunks),
            body_language=result.ai_body_language,
            thoughts=result.ai_thoughts,
            image=image if regenerated else None,
            momentum=result.conversation_momentum,
            goal_change=goal.change,
            contextual_summary=summary,
        )

        outcome = TurnOutcome(
            user_message=user_message,
            gesture_message=gesture_message,
            ended=end_reason is not None,
            end_reason=end_reason,
            image_regenerated=regenerated,
            image_failed=image_failed,
            goal_change=goal.change,
            user_action_suggested=result.is_user_action_suggested,
        )
        logger.info(
            "Turn %d: engagement %d -> %d (delta %+d), goal=%s, action=%s%s",
            new_state.turn, state.engagement, eng.engagement, block.engagement_delta,
            goal.goal.text if goal.goal else None,
            f"{action.action.description}@{action.action.progress}" if action.action else None,
            f", ended ({end_reason})" if end_reason else "",
        )
        return new_state, persona_message, outcome

    def set_action_paused(self, state: SessionState, paused: bool) -> SessionState:
        """Pause or resume the active action. No-op without one."""
        action = self.actions.set_paused(state.active_action, paused)
        if action is state.active_action:
            return state
        logger.info("Action %r %s", action.description, "paused" if paused else "resumed")
        return state.model_copy(update={"active_action": action})

    # -- session end ----------------------------------------------------------

    async def end_session(self, state: SessionState, history: Sequence[ChatMessage]) -> AnalysisReport:
        """Generate the end-of-session analysis report."""
        context = build_analysis_context(state, history, history_window=self.analysis_history_window)
        prompt = render_prompt(self.analysis_template, context)
        raw = await self.retry_policy.run(lambda: self.llm("analysis", prompt), label="analysis")
        report = parse_analysis_report(raw)
        if report.final_engagement_snapshot != state.engagement:
            logger.debug(
                "Overriding reported final engagement %d with %d",
                report.final_engagement_snapshot, state.engagement,
            )
        return report.model_copy(update={"final_engagement_snapshot": state.engagement})

    # -- images ---------------------------------------------------------------

    async def _generate_image(
        self, visuals: EstablishedVisuals, previous: str | None
    ) -> tuple[str | None, str | None, bool]:
        """Return (image, prompt, failed). On failure the previous image comes back."""
        if self.image_service is None:
            return previous, None, False
        prompt = build_image_prompt(visuals)
        service = self.image_service
        try:
            image = await self.image_retry_policy.run(lambda: service(prompt), label="image")
        except Exception as e:
            failure = ImageGenerationFailed(str(e))
            failure.__cause__ = e
            logger.warning("Image generation failed, reusing previous image: %s", failure)
            return previous, None, True
        return image, prompt, False
