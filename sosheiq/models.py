"""Core domain models.

All pipeline stages operate on these types. Pydantic is used for validation
and serialisation at every data boundary.

Two families live here:

  Domain models (snake_case, frozen): Scenario, EstablishedVisuals,
    SessionState, ChatMessage, TurnOutcome. Owned by the engine; every
    transition produces a new instance.

  Wire models (camelCase aliases): TurnResult, StartResult, AnalysisReport
    and their parts. These mirror the JSON the text service is asked to
    return. Their validators are the validating constructor for that JSON:
    anything that gets past model_validate() is safe to feed the trackers.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

SenderRole = Literal[
    "user",
    "persona",
    "system",
    "backstory",
    "user_silent_action",
]

SegmentType = Literal["dialogue", "action"]

EndReason = Literal["persona_ended", "max_engagement", "low_engagement"]

GoalChangeType = Literal["new", "replaced", "progress", "achieved", "cleared"]


def clamp(value: int, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, value))


def _loose_int(value: Any) -> Any:
    """Accept 55, 55.4, "55" and "55.0"; models are sloppy with numbers."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return round(value)
    if isinstance(value, str):
        try:
            return round(float(value.strip()))
        except ValueError:
            return value
    return value


def _percent(value: Any) -> Any:
    value = _loose_int(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return clamp(value)
    return value


LooseInt = Annotated[int, BeforeValidator(_loose_int)]
Percent = Annotated[int, BeforeValidator(_percent)]


# ---------------------------------------------------------------------------
# Wire models: the JSON shapes the text service returns
# ---------------------------------------------------------------------------

class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class DialogueChunk(WireModel):
    """One segment of a persona reply: spoken words or a narrated action."""

    model_config = ConfigDict(frozen=True)

    text: str
    type: SegmentType = "dialogue"
    delay_after: bool = False

    @field_validator("text")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()


class VisualsUpdate(WireModel):
    """A proposed visual state. Any field may be missing or null."""

    character_description: str | None = None
    clothing_description: str | None = None
    held_objects: str | None = None
    body_position: str | None = None
    gaze_direction: str | None = None
    position_relative_to_user: str | None = None
    environment_description: str | None = None
    current_pose_and_action: str | None = None
    facial_accessories: str | None = None


class ActionProposal(WireModel):
    description: str
    progress: LooseInt = 0


class FeedbackBlock(WireModel):
    """The service's assessment of the user's last turn."""

    engagement_delta: LooseInt = 0
    user_turn_effectiveness_score: Percent | None = None
    positive_trait_contribution: str | None = None
    negative_trait_contribution: str | None = None
    badge_reasoning: str | None = None
    next_step_suggestion: str | None = None
    alternative_suggestion: str | None = None
    inferred_user_action: str | None = None

    @field_validator("engagement_delta", mode="before")
    @classmethod
    def _none_delta(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("positive_trait_contribution", "negative_trait_contribution")
    @classmethod
    def _single_word(cls, v: str | None) -> str | None:
        if v is None:
            return None
        word = v.strip().strip(".,;:!?\"'")
        if not word or word.lower() in ("null", "none") or len(word.split()) != 1:
            return None
        return word


# Top-level keys older prompts put beside the feedback block instead of in it.
_LEGACY_FEEDBACK_KEYS = (
    "engagementDelta",
    "userTurnEffectivenessScore",
    "positiveTraitContribution",
    "negativeTraitContribution",
    "badgeReasoning",
    "nextStepSuggestion",
    "alternativeSuggestion",
    "inferredUserAction",
)

# Keys whose null should mean "use the default" rather than fail validation.
_NULL_MEANS_DEFAULT = (
    "dialogueChunks",
    "conversationMomentum",
    "goalProgress",
    "achieved",
    "isEndingConversation",
    "isUserActionSuggested",
    "shouldGenerateNewImage",
    "isSilentTurn",
    "feedbackOnUserTurn",
)


class TurnResult(WireModel):
    """Validated output of one text-generation call for a user turn."""

    dialogue_chunks: list[DialogueChunk] = Field(default_factory=list)
    ai_body_language: str = ""
    ai_thoughts: str | None = None
    feedback_on_user_turn: FeedbackBlock = Field(default_factory=FeedbackBlock)
    conversation_momentum: Percent = 50
    is_ending_conversation: bool = False
    is_user_action_suggested: bool = False
    should_generate_new_image: bool = False
    contextual_summary: str | None = None
    emerging_goal: str | None = None
    goal_progress: LooseInt = 0
    achieved: bool = False
    updated_persona_details: str | None = None
    active_action: ActionProposal | None = None
    updated_established_visuals: VisualsUpdate | None = None
    is_silent_turn: bool = False

    @model_validator(mode="before")
    @classmethod
    def _normalise_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in _NULL_MEANS_DEFAULT:
            if key in data and data[key] is None:
                del data[key]
        if "feedbackOnUserTurn" not in data and "feedback_on_user_turn" not in data:
            lifted = {k: data.pop(k) for k in _LEGACY_FEEDBACK_KEYS if k in data}
            if lifted:
                data["feedbackOnUserTurn"] = lifted
        return data

    @model_validator(mode="after")
    def _check_renderable(self) -> "TurnResult":
        self.dialogue_chunks = [c for c in self.dialogue_chunks if c.text]
        if not self.dialogue_chunks and not self.is_silent_turn:
            raise ValueError("dialogueChunks is empty and isSilentTurn is not set")
        self.ai_body_language = self.ai_body_language.strip()
        if not self.ai_body_language:
            raise ValueError("aiBodyLanguage is empty")
        return self


class StartResult(WireModel):
    """Validated output of the session-opening text-generation call."""

    ai_name: str = ""
    scenario_backstory: str | None = None
    conversation_starter: Literal["user", "ai"] = "ai"
    initial_dialogue_chunks: list[DialogueChunk] = Field(default_factory=list)
    initial_body_language: str = ""
    initial_ai_thoughts: str | None = None
    initial_engagement_score: LooseInt | None = None
    initial_conversation_momentum: Percent = 55
    contextual_summary: str | None = None
    established_visuals: VisualsUpdate

    @field_validator("initial_dialogue_chunks", mode="before")
    @classmethod
    def _none_chunks(cls, v: Any) -> Any:
        return [] if v is None else v

    @model_validator(mode="after")
    def _check_opening(self) -> "StartResult":
        self.initial_dialogue_chunks = [c for c in self.initial_dialogue_chunks if c.text]
        if self.conversation_starter == "ai" and not self.initial_dialogue_chunks:
            raise ValueError("conversationStarter is 'ai' but initialDialogueChunks is empty")
        return self


class TurnAnalysisItem(WireModel):
    ai_response: str | None = None
    ai_body_language: str | None = None
    ai_thoughts: str | None = None
    conversation_momentum: Percent | None = None
    user_input: str | None = None
    user_turn_effectiveness_score: Percent | None = None
    engagement_delta: LooseInt | None = None
    positive_trait_contribution: str | None = None
    negative_trait_contribution: str | None = None
    analysis: str | None = None


class AnalysisReport(WireModel):
    """End-of-session performance report."""

    overall_charisma_score: Percent
    response_clarity_score: Percent
    engagement_maintenance_score: Percent
    adaptability_score: Percent
    goal_achievement_score: Percent | None = None
    overall_ai_effectiveness_score: Percent | None = None
    final_engagement_snapshot: Percent = 0
    strengths: str = ""
    areas_for_improvement: str = ""
    actionable_tips: str = ""
    things_to_avoid: str = ""
    goal_achievement_feedback: str | None = None
    ai_evolving_thoughts_summary: str | None = None
    turn_by_turn_analysis: list[TurnAnalysisItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Domain models
# ---------------------------------------------------------------------------

class Scenario(BaseModel):
    """Persona and environment configuration, fixed for the whole session."""

    model_config = ConfigDict(frozen=True)

    environment: str = "Casual Chat"
    custom_environment: str | None = None
    ai_name: str = ""
    ai_gender: str = "Prefer Not to Specify / Neutral"
    ai_age: str | None = None
    custom_ai_age: int | None = None
    personality_traits: tuple[str, ...] = ()
    custom_personality: str | None = None
    ai_culture: str | None = None
    power_dynamic: str | None = None
    custom_context: str | None = None
    conversation_goal: str | None = None
    user_name: str | None = None
    is_random_scenario: bool = False
    allow_goal_rearm: bool = False

    @field_validator("conversation_goal", "ai_culture", "custom_context", "user_name")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None


class EstablishedVisuals(BaseModel):
    """Canonical description of the persona's look, pose and surroundings."""

    model_config = ConfigDict(frozen=True)

    character_description: str = ""
    clothing_description: str = ""
    held_objects: str = ""
    body_position: str = ""
    gaze_direction: str = ""
    position_relative_to_user: str = ""
    environment_description: str = ""
    current_pose_and_action: str = ""
    facial_accessories: str = ""


class ActiveGoal(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    progress: int = Field(default=0, ge=0, le=100)
    achieved: bool = False


class ActiveAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    progress: int = Field(default=0, ge=0, le=100)
    paused: bool = False


class GoalChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: GoalChangeType
    from_text: str | None = None
    to_text: str | None = None


class TurnFeedback(BaseModel):
    """Per-turn assessment attached to the user-side message."""

    model_config = ConfigDict(frozen=True)

    engagement_delta: int = 0
    effectiveness_score: int | None = None
    positive_trait: str | None = None
    negative_trait: str | None = None
    badge_reasoning: str | None = None
    next_step_suggestion: str | None = None
    alternative_suggestion: str | None = None


class ChatMessage(BaseModel):
    """A single immutable entry in a conversation's history."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sender: SenderRole
    segments: tuple[DialogueChunk, ...] = ()
    body_language: str | None = None
    thoughts: str | None = None
    image: str | None = None  # base64 image data
    feedback: TurnFeedback | None = None
    momentum: int | None = None
    goal_change: GoalChange | None = None
    contextual_summary: str | None = None
    retry_input: str | None = None  # set on retryable system messages
    retry_gesture: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def text(self) -> str:
        return " ".join(s.text for s in self.segments)


class SessionState(BaseModel):
    """Everything the engine knows about one conversation, at one point in time."""

    model_config = ConfigDict(frozen=True)

    scenario: Scenario
    visuals: EstablishedVisuals = Field(default_factory=EstablishedVisuals)
    engagement: int = Field(default=30, ge=0, le=100)
    zero_engagement_streak: int = Field(default=0, ge=0)
    active_goal: ActiveGoal | None = None
    goal_pending_clear: bool = False
    stated_goal_spent: bool = False
    active_action: ActiveAction | None = None
    action_pending_clear: bool = False
    conversation_momentum: int = Field(default=50, ge=0, le=100)
    current_image: str | None = None
    image_prompt: str | None = None
    persona_details: str | None = None
    backstory: str | None = None
    conversation_starter: Literal["user", "ai"] = "ai"
    turn: int = 0

    @property
    def persona_name(self) -> str:
        return self.scenario.ai_name


class TurnOutcome(BaseModel):
    """Everything about a processed turn besides the new state and reply."""

    model_config = ConfigDict(frozen=True)

    user_message: ChatMessage
    gesture_message: ChatMessage | None = None  # the gesture, when sent alongside dialogue
    ended: bool = False
    end_reason: EndReason | None = None
    image_regenerated: bool = False
    image_failed: bool = False
    goal_change: GoalChange | None = None
    user_action_suggested: bool = False
