"""Handlebars prompt rendering for the three text-service stages.

Each stage has a default template and a context builder:

    start     build_start_context()     -> DEFAULT_START_PROMPT
    turn      build_turn_context()      -> DEFAULT_TURN_PROMPT
    analysis  build_analysis_context()  -> DEFAULT_ANALYSIS_PROMPT

Builders do the conditional prose in Python and hand the templates flat
strings, so the templates stay readable. Free text is always emitted with
triple-stash ({{{ }}}) because pybars HTML-escapes double-stash output.
"""

from __future__ import annotations

import json
import random
from collections.abc import Callable, Sequence
from typing import Any

import pybars

from sosheiq.models import (
    ChatMessage,
    EstablishedVisuals,
    Scenario,
    SessionState,
)

SILENT_USER_ACTION_TOKEN = "[[USER_CONTINUES_SILENTLY]]"

NO_TEXT_IN_IMAGE = (
    "Ensure no text, letters, words, logos, or watermarks appear in the generated image."
)

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ---------------------------------------------------------------------------
# Persona details
# ---------------------------------------------------------------------------

MALE = "Male"
FEMALE = "Female"
NEUTRAL_GENDERS = {"", "random", "non-binary", "prefer not to specify / neutral"}

_FIRST_NAMES = {
    MALE: ["Arthur", "David", "Ethan", "James", "Liam",
           "Michael", "Noah", "Ryan", "Chris", "Ben"],
    FEMALE: ["Anna", "Chloe", "Emily", "Emma", "Isabella",
             "Olivia", "Sophia", "Ava", "Grace", "Sarah"],
    None: ["Alex", "Jordan", "Casey", "Morgan", "Riley",
           "Skyler", "Cameron", "Drew", "Kai", "Taylor"],
}
_LAST_NAMES = ["Smith", "Jones", "Williams", "Brown", "Davis",
               "Miller", "Wilson", "Chen", "Lee", "Garcia"]


def infer_missing_persona_details(scenario: Scenario, rng: random.Random | None = None) -> Scenario:
    """Fill a missing/neutral gender and a missing name.

    A gender that is blank, random or non-binary is resolved to Male or
    Female at random so that visuals and pronouns stay consistent. A blank
    name is drawn from the gender's first-name pool plus a surname.
    """
    rng = rng or random.Random()
    gender = scenario.ai_gender
    if (gender or "").strip().lower() in NEUTRAL_GENDERS:
        gender = MALE if rng.random() < 0.5 else FEMALE

    name = scenario.ai_name.strip()
    if not name:
        pool = _FIRST_NAMES.get(gender, _FIRST_NAMES[None])
        name = f"{rng.choice(pool)} {rng.choice(_LAST_NAMES)}"

    return scenario.model_copy(update={"ai_gender": gender, "ai_name": name})


def age_description(ai_age: str | None, custom_ai_age: int | None = None) -> str:
    if not ai_age:
        return "Not specified"
    if ai_age == "Custom Age" and custom_ai_age:
        return f"{custom_ai_age} years old"
    return ai_age


def personality_segment(traits: Sequence[str], custom: str | None = None) -> str:
    lines = []
    if traits:
        lines.append(f"- Selected personality traits: {', '.join(traits)}.")
    if custom and custom.strip():
        lines.append(f'- Custom personality description: "{custom.strip()}".')
    if not lines:
        return "- Personality: general, adaptable."
    lines.append(
        "  Blend the traits and the custom description; the description adds nuance to the traits."
    )
    return "\n".join(lines)


def persona_block(scenario: Scenario) -> str:
    lines = [f"- Environment: {scenario.environment}"]
    if scenario.custom_environment:
        lines.append(f"- Custom environment details: {scenario.custom_environment}")
    lines.append(personality_segment(scenario.personality_traits, scenario.custom_personality))
    if scenario.ai_culture:
        lines.append(
            f'- Culture/background: "{scenario.ai_culture}". Reflect it in your persona, '
            "name and every visual description."
        )
    lines.append(f"- Age: {age_description(scenario.ai_age, scenario.custom_ai_age)}")
    if scenario.power_dynamic:
        lines.append(f"- Power dynamic: {scenario.power_dynamic}")
    if scenario.custom_context:
        lines.append(f"- Custom scenario details: {scenario.custom_context}")
    return "\n".join(lines)


def user_name_guidance(user_name: str | None) -> str:
    if user_name:
        return (
            f'The user\'s name is "{user_name}". Use it naturally, as a person would, '
            "without overusing it."
        )
    return (
        "You do not know the user's name. Do not assume it. Ask for it only when the "
        "context and trust level make that natural."
    )


# ---------------------------------------------------------------------------
# Goal, action and silent-input segments
# ---------------------------------------------------------------------------

def goal_dynamics(state: SessionState) -> str:
    goal = state.active_goal
    stated = state.scenario.conversation_goal
    if stated and not state.stated_goal_spent:
        return (
            f'The user has a stated goal: "{stated}". Roleplay so the user can work towards it.\n'
            f'`emergingGoal` MUST always be exactly "{stated}". Report `goalProgress` (0-100) '
            "for the user's progress, and set `achieved: true` only when it is complete.\n"
            "Once the goal has been achieved, treat later turns as if no goal was set."
        )
    current = (
        f'Current goal: "{goal.text}" at {goal.progress}%.'
        if goal is not None and not goal.achieved
        else "There is no current goal."
    )
    return (
        f"{current}\n"
        "`emergingGoal` may propose a goal for the user. It MUST be a short, actionable "
        'instruction to the user, e.g. "Ask her for her phone number" or "Apologize for '
        'being late". Never phrase it from your own perspective ("I want...", "My goal...", '
        '"The user is trying..."). Such goals are discarded. Return null when no goal fits.'
    )


def action_state(state: SessionState) -> str:
    action = state.active_action
    if action is None:
        return "No active action. Respond normally to the conversation."
    text = (
        f'Currently performing: "{action.description}" (progress {action.progress}%). '
        "Keep acknowledging the ongoing activity in your dialogue and body language."
    )
    if action.paused:
        text += (
            "\nThe action is PAUSED. Acknowledge the pause, and if it has lasted a turn or "
            "more, nudge the user to resume in a natural, in-character way."
        )
    return text


def fast_forward_instruction(fast_forward: bool) -> str:
    if not fast_forward:
        return ""
    return (
        "The user chose to fast-forward. Conclude the active action now: add a final "
        "action chunk that describes the arrival or completion, and report its progress as 100."
    )


def render_user_input(user_input: str) -> str:
    if user_input == SILENT_USER_ACTION_TOKEN:
        return "[The user chose to stay silent or continue a non-verbal action.]"
    return user_input


def render_history(history: Sequence[ChatMessage], persona_name: str, window: int) -> str:
    """Most recent `window` conversation messages, one line each."""
    relevant = [m for m in history if m.sender != "system"]
    lines = []
    for m in (relevant[-window:] if window > 0 else []):
        if m.sender == "user":
            lines.append(f'- You: "{m.text}"')
        elif m.sender == "user_silent_action":
            lines.append(f'- Your Action: "{m.text}"')
        elif m.sender == "backstory":
            lines.append(f"- Scene: {m.text}")
        else:
            body = f" (Body Language: {m.body_language})" if m.body_language else ""
            lines.append(f'- {persona_name}: "{m.text}"{body}')
    return "\n".join(lines) if lines else "(no messages yet)"


# ---------------------------------------------------------------------------
# Context builders
# ---------------------------------------------------------------------------

def build_start_context(scenario: Scenario, *, initial_engagement: int = 30) -> dict[str, Any]:
    """Template variables for the session-opening call.

    Expects a scenario that already went through infer_missing_persona_details().
    """
    return {
        "name": scenario.ai_name,
        "gender": scenario.ai_gender,
        "persona": persona_block(scenario),
        "user_name_guidance": user_name_guidance(scenario.user_name),
        "is_random": scenario.is_random_scenario,
        "initial_engagement": initial_engagement,
    }


def build_turn_context(
    state: SessionState,
    history: Sequence[ChatMessage],
    user_input: str,
    *,
    history_window: int = 10,
    fast_forward: bool = False,
) -> dict[str, Any]:
    """Template variables for one user turn, with history bounded to `history_window`."""
    last_pose = state.visuals.current_pose_and_action or "unknown"
    return {
        "name": state.persona_name,
        "gender": state.scenario.ai_gender,
        "persona": persona_block(state.scenario),
        "persona_details": state.persona_details or "",
        "user_name_guidance": user_name_guidance(state.scenario.user_name),
        "visuals_json": state.visuals.model_dump_json(by_alias=False),
        "last_pose": last_pose,
        "goal_dynamics": goal_dynamics(state),
        "action_state": action_state(state),
        "action_description": state.active_action.description if state.active_action else "None",
        "action_progress": state.active_action.progress if state.active_action else 0,
        "fast_forward": fast_forward_instruction(fast_forward),
        "history": render_history(history, state.persona_name, history_window),
        "user_input": render_user_input(user_input),
        "is_silent": user_input == SILENT_USER_ACTION_TOKEN,
        "silent_token": SILENT_USER_ACTION_TOKEN,
        "engagement": state.engagement,
        "momentum": state.conversation_momentum,
    }


def _analysis_entry(m: ChatMessage, persona_name: str) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "sender": "You" if m.sender in ("user", "user_silent_action") else persona_name,
        "message": m.text,
    }
    if m.sender == "persona":
        if m.body_language:
            entry["bodyLanguage"] = m.body_language
        if m.thoughts:
            entry["internalThoughts"] = m.thoughts
        if m.goal_change is not None:
            entry["goalChange"] = m.goal_change.model_dump(exclude_none=True)
        if m.momentum is not None:
            entry["conversationMomentum"] = m.momentum
    elif m.feedback is not None:
        fb = m.feedback
        if fb.effectiveness_score is not None:
            entry["effectivenessScore"] = fb.effectiveness_score
        entry["engagementImpact"] = fb.engagement_delta
        if fb.positive_trait:
            entry["positiveTraitContribution"] = fb.positive_trait
        if fb.negative_trait:
            entry["negativeTraitContribution"] = fb.negative_trait
    return entry


def build_analysis_context(
    state: SessionState,
    history: Sequence[ChatMessage],
    *,
    history_window: int = 30,
) -> dict[str, Any]:
    """Template variables for the end-of-session report.

    System and backstory messages are left out; the rest is serialised as
    one JSON object per message.
    """
    relevant = [m for m in history[-history_window:] if m.sender not in ("system", "backstory")]
    entries = ",\n".join(
        json.dumps(_analysis_entry(m, state.persona_name)) for m in relevant
    )
    return {
        "name": state.persona_name,
        "gender": state.scenario.ai_gender,
        "persona": persona_block(state.scenario),
        "goal": state.scenario.conversation_goal or "",
        "final_engagement": state.engagement,
        "history": entries,
    }


def build_image_prompt(visuals: EstablishedVisuals) -> str:
    """Image prompt built purely from the reconciled visual fields."""
    parts = [
        visuals.character_description or "a person",
        visuals.clothing_description,
        visuals.facial_accessories,
        visuals.held_objects,
        visuals.current_pose_and_action or visuals.body_position,
        visuals.gaze_direction,
    ]
    subject = ", ".join(p.strip() for p in parts if p and p.strip())
    environment = visuals.environment_description.strip() or "a neutral, non-descript room"
    if environment.lower().startswith(("in ", "at ", "on ", "inside ")):
        setting = environment
    else:
        setting = f"inside {environment}"
    return f"Photorealistic portrait of {subject}, {setting}. {NO_TEXT_IN_IMAGE}"


# ---------------------------------------------------------------------------
# Default templates
# ---------------------------------------------------------------------------

DEFAULT_START_PROMPT = """\
Your task is to role-play a character in a social interaction simulation. \
You are not an AI; you are the character. If asked about your origin, invent a plausible backstory.

Guidance:
- Do not assume a prior relationship with the user unless the scenario says so.
- {{{user_name_guidance}}}
- Use several dialogue and action chunks when it adds realism. NEVER put actions \
inside dialogue text: "*laughs*" is its own chunk with "type": "action".
- Speak naturally: contractions, hedges, varied sentence length. Keep idioms and quirks \
out of first contact unless your traits call for them.

Character identity:
- Your name: "{{{name}}}"
- Gender: {{{gender}}}
{{{persona}}}

First, establish the initial visual state. It is the base for every generated image:
- characterDescription: physical appearance, specific about hair and facial features, \
consistent with gender and culture.
- clothingDescription: the full outfit, simply and consistently described.
- heldObjects, bodyPosition, gazeDirection, positionRelativeToUser.
- environmentDescription: the immediate surroundings.
- currentPoseAndAction: the above combined into one short description.
- facialAccessories: glasses, piercings or jewelry, or an empty string.

{{#if is_random}}
This is a random scenario and you MUST start the conversation. Invent the environment, \
your relationship to the user and a specific starting situation, and return it in \
scenarioBackstory. Your first line goes in initialDialogueChunks.
{{else}}
Decide who should logically start. If you start, keep the opener casual and put it in \
initialDialogueChunks; if the user starts, initialDialogueChunks MUST be empty. \
scenarioBackstory must be null.
{{/if}}

Then define your initial non-visual state: initialBodyLanguage (a user-friendly version \
of currentPoseAndAction), initialAiThoughts (addressed to "you"), \
initialEngagementScore ({{initial_engagement}}), initialConversationMomentum (0-100) and \
a one-sentence third-person contextualSummary that starts with your name.

Respond ONLY with a single valid JSON object, no markdown fences:
{
  "aiName": "{{{name}}}",
  "scenarioBackstory": "string or null",
  "conversationStarter": "user" or "ai",
  "initialDialogueChunks": [ { "text": "An opening line.", "type": "dialogue" } ],
  "initialBodyLanguage": "string",
  "initialAiThoughts": "string",
  "contextualSummary": "string",
  "initialEngagementScore": {{initial_engagement}},
  "initialConversationMomentum": 55,
  "establishedVisuals": {
    "characterDescription": "string",
    "clothingDescription": "string",
    "heldObjects": "string",
    "bodyPosition": "string",
    "gazeDirection": "string",
    "positionRelativeToUser": "string",
    "environmentDescription": "string",
    "currentPoseAndAction": "string",
    "facialAccessories": "string"
  }
}
"""

DEFAULT_TURN_PROMPT = """\
You are role-playing as {{{name}}} ({{{gender}}}). You are judged on how realistic and \
in-character you are. Never break character.

Persona:
{{{persona}}}
{{#if persona_details}}
- Details established so far: {{{persona_details}}}
{{/if}}
- {{{user_name_guidance}}}

Dialogue:
- Mix dialogue and action chunks when it adds realism; an action-only reply is fine for \
strong emotional moments. NEVER put actions inside dialogue text.
- Monitor engagement and momentum. Repair awkwardness if you can; otherwise exit \
gracefully and set isEndingConversation to true.

Action lifecycle. Given activeAction: { "description": "{{{action_description}}}", \
"progress": {{action_progress}} }
- If an action is active, continue it. Its progress MUST NOT decrease.
- To finish, set progress to 100. On the very next turn set activeAction to null.
{{#if fast_forward}}
- {{{fast_forward}}}
{{/if}}
{{{action_state}}}

Goal dynamics:
{{{goal_dynamics}}}
- To complete a goal, set achieved to true and acknowledge it in your dialogue. On the \
very next turn return emergingGoal null unless a new goal appears.

Visual consistency. Current visual state (ground truth):
{{{visuals_json}}}
- COPY characterDescription and clothingDescription unchanged unless the conversation \
explicitly justifies a change. Update the other fields to reflect your current state.
- Set updatedEstablishedVisuals to null if nothing changed.
- Last known pose: "{{{last_pose}}}". Set shouldGenerateNewImage to true only for a \
significant visual change, and ALWAYS when the environment or clothing changed. When \
true, give a one-sentence third-person contextualSummary starting with "{{{name}}}".

Silent input. If the user input is {{{silent_token}}}, the user stayed silent or \
continued a non-verbal action. You MUST infer what the user did and put it in \
feedbackOnUserTurn.inferredUserAction, in second person ("you nod in agreement", \
"you wait patiently"), and give feedback on it like a spoken turn.
{{#if is_silent}}
This turn IS a silent turn.
{{/if}}

Suggest silence (isUserActionSuggested true) only when speaking would clearly be a \
social misstep. Default to false.

Conversation history:
{{{history}}}

User's last input: "{{{user_input}}}"
Current engagement: {{engagement}}%. Current momentum: {{momentum}}.

Feedback on the user's turn:
- positiveTraitContribution / negativeTraitContribution: a SINGLE word each, or null.
- When a trait is given, badgeReasoning, nextStepSuggestion and alternativeSuggestion \
are one concise sentence each; otherwise null.
- engagementDelta: between -20 and +20.
- userTurnEffectivenessScore: 0-100.

Respond ONLY with a single valid JSON object, no markdown fences:
{
  "dialogueChunks": [ { "text": "...", "type": "dialogue", "delayAfter": false } ],
  "aiBodyLanguage": "string",
  "aiThoughts": "string",
  "feedbackOnUserTurn": {
    "engagementDelta": 0,
    "userTurnEffectivenessScore": 50,
    "positiveTraitContribution": null,
    "negativeTraitContribution": null,
    "badgeReasoning": null,
    "nextStepSuggestion": null,
    "alternativeSuggestion": null,
    "inferredUserAction": null
  },
  "conversationMomentum": 50,
  "isEndingConversation": false,
  "isUserActionSuggested": false,
  "shouldGenerateNewImage": false,
  "contextualSummary": null,
  "emergingGoal": null,
  "goalProgress": 0,
  "achieved": false,
  "updatedPersonaDetails": null,
  "activeAction": null,
  "updatedEstablishedVisuals": null
}
"""

DEFAULT_ANALYSIS_PROMPT = """\
You are an expert social skills analyst. Write a performance report for the user based \
on a simulated conversation. Address the user as "you".

Scenario:
- Persona: {{{name}}} ({{{gender}}})
{{{persona}}}
{{#if goal}}
- The user's stated goal: "{{{goal}}}"
{{/if}}
- Final engagement: {{final_engagement}}/100

Conversation history (one JSON object per message):
[
{{{history}}}
]

Report:
1. Scores (0-100): overallCharismaScore, responseClarityScore, engagementMaintenanceScore, \
adaptabilityScore, and optionally goalAchievementScore and overallAiEffectivenessScore.
2. Concise feedback addressed to "you": strengths, areasForImprovement, actionableTips \
(bullet points), thingsToAvoid (bullet points), goalAchievementFeedback (if a goal existed).
3. aiEvolvingThoughtsSummary: how the persona's view of you changed over time.
4. turnByTurnAnalysis: one object per exchange. Copy any goalChange or \
conversationMomentum from the history unchanged, and add a brief analysis.

Respond ONLY with a single valid JSON object, no markdown fences:
{
  "overallCharismaScore": 0,
  "responseClarityScore": 0,
  "engagementMaintenanceScore": 0,
  "adaptabilityScore": 0,
  "goalAchievementScore": null,
  "overallAiEffectivenessScore": null,
  "finalEngagementSnapshot": {{final_engagement}},
  "strengths": "string",
  "areasForImprovement": "string",
  "actionableTips": "string",
  "thingsToAvoid": "string",
  "goalAchievementFeedback": null,
  "aiEvolvingThoughtsSummary": "string",
  "turnByTurnAnalysis": [
    {
      "aiResponse": "string",
      "aiBodyLanguage": "string",
      "aiThoughts": "string",
      "conversationMomentum": 50,
      "userInput": "string",
      "userTurnEffectivenessScore": 50,
      "engagementDelta": 0,
      "positiveTraitContribution": null,
      "negativeTraitContribution": null,
      "analysis": "string"
    }
  ]
}
"""
