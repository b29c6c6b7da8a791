"""Shared test doubles and canned text-service replies."""

import json
from typing import Any

from sosheiq.retry import RetryPolicy


class StubLLM:
    """Deterministic LLM stand-in for tests.

    Provide a dict mapping stage name -> list of responses (in call order).
    A response that is an exception instance is raised instead of returned.
    """

    def __init__(self, responses: dict[str, list[Any]]) -> None:
        self._queues: dict[str, list[Any]] = {k: list(v) for k, v in responses.items()}
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, stage: str, prompt: str) -> str:
        self.calls.append((stage, prompt))
        queue = self._queues.get(stage)
        if not queue:
            raise AssertionError(
                f"StubLLM: unexpected call to stage={stage!r} "
                f"(no responses queued). calls so far: {len(self.calls)}"
            )
        response = queue.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def queue(self, stage: str, *responses: Any) -> None:
        self._queues.setdefault(stage, []).extend(responses)

    def prompts(self, stage: str) -> list[str]:
        return [p for s, p in self.calls if s == stage]

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed."""
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubLLM: unused responses remain: {leftover}")


class StubImages:
    """Image service stand-in: returns "img-1", "img-2", ... or raises."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.prompts: list[str] = []

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise RuntimeError("image backend exploded")
        return f"img-{len(self.prompts)}"


async def no_sleep(_seconds: float) -> None:
    return None


def fast_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, backoff_seconds=0, timeout_seconds=None, sleep=no_sleep)


VISUALS = {
    "characterDescription": "a woman in her late 20s with long curly brown hair and green eyes",
    "clothingDescription": "wearing a black t-shirt and blue jeans",
    "heldObjects": "holding a coffee mug",
    "bodyPosition": "sitting at a small wooden table",
    "gazeDirection": "looking at you",
    "positionRelativeToUser": "across the table from you",
    "environmentDescription": "in a cozy coffee shop",
    "currentPoseAndAction": "leaning forward with a curious smile",
    "facialAccessories": "",
}


def start_reply(**overrides: Any) -> str:
    data: dict[str, Any] = {
        "aiName": "Maya Chen",
        "scenarioBackstory": None,
        "conversationStarter": "ai",
        "initialDialogueChunks": [{"text": "Hey, is this seat taken?", "type": "dialogue"}],
        "initialBodyLanguage": "Smiling, relaxed.",
        "initialAiThoughts": "You look friendly.",
        "initialEngagementScore": 30,
        "initialConversationMomentum": 55,
        "contextualSummary": "Maya Chen waves as you walk in.",
        "establishedVisuals": dict(VISUALS),
    }
    data.update(overrides)
    return json.dumps(data)


def turn_reply(**overrides: Any) -> str:
    data: dict[str, Any] = {
        "dialogueChunks": [{"text": "That's a fair point.", "type": "dialogue"}],
        "aiBodyLanguage": "Nods slowly.",
        "aiThoughts": "You're thoughtful.",
        "feedbackOnUserTurn": {
            "engagementDelta": 5,
            "userTurnEffectivenessScore": 70,
            "positiveTraitContribution": "Curious",
            "negativeTraitContribution": None,
            "badgeReasoning": "You asked a follow-up question.",
            "nextStepSuggestion": "Share something about yourself.",
            "alternativeSuggestion": "Ask about her work.",
            "inferredUserAction": None,
        },
        "conversationMomentum": 60,
        "isEndingConversation": False,
        "isUserActionSuggested": False,
        "shouldGenerateNewImage": False,
        "contextualSummary": None,
        "emergingGoal": None,
        "goalProgress": 0,
        "achieved": False,
        "updatedPersonaDetails": None,
        "activeAction": None,
        "updatedEstablishedVisuals": None,
    }
    feedback = overrides.pop("feedback", None)
    if feedback:
        data["feedbackOnUserTurn"] = {**data["feedbackOnUserTurn"], **feedback}
    data.update(overrides)
    return json.dumps(data)


def analysis_reply(**overrides: Any) -> str:
    data: dict[str, Any] = {
        "overallCharismaScore": 72,
        "responseClarityScore": 80,
        "engagementMaintenanceScore": 65,
        "adaptabilityScore": 70,
        "goalAchievementScore": None,
        "overallAiEffectivenessScore": 90,
        "finalEngagementSnapshot": 99,
        "strengths": "You asked good questions.",
        "areasForImprovement": "Share more about yourself.",
        "actionableTips": "* Mirror her energy",
        "thingsToAvoid": "* One-word replies",
        "goalAchievementFeedback": None,
        "aiEvolvingThoughtsSummary": "She warmed up to you.",
        "turnByTurnAnalysis": [],
    }
    data.update(overrides)
    return json.dumps(data)
