"""Tests for sosheiq.pipeline.orchestrator.TurnOrchestrator.

The text and image services are stubbed; each test drives one or two turns
and inspects the returned state, messages and outcome.
"""

import random

import pytest

from helpers import StubImages, StubLLM, analysis_reply, fast_policy, start_reply, turn_reply
from sosheiq.errors import MalformedResponse, ServiceUnavailable
from sosheiq.models import (
    ActiveAction,
    ActiveGoal,
    ChatMessage,
    DialogueChunk,
    EstablishedVisuals,
    Scenario,
    SessionState,
)
from sosheiq.pipeline.orchestrator import SILENT_FALLBACK_ACTION, TurnOrchestrator, to_second_person
from sosheiq.prompts import SILENT_USER_ACTION_TOKEN

VISUALS = EstablishedVisuals(
    character_description="a woman with long curly brown hair",
    clothing_description="wearing a black t-shirt",
    environment_description="in a cozy coffee shop",
    current_pose_and_action="sipping coffee",
)


def _orchestrator(llm: StubLLM, images: StubImages | None = None) -> TurnOrchestrator:
    return TurnOrchestrator(llm, images, retry_policy=fast_policy(), rng=random.Random(7))


def _state(scenario: Scenario, **fields) -> SessionState:
    data = {"scenario": scenario, "visuals": VISUALS, "engagement": 40, "current_image": "old-img"}
    data.update(fields)
    return SessionState(**data)


class TestStartSession:
    async def test_opening_message_and_state(self, scenario) -> None:
        llm = StubLLM({"start": [start_reply()]})
        images = StubImages()
        state, message = await _orchestrator(llm, images).start_session(scenario)

        assert state.engagement == 30
        assert state.visuals.environment_description == "in a cozy coffee shop"
        assert state.current_image == "img-1"
        assert state.image_prompt.startswith("Photorealistic portrait of")
        assert message.sender == "persona"
        assert message.text == "Hey, is this seat taken?"
        assert message.image == "img-1"
        assert '"aiName": "Maya Chen"' in llm.prompts("start")[0]
        llm.assert_exhausted()

    async def test_stated_goal_is_active_from_the_start(self) -> None:
        scenario = Scenario(ai_name="Maya Chen", ai_gender="Female", conversation_goal="Get her number")
        llm = StubLLM({"start": [start_reply()]})
        state, message = await _orchestrator(llm).start_session(scenario)
        assert state.active_goal == ActiveGoal(text="Get her number")
        assert message.goal_change.type == "new"

    async def test_missing_name_and_gender_are_inferred(self) -> None:
        llm = StubLLM({"start": [start_reply()]})
        state, _ = await _orchestrator(llm).start_session(Scenario())
        assert state.scenario.ai_name
        assert state.scenario.ai_gender in ("Male", "Female")

    async def test_unparseable_reply_falls_back_to_default_opening(self, scenario, caplog) -> None:
        llm = StubLLM({"start": ["I'm sorry, I can't help with that."]})
        state, message = await _orchestrator(llm).start_session(scenario)
        assert message.text == "Hello! I'm Maya Chen. Let's talk."
        assert state.visuals.environment_description == "in a neutral, non-descript room"
        assert "default persona opening" in caplog.text

    async def test_user_starter_without_image_service(self, scenario) -> None:
        llm = StubLLM({"start": [start_reply(conversationStarter="user", initialDialogueChunks=[])]})
        state, message = await _orchestrator(llm).start_session(scenario)
        assert state.conversation_starter == "user"
        assert state.current_image is None
        assert message.segments == ()


class TestProcessTurn:
    async def test_user_announces_leaving(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply(
            isEndingConversation=True,
            dialogueChunks=[{"text": "Oh, okay. It was nice meeting you!"}],
            feedback={"engagementDelta": -10},
        )]})
        state = _state(scenario)
        new_state, reply, outcome = await _orchestrator(llm).process_turn(state, [], "I have to go")

        assert outcome.ended
        assert outcome.end_reason == "persona_ended"
        assert new_state.engagement == 28
        assert new_state.active_goal is None
        assert new_state.turn == 1
        assert reply.text == "Oh, okay. It was nice meeting you!"
        assert outcome.user_message.text == "I have to go"
        assert outcome.user_message.feedback.engagement_delta == -10
        assert state.engagement == 40

    async def test_prompt_carries_input_and_engagement(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply()]})
        await _orchestrator(llm).process_turn(_state(scenario), [], "Hello there")
        prompt = llm.prompts("turn")[0]
        assert 'User\'s last input: "Hello there"' in prompt
        assert "Current engagement: 40%." in prompt

    async def test_action_progress_is_not_lowered(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply(activeAction={"description": "walking to the cafe", "progress": 40})]})
        state = _state(scenario, active_action=ActiveAction(description="walking to the cafe", progress=60))
        new_state, _, _ = await _orchestrator(llm).process_turn(state, [], "Keep walking")
        assert new_state.active_action.progress == 60
        assert not new_state.action_pending_clear

    async def test_fast_forward_completes_action(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply()]})
        state = _state(scenario, active_action=ActiveAction(description="walking to the cafe", progress=20))
        new_state, _, _ = await _orchestrator(llm).process_turn(state, [], "Let's go", fast_forward=True)
        assert new_state.active_action.progress == 100
        assert new_state.action_pending_clear
        assert "The user chose to fast-forward." in llm.prompts("turn")[0]

    async def test_goal_achieved_then_cleared(self, scenario) -> None:
        llm = StubLLM({"turn": [
            turn_reply(emergingGoal="Ask for her number", achieved=True),
            turn_reply(),
        ]})
        orch = _orchestrator(llm)
        state = _state(scenario, active_goal=ActiveGoal(text="Ask for her number", progress=70))

        first, _, outcome = await orch.process_turn(state, [], "Can I call you sometime?")
        assert first.active_goal.achieved
        assert first.goal_pending_clear
        assert outcome.goal_change.type == "achieved"

        second, _, outcome = await orch.process_turn(first, [], "Anyway...")
        assert second.active_goal is None
        assert not second.goal_pending_clear
        assert outcome.goal_change.type == "cleared"

    async def test_malformed_reply_leaves_state_untouched(self, scenario) -> None:
        llm = StubLLM({"turn": ["{aiName:Alex}"]})
        state = _state(scenario)
        before = state.model_dump()
        with pytest.raises(MalformedResponse):
            await _orchestrator(llm).process_turn(state, [], "Hello")
        assert state.model_dump() == before
        assert len(llm.calls) == 1

    async def test_transient_failure_is_retried(self, scenario) -> None:
        llm = StubLLM({"turn": [ServiceUnavailable("down"), turn_reply()]})
        new_state, _, _ = await _orchestrator(llm).process_turn(_state(scenario), [], "Hello")
        assert new_state.turn == 1
        assert len(llm.calls) == 2

    async def test_empty_input_rejected(self, scenario) -> None:
        with pytest.raises(ValueError):
            await _orchestrator(StubLLM({})).process_turn(_state(scenario), [], "   ")

    async def test_silent_turn(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply(
            dialogueChunks=[],
            isSilentTurn=True,
            feedback={"inferredUserAction": "nods in agreement", "engagementDelta": 2},
        )]})
        new_state, reply, outcome = await _orchestrator(llm).process_turn(
            _state(scenario), [], SILENT_USER_ACTION_TOKEN
        )
        assert outcome.user_message.sender == "user_silent_action"
        assert outcome.user_message.text == "you nod in agreement"
        assert outcome.user_message.segments[0].type == "action"
        assert reply.segments == ()
        assert new_state.engagement == 40
        assert "This turn IS a silent turn." in llm.prompts("turn")[0]

    async def test_silent_turn_without_inference(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply(feedback={"inferredUserAction": None})]})
        _, _, outcome = await _orchestrator(llm).process_turn(_state(scenario), [], SILENT_USER_ACTION_TOKEN)
        assert outcome.user_message.text == SILENT_FALLBACK_ACTION

    async def test_gesture_only_turn(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply(feedback={"engagementDelta": 3})]})
        new_state, _, outcome = await _orchestrator(llm).process_turn(
            _state(scenario), [], gesture="  *smiles warmly*  "
        )
        assert outcome.gesture_message is None
        assert outcome.user_message.sender == "user_silent_action"
        assert outcome.user_message.text == "smiles warmly"
        assert outcome.user_message.segments[0].type == "action"
        assert outcome.user_message.feedback.engagement_delta == 3
        assert new_state.engagement == 41
        prompt = llm.prompts("turn")[0]
        assert 'User\'s last input: "smiles warmly"' in prompt
        assert "This turn IS a silent turn." not in prompt

    async def test_gesture_with_dialogue(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply()]})
        _, _, outcome = await _orchestrator(llm).process_turn(
            _state(scenario), [], "Hello there", gesture="*waves*"
        )
        assert outcome.gesture_message.sender == "user_silent_action"
        assert outcome.gesture_message.text == "waves"
        assert outcome.gesture_message.feedback is None
        assert outcome.user_message.sender == "user"
        assert outcome.user_message.text == "Hello there"
        assert outcome.user_message.feedback.engagement_delta == 5
        assert 'User\'s last input: "waves\nHello there"' in llm.prompts("turn")[0]

    async def test_gesture_with_silent_token_rejected(self, scenario) -> None:
        llm = StubLLM({})
        with pytest.raises(ValueError):
            await _orchestrator(llm).process_turn(_state(scenario), [], SILENT_USER_ACTION_TOKEN, gesture="nods")
        with pytest.raises(ValueError):
            await _orchestrator(llm).process_turn(_state(scenario), [], "", gesture=" ** ")
        assert llm.calls == []

    async def test_environment_change_regenerates_image(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply(
            updatedEstablishedVisuals={"environmentDescription": "on a busy street"},
        )]})
        images = StubImages()
        new_state, reply, outcome = await _orchestrator(llm, images).process_turn(
            _state(scenario), [], "Shall we walk?"
        )
        assert outcome.image_regenerated
        assert new_state.current_image == "img-1"
        assert reply.image == "img-1"
        assert reply.contextual_summary == "The scene shifts: on a busy street."
        assert "on a busy street" in images.prompts[0]

    async def test_no_visual_change_keeps_image(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply(updatedEstablishedVisuals={"gazeDirection": "looking away"})]})
        images = StubImages()
        new_state, reply, outcome = await _orchestrator(llm, images).process_turn(_state(scenario), [], "Hm")
        assert not outcome.image_regenerated
        assert images.prompts == []
        assert new_state.current_image == "old-img"
        assert new_state.visuals.gaze_direction == "looking away"
        assert reply.image is None

    async def test_image_failure_reuses_previous_image(self, scenario, caplog) -> None:
        llm = StubLLM({"turn": [turn_reply(shouldGenerateNewImage=True)]})
        new_state, reply, outcome = await _orchestrator(llm, StubImages(fail=True)).process_turn(
            _state(scenario), [], "Smile!"
        )
        assert outcome.image_failed
        assert not outcome.image_regenerated
        assert new_state.current_image == "old-img"
        assert reply.text == "That's a fair point."
        assert "Image generation failed" in caplog.text

    async def test_max_engagement_ends(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply(feedback={"engagementDelta": 10})]})
        new_state, _, outcome = await _orchestrator(llm).process_turn(
            _state(scenario, engagement=98), [], "You're great"
        )
        assert new_state.engagement == 100
        assert outcome.end_reason == "max_engagement"

    async def test_low_engagement_streak_ends(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply(feedback={"engagementDelta": -5})]})
        new_state, _, outcome = await _orchestrator(llm).process_turn(
            _state(scenario, engagement=0, zero_engagement_streak=2), [], "Whatever"
        )
        assert new_state.zero_engagement_streak == 3
        assert outcome.end_reason == "low_engagement"

    async def test_persona_ending_takes_precedence(self, scenario) -> None:
        llm = StubLLM({"turn": [turn_reply(isEndingConversation=True, feedback={"engagementDelta": 10})]})
        _, _, outcome = await _orchestrator(llm).process_turn(_state(scenario, engagement=98), [], "Bye")
        assert outcome.end_reason == "persona_ended"


class TestPauseAndEnd:
    def test_set_action_paused(self, scenario) -> None:
        orch = _orchestrator(StubLLM({}))
        state = _state(scenario, active_action=ActiveAction(description="walking", progress=30))
        paused = orch.set_action_paused(state, True)
        assert paused.active_action.paused
        assert orch.set_action_paused(_state(scenario), True).active_action is None

    async def test_report_uses_actual_final_engagement(self, scenario) -> None:
        llm = StubLLM({"analysis": [analysis_reply()]})
        history = [ChatMessage(sender="user", segments=(DialogueChunk(text="Hi!"),))]
        report = await _orchestrator(llm).end_session(_state(scenario, engagement=44), history)
        assert report.final_engagement_snapshot == 44
        assert report.overall_charisma_score == 72
        assert '"finalEngagementSnapshot": 44' in llm.prompts("analysis")[0]


@pytest.mark.parametrize("raw,expected", [
    ("nods in agreement", "you nod in agreement"),
    ("I smile", "you smile"),
    ("She watches the rain", "you watch the rain"),
    ("*shrugs*", "you shrug"),
    ("The user tries again", "you try again"),
    ("You lean back", "you lean back"),
    ("is listening intently", "you are listening intently"),
    ("has a sip of coffee", "you have a sip of coffee"),
    ("was quiet", "you were quiet"),
    ("does a little wave", "you do a little wave"),
    ("focuses on her", "you focus on her"),
    ("He kisses her hand", "you kiss her hand"),
    ("gazes out the window", "you gaze out the window"),
    ("relaxes into the chair", "you relax into the chair"),
    ("She's smiling", "you're smiling"),
    ("I am thinking", "you are thinking"),
    ("doesn't answer", "you don't answer"),
    ("", SILENT_FALLBACK_ACTION),
    (None, SILENT_FALLBACK_ACTION),
])
def test_to_second_person(raw, expected) -> None:
    assert to_second_person(raw) == expected
