"""Tests for ConversationService."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from recruiter.config import Settings
from recruiter.dialogue import ConversationService, DialogueEngine
from recruiter.dialogue.engine import (
    APPLICATION_OFFER,
    ESCALATION_MESSAGE,
    STILL_THERE,
)
from recruiter.dialogue.service import (
    APPLICATION_INTRO,
    extract_mention,
)
from recruiter.errors import PersistenceError
from recruiter.llm import IntentClassifier
from recruiter.llm.classifier import FALLBACK_REPLY
from recruiter.models import (
    ApplicantRecord,
    ApplicationStatus,
    CommunityStatus,
    ConversationStep,
    InboundMessage,
    WaiterKind,
)

from conftest import eventually, llm_reply


def make_message(message_id: str, content: str, user_id="u1", channel_id="c1"):
    return InboundMessage(
        message_id, channel_id, user_id, content, datetime.now(timezone.utc)
    )


UNCLEAR = llm_reply("UNCLEAR_INTENT", "Could you say more?", requires_clarification=True)


class TestScenarios:
    """End-to-end conversation scenarios."""

    @pytest.mark.asyncio
    async def test_greeting_then_application(
        self, conversations, storage, platform, mock_llm
    ):
        """Test "hi" followed by "I want to apply"."""
        await storage.save_applicant(ApplicantRecord("u1", "alice", channel_id="c1"))
        await conversations.begin_conversation("u1", "c1", "Hello, alice!")
        mock_llm.complete.side_effect = [
            llm_reply("SOCIAL_GREETING", "Hey! What brings you here?"),
            llm_reply("GUILD_APPLICATION_INTEREST", "Awesome!"),
        ]

        assert await conversations.process_turn(make_message("m1", "hi"))
        state = await storage.get_conversation_state("u1")
        assert state.current_step is ConversationStep.GENERAL_LISTENING
        assert platform.messages_in("c1")[-1] == "Hey! What brings you here?"

        assert await conversations.process_turn(make_message("m2", "I want to apply"))
        state = await storage.get_conversation_state("u1")
        assert state.current_step is ConversationStep.GENERAL_LISTENING
        assert state.last_intent == "GUILD_APPLICATION_INTEREST"
        assert state.last_processed_message_id == "m2"
        assert platform.messages_in("c1")[-2:] == ["Awesome!", APPLICATION_OFFER]

        # Second classifier call saw the first exchange but not its own message
        payload = json.loads(
            mock_llm.complete.call_args.kwargs["messages"][0]["content"]
        )
        contents = [entry["content"] for entry in payload["history"]]
        assert "hi" in contents
        assert "I want to apply" not in contents

    @pytest.mark.asyncio
    async def test_turns_are_logged(self, conversations, storage, seed):
        """Test that user and agent turns land in the turn log."""
        await seed()
        await conversations.process_turn(make_message("m1", "hello"))

        turns = await storage.get_turns("u1")
        assert [t.author for t in turns] == ["user", "agent"]
        assert turns[0].external_message_id == "m1"
        assert turns[1].classifier_output["intent"] == "GENERAL_QUESTION"

    @pytest.mark.asyncio
    async def test_message_without_conversation_ignored(self, conversations):
        assert not await conversations.process_turn(make_message("m1", "hello"))

    @pytest.mark.asyncio
    async def test_idle_conversation_ignores_messages(self, conversations, seed, platform):
        await seed(step=ConversationStep.IDLE)
        assert not await conversations.process_turn(make_message("m1", "hello"))
        assert platform.sent == []


class TestIdempotence:
    """Tests for duplicate deliveries."""

    @pytest.mark.asyncio
    async def test_replay_produces_one_reply(self, conversations, storage, platform, seed):
        """Test that the same message id is processed once."""
        await seed()
        message = make_message("m1", "hello")

        assert await conversations.process_turn(message)
        assert not await conversations.process_turn(message)

        turns = await storage.get_turns("u1")
        assert len([t for t in turns if t.author == "user"]) == 1
        assert len(platform.sent) == 1

    @pytest.mark.asyncio
    async def test_durable_dedup_survives_restart(
        self, conversations, storage, platform, seed, mock_llm, waiters, runner, settings
    ):
        """Test that a new service instance still refuses a processed message."""
        await seed()
        message = make_message("m1", "hello")
        assert await conversations.process_turn(message)

        fresh = ConversationService(
            storage,
            IntentClassifier(mock_llm),
            DialogueEngine(settings),
            waiters,
            runner,
            settings,
        )
        try:
            assert not await fresh.process_turn(message)
        finally:
            await fresh.stop()
        assert len(platform.sent) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates(self, conversations, platform, seed):
        """Test that two concurrent deliveries of one message yield one turn."""
        await seed()
        message = make_message("m1", "hello")

        results = await asyncio.gather(
            conversations.process_turn(message),
            conversations.process_turn(message),
        )
        assert sorted(results) == [False, True]
        assert len(platform.sent) == 1


class TestClarificationLimit:
    """Tests for bounded clarification retries."""

    @pytest.mark.asyncio
    async def test_escalates_after_three_cycles(
        self, conversations, storage, platform, seed, mock_llm
    ):
        """Test that three clarification cycles are allowed, then escalation."""
        await seed()
        mock_llm.complete.return_value = UNCLEAR

        for i in range(1, 4):
            await conversations.process_turn(make_message(f"m{i}", "hmm"))
            state = await storage.get_conversation_state("u1")
            assert state.current_step is ConversationStep.AWAITING_CLARIFICATION
            assert state.attempt_count == i

        await conversations.process_turn(make_message("m4", "hmm"))
        state = await storage.get_conversation_state("u1")
        assert state.current_step is ConversationStep.IDLE
        assert state.attempt_count == 0
        assert platform.messages_in("c1")[-1] == ESCALATION_MESSAGE
        assert len(platform.staff) == 1

        applicant = await storage.get_applicant("u1")
        assert applicant.community_status is CommunityStatus.ESCALATED
        assert await storage.get_trace_events(event_types=["escalated"])

    @pytest.mark.asyncio
    async def test_clarification_waiter_armed(self, conversations, waiters, seed, mock_llm):
        await seed()
        mock_llm.complete.return_value = UNCLEAR
        await conversations.process_turn(make_message("m1", "hmm"))

        waiter = waiters.get("u1")
        assert waiter is not None
        assert waiter.kind is WaiterKind.CLARIFICATION


class TestClassifierFailures:
    """Tests for degraded turns."""

    @pytest.mark.asyncio
    async def test_failures_fall_back_and_notify_once(
        self, conversations, storage, platform, seed, mock_llm
    ):
        """Test fallback replies and a single staff alert at the threshold."""
        await seed()
        mock_llm.complete.side_effect = RuntimeError("LLM API error: overloaded")

        for i in range(1, 4):
            assert await conversations.process_turn(make_message(f"m{i}", "hello"))

        assert platform.messages_in("c1") == [FALLBACK_REPLY] * 3
        alerts = [s for s in platform.staff if "classifier" in s]
        assert len(alerts) == 1

        state = await storage.get_conversation_state("u1")
        assert state.attempt_count == 3
        assert await storage.get_trace_events(event_types=["degraded_turn"])

    @pytest.mark.asyncio
    async def test_unavailable_classifier_notifies_immediately(
        self, storage, platform, seed, waiters, runner, settings
    ):
        await seed()
        service = ConversationService(
            storage, IntentClassifier(None), DialogueEngine(settings), waiters, runner, settings
        )
        try:
            assert await service.process_turn(make_message("m1", "hello"))
        finally:
            await service.stop()

        assert platform.messages_in("c1") == [FALLBACK_REPLY]
        assert any("classifier" in s for s in platform.staff)


class TestWaiters:
    """Tests for live waiters and timeouts."""

    @pytest.mark.asyncio
    async def test_live_waiter_processes_message(
        self, conversations, storage, waiters, platform
    ):
        """Test that a message offered to the armed waiter runs a turn."""
        await storage.save_applicant(ApplicantRecord("u1", "alice", channel_id="c1"))
        await conversations.begin_conversation("u1", "c1")

        assert waiters.offer(make_message("m1", "hello")) is not None

        async def processed():
            state = await storage.get_conversation_state("u1")
            return state.last_processed_message_id == "m1"

        await eventually(processed)
        await eventually(lambda: waiters.get("u1") is not None)
        assert waiters.get("u1").kind is WaiterKind.GENERAL

    @pytest.mark.asyncio
    async def test_timeout_goes_idle(
        self, storage, platform, waiters, runner, mock_llm
    ):
        """Test that an expired waiter nudges the user and goes idle."""
        settings = Settings(initial_response_timeout=0.05)
        service = ConversationService(
            storage, IntentClassifier(mock_llm), DialogueEngine(settings), waiters, runner, settings
        )
        try:
            await service.begin_conversation("u1", "c1")

            await eventually(
                lambda: storage.get_trace_events(event_types=["waiter_expired"])
            )
            state = await storage.get_conversation_state("u1")
            assert state.current_step is ConversationStep.IDLE
            assert platform.messages_in("c1")[-1] == STILL_THERE
            assert waiters.get("u1") is None
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_stale_expiry_ignored(self, conversations, storage, seed):
        """Test that an expiry for a superseded waiter changes nothing."""
        state = await seed(step=ConversationStep.AWAITING_CLARIFICATION)
        stale = state.timeout_at - timedelta(minutes=5)

        assert not await conversations.expire("u1", WaiterKind.CLARIFICATION, stale)
        assert not await conversations.expire("u1", WaiterKind.GENERAL, state.timeout_at)
        current = await storage.get_conversation_state("u1")
        assert current.current_step is ConversationStep.AWAITING_CLARIFICATION


class TestFailurePolicy:
    """Tests for persistence and platform failures."""

    @pytest.mark.asyncio
    async def test_state_write_retried_once(
        self, conversations, storage, runner, seed, monkeypatch
    ):
        """Test that a single failed state write is retried."""
        await seed()
        original = storage.save_conversation_state
        attempts = []

        async def flaky(state):
            attempts.append(state)
            if len(attempts) == 1:
                raise PersistenceError("database is locked")
            await original(state)

        monkeypatch.setattr(storage, "save_conversation_state", flaky)
        await conversations.process_turn(make_message("m1", "hello"))

        assert len(attempts) == 2
        assert runner.consistency_warnings == 0
        state = await storage.get_conversation_state("u1")
        assert state.current_step is ConversationStep.GENERAL_LISTENING

    @pytest.mark.asyncio
    async def test_persistent_write_failure_still_replies(
        self, conversations, storage, platform, runner, seed, monkeypatch
    ):
        """Test that the reply goes out even when state cannot be saved."""
        await seed()

        async def broken(state):
            raise PersistenceError("disk full")

        monkeypatch.setattr(storage, "save_conversation_state", broken)
        assert await conversations.process_turn(make_message("m1", "hello"))

        assert platform.messages_in("c1") == ["Sure!"]
        assert runner.consistency_warnings == 1
        assert await storage.get_trace_events(event_types=["consistency_warning"])

    @pytest.mark.asyncio
    async def test_send_failure_reported_to_staff(
        self, conversations, storage, platform, seed
    ):
        """Test that a failed reply is logged, traced and escalated."""
        await seed()
        platform.failing.add("send_message")

        assert await conversations.process_turn(make_message("m1", "hello"))

        assert any("send_message" in s for s in platform.staff)
        assert await storage.get_trace_events(event_types=["platform_action_failed"])
        state = await storage.get_conversation_state("u1")
        assert state.current_step is ConversationStep.GENERAL_LISTENING


class TestVouchMentions:
    """Tests for resolving who vouches."""

    @pytest.mark.asyncio
    async def test_named_voucher_starts_vouch(
        self, conversations, storage, platform, waiters, seed, mock_llm
    ):
        """Test that a resolvable name hands over to the vouch coordinator."""
        await seed()
        platform.members["alice"] = "v1"
        mock_llm.complete.return_value = llm_reply(
            "COMMUNITY_INTEREST_VOUCH",
            "I'll ask alice.",
            vouch_person_name="alice",
            original_vouch_text="alice invited me",
        )

        await conversations.process_turn(make_message("m1", "alice invited me"))

        state = await storage.get_conversation_state("u1")
        assert state.current_step is ConversationStep.VOUCH_ACTIVE
        assert state.vouch_initiator_id == "v1"
        assert state.vouch_prompt_message_id is not None
        assert ("c1", "v1") == platform.called("set_channel_permissions")[0][:2]
        assert platform.called("post_reaction_prompt")
        assert waiters.get("u1").kind is WaiterKind.VOUCH_REACTION

    @pytest.mark.asyncio
    async def test_mention_answers_vouch_question(
        self, conversations, storage, platform, seed, mock_llm
    ):
        """Test that an @mention while awaiting one resolves the voucher."""
        await seed(step=ConversationStep.AWAITING_VOUCH_MENTION, timeout=600, attempt_count=1)
        platform.members["555"] = "555"
        mock_llm.complete.return_value = llm_reply("OTHER", "hm")

        await conversations.process_turn(make_message("m1", "<@555> can vouch"))

        state = await storage.get_conversation_state("u1")
        assert state.current_step is ConversationStep.VOUCH_ACTIVE
        assert state.vouch_initiator_id == "555"
        assert state.attempt_count == 0

    @pytest.mark.asyncio
    async def test_unknown_voucher_asks_again(
        self, conversations, storage, platform, seed, mock_llm
    ):
        await seed()
        mock_llm.complete.return_value = llm_reply(
            "COMMUNITY_INTEREST_VOUCH", "ok", vouch_person_name="ghost"
        )
        await conversations.process_turn(make_message("m1", "ghost knows me"))

        state = await storage.get_conversation_state("u1")
        assert state.current_step is ConversationStep.AWAITING_VOUCH_MENTION
        assert "ghost" in platform.messages_in("c1")[-1]

    def test_extract_mention(self):
        assert extract_mention("ask <@!123> please") == "123"
        assert extract_mention("my friend @bob.smith") == "bob.smith"
        assert extract_mention("no mention here") is None


class TestApplicationFlow:
    """Tests for the application sub-workflow entry points."""

    @pytest.mark.asyncio
    async def test_start_application_in_channel(
        self, conversations, storage, platform, waiters, seed
    ):
        await seed(step=ConversationStep.GENERAL_LISTENING)
        state = await conversations.start_application("u1")

        assert state.current_step is ConversationStep.AWAITING_APPLICATION_ANSWER
        assert platform.messages_in("c1")[-1] == APPLICATION_INTRO
        assert waiters.get("u1").kind is WaiterKind.GENERAL

    @pytest.mark.asyncio
    async def test_dedicated_application_channel(
        self, conversations, storage, waiters, seed
    ):
        """Test that a dedicated channel takes the conversation off the engine."""
        await seed(step=ConversationStep.GENERAL_LISTENING)
        state = await conversations.start_application("u1", "app-1")

        assert state.current_step is ConversationStep.APPLICATION_ACTIVE
        assert not state.has_waiter
        assert waiters.get("u1") is None

        await conversations.finish_application("u1", ApplicationStatus.ACCEPTED)
        applicant = await storage.get_applicant("u1")
        assert applicant.application_status is ApplicationStatus.ACCEPTED
        assert applicant.conversation.current_step is ConversationStep.IDLE

    @pytest.mark.asyncio
    async def test_start_application_without_conversation(self, conversations):
        with pytest.raises(ValueError):
            await conversations.start_application("nobody")
