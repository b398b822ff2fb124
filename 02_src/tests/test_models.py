"""Tests for data models."""

from datetime import datetime, timedelta, timezone

import pytest

from recruiter.models import (
    STEP_WAITERS,
    Classification,
    ConversationState,
    ConversationStep,
    Intent,
    TurnRecord,
    WaiterKind,
)


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestConversationState:
    """Tests for ConversationState transitions."""

    def test_default_is_idle_without_waiter(self):
        """Test that a fresh state is idle with nothing armed."""
        state = ConversationState(user_id="u1")
        assert state.current_step is ConversationStep.IDLE
        assert state.active_waiter_kind is WaiterKind.NONE
        assert state.timeout_at is None
        assert state.is_consistent()

    def test_enter_arms_waiter_and_deadline(self):
        """Test that enter() derives waiter kind and timeout from the step."""
        state = ConversationState(user_id="u1", channel_id="c1")
        state.enter(ConversationStep.AWAITING_CLARIFICATION, NOW, 900)

        assert state.active_waiter_kind is WaiterKind.CLARIFICATION
        assert state.step_entry_time == NOW
        assert state.timeout_at == NOW + timedelta(seconds=900)
        assert state.is_consistent()

    def test_enter_waiting_step_requires_timeout(self):
        """Test that a step arming a waiter cannot be entered without a timeout."""
        state = ConversationState(user_id="u1")
        with pytest.raises(ValueError):
            state.enter(ConversationStep.GENERAL_LISTENING, NOW)

    def test_enter_application_active_has_no_waiter(self):
        """Test that ApplicationActive owns its input without a waiter."""
        state = ConversationState(user_id="u1")
        state.enter(ConversationStep.APPLICATION_ACTIVE, NOW)
        assert not state.has_waiter
        assert state.timeout_at is None
        assert state.sub_workflow == "application"

    def test_leaving_vouch_clears_vouch_bindings(self):
        """Test that vouch ids only survive inside VouchActive."""
        state = ConversationState(user_id="u1", channel_id="c1")
        state.enter(ConversationStep.VOUCH_ACTIVE, NOW, 60)
        state.vouch_initiator_id = "v1"
        state.vouch_prompt_message_id = "p1"

        state.enter(ConversationStep.GENERAL_LISTENING, NOW, 60)
        assert state.vouch_initiator_id is None
        assert state.vouch_prompt_message_id is None

    def test_reset_clears_attempts(self):
        """Test that reset() goes idle and zeroes attempts."""
        state = ConversationState(user_id="u1", attempt_count=2)
        state.enter(ConversationStep.AWAITING_CLARIFICATION, NOW, 60)
        state.reset(NOW)
        assert state.current_step is ConversationStep.IDLE
        assert state.attempt_count == 0
        assert state.timeout_at is None

    def test_expects_input(self):
        """Test that only engine-owned waiting steps expect free-form input."""
        state = ConversationState(user_id="u1")
        state.enter(ConversationStep.AWAITING_INITIAL_MESSAGE, NOW, 60)
        assert state.expects_input

        state.enter(ConversationStep.VOUCH_ACTIVE, NOW, 60)
        assert state.has_waiter
        assert not state.expects_input

    def test_every_step_has_a_waiter_entry(self):
        """Test that each step maps to exactly one waiter kind."""
        assert set(STEP_WAITERS) == set(ConversationStep)
        for step in ConversationStep:
            state = ConversationState(user_id="u1")
            state.enter(step, NOW, 30)
            assert state.is_consistent(), step

    def test_inconsistent_state_detected(self):
        """Test that a waiter/timeout mismatch is detected."""
        state = ConversationState(
            user_id="u1",
            current_step=ConversationStep.GENERAL_LISTENING,
            active_waiter_kind=WaiterKind.GENERAL,
        )
        assert not state.is_consistent()


class TestIntent:
    """Tests for Intent parsing."""

    def test_parse_known(self):
        assert Intent.parse("guild_application_interest") is Intent.GUILD_APPLICATION_INTEREST

    def test_parse_unknown_maps_to_other(self):
        """Test that unknown intents fall back to OTHER."""
        assert Intent.parse("ORDER_PIZZA") is Intent.OTHER
        assert Intent.parse(None) is Intent.OTHER


class TestClassification:
    """Tests for Classification."""

    def test_vouch_person_name(self):
        c = Classification(
            intent=Intent.COMMUNITY_INTEREST_VOUCH,
            suggested_reply="ok",
            requires_clarification=False,
            entities={"vouch_person_name": "alice"},
        )
        assert c.vouch_person_name == "alice"

    def test_to_dict(self):
        """Test the stored classifier output shape."""
        c = Classification(
            intent=Intent.OTHER,
            suggested_reply="hi",
            requires_clarification=False,
            confidence=0.4,
        )
        data = c.to_dict()
        assert data["intent"] == "OTHER"
        assert data["suggested_reply"] == "hi"
        assert data["confidence"] == 0.4
        assert data["degraded"] is False


class TestTurnRecord:
    """Tests for TurnRecord."""

    def test_history_roles(self):
        """Test that agent turns become assistant history entries."""
        user = TurnRecord("u1", "c1", "user", "hello", NOW)
        agent = TurnRecord("u1", "c1", "agent", "hi there", NOW)
        assert user.as_history_entry() == {"role": "user", "content": "hello"}
        assert agent.as_history_entry() == {"role": "assistant", "content": "hi there"}

    def test_immutable(self):
        """Test that TurnRecords cannot be edited."""
        turn = TurnRecord("u1", "c1", "user", "hello", NOW)
        with pytest.raises(Exception):
            turn.content = "changed"
