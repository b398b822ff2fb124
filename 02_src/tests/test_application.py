"""Tests for Application and the HTTP API."""

import httpx
import pytest
import pytest_asyncio

from recruiter.api import create_fastapi_app
from recruiter.app import Application, message_from_payload
from recruiter.config import Settings
from recruiter.models import ApplicationStatus, ConversationStep, Topic, WaiterKind

from conftest import FakeChatPlatform, eventually


@pytest_asyncio.fixture
async def application(mock_llm):
    app = Application(
        db_path=":memory:",
        settings=Settings(),
        platform=FakeChatPlatform(),
        llm_provider=mock_llm,
    )
    await app.start()
    yield app
    await app.stop()


@pytest_asyncio.fixture
async def client(application):
    api = create_fastapi_app(application)
    transport = httpx.ASGITransport(app=api)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestApplicationStart:
    """Tests for Application.start()."""

    @pytest.mark.asyncio
    async def test_start_initializes_components(self, application):
        """Test that components are initialized in dependency order."""
        assert application._storage is not None
        assert application._tracker._event_bus is application._event_bus
        assert application._tracker._storage is application._storage
        assert application._conversations.waiters is application._waiters
        assert application._cleanup.is_running

    @pytest.mark.asyncio
    async def test_start_creates_database_tables(self, application):
        async with application._storage._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ) as cursor:
            tables = {row[0] for row in await cursor.fetchall()}
        assert {"applicants", "conversation_states", "turn_records"} <= tables

    @pytest.mark.asyncio
    async def test_start_without_llm_alerts_staff(self, monkeypatch):
        """Test that missing credentials degrade the classifier and alert staff."""
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        platform = FakeChatPlatform()
        app = Application(db_path=":memory:", settings=Settings(), platform=platform)
        await app.start()
        try:
            assert app._llm is None
            assert any("classifier is unavailable" in s for s in platform.staff)
        finally:
            await app.stop()


class TestEventFlow:
    """Tests for platform events travelling through the EventBus."""

    @pytest.mark.asyncio
    async def test_join_then_message(self, application, mock_llm):
        """Test a member joining and answering the greeting."""
        platform = application._platform
        await application.publish(
            Topic.MEMBER_JOINED, {"user_id": "u1", "username": "Alice"}
        )
        applicant = await application.storage.get_applicant("u1")
        channel_id = applicant.channel_id
        assert channel_id is not None

        await application.publish(
            Topic.MESSAGE_RECEIVED,
            {
                "message_id": "m1",
                "channel_id": channel_id,
                "author_id": "u1",
                "content": "just here to chat",
            },
        )

        await eventually(lambda: "Sure!" in platform.messages_in(channel_id))
        state = await application.storage.get_conversation_state("u1")
        assert state.current_step is ConversationStep.GENERAL_LISTENING
        assert mock_llm.complete.await_count == 1

        events = await application.storage.get_trace_events(
            event_types=["platform_event_received"]
        )
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_unmatched_reaction_ignored(self, application):
        await application.publish(
            Topic.REACTION_ADDED,
            {"message_id": "x", "channel_id": "c", "user_id": "u", "emoji": "👍"},
        )
        assert len(application._waiters) == 0

    def test_message_from_payload_defaults(self):
        message = message_from_payload(
            {
                "message_id": 1,
                "channel_id": 2,
                "author_id": 3,
                "timestamp": "2024-05-01T12:00:00Z",
            }
        )
        assert message.message_id == "1"
        assert message.content == ""
        assert message.timestamp.tzinfo is not None
        assert not message.is_bot


class TestApi:
    """Tests for the HTTP routes."""

    @pytest.mark.asyncio
    async def test_member_joined_endpoint(self, client, application):
        response = await client.post(
            "/api/events/member-joined", json={"user_id": "u1", "username": "Alice"}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "accepted", "topic": "member_joined"}
        state = await application.storage.get_conversation_state("u1")
        assert state.active_waiter_kind is WaiterKind.INITIAL_RESPONSE

    @pytest.mark.asyncio
    async def test_invalid_reaction_rejected(self, client):
        response = await client.post(
            "/api/events/reactions",
            json={"message_id": "m", "channel_id": "c", "user_id": "u", "emoji": ""},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_conversation_endpoint(self, client):
        await client.post(
            "/api/events/member-joined", json={"user_id": "u1", "username": "Alice"}
        )

        response = await client.get("/api/conversations/u1")

        assert response.status_code == 200
        body = response.json()
        assert body["current_step"] == "awaiting_initial_message"
        assert [t["author"] for t in body["turns"]] == ["agent", "agent"]

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, client):
        response = await client.get("/api/conversations/nobody")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_trace_events_filter(self, client):
        await client.post(
            "/api/events/member-joined", json={"user_id": "u1", "username": "Alice"}
        )

        response = await client.get(
            "/api/trace-events", params={"event_type": "member_joined"}
        )

        assert response.status_code == 200
        events = response.json()
        assert len(events) == 1
        assert events[0]["data"]["user_id"] == "u1"

    @pytest.mark.asyncio
    async def test_reset(self, client, application):
        await client.post(
            "/api/events/member-joined", json={"user_id": "u1", "username": "Alice"}
        )

        response = await client.post("/api/control/reset")

        assert response.status_code == 200
        assert await application.storage.get_applicant("u1") is None

    @pytest.mark.asyncio
    async def test_application_routes(self, client, application):
        """Test that an application can be opened and decided over HTTP."""
        await client.post(
            "/api/events/member-joined", json={"user_id": "u1", "username": "Alice"}
        )

        response = await client.post(
            "/api/conversations/u1/application",
            json={"application_channel_id": "app-1"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "user_id": "u1",
            "current_step": "application_active",
            "active_waiter_kind": "none",
        }
        state = await application.storage.get_conversation_state("u1")
        assert state.current_step is ConversationStep.APPLICATION_ACTIVE

        response = await client.post(
            "/api/conversations/u1/application/finish", json={"status": "ACCEPTED"}
        )

        assert response.status_code == 200
        assert response.json()["current_step"] == "idle"
        applicant = await application.storage.get_applicant("u1")
        assert applicant.application_status is ApplicationStatus.ACCEPTED
        assert applicant.conversation.current_step is ConversationStep.IDLE

    @pytest.mark.asyncio
    async def test_application_answers_in_conversation_channel(self, client, application):
        await client.post(
            "/api/events/member-joined", json={"user_id": "u1", "username": "Alice"}
        )

        response = await client.post("/api/conversations/u1/application", json={})

        assert response.status_code == 200
        assert response.json()["current_step"] == "awaiting_application_answer"
        assert application.conversations.waiters.get("u1").kind is WaiterKind.GENERAL

    @pytest.mark.asyncio
    async def test_application_routes_unknown_user(self, client):
        response = await client.post("/api/conversations/nobody/application", json={})
        assert response.status_code == 404

        response = await client.post(
            "/api/conversations/nobody/application/finish", json={"status": "DENIED"}
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_application_finish_rejects_unknown_status(self, client):
        response = await client.post(
            "/api/conversations/u1/application/finish", json={"status": "MAYBE"}
        )
        assert response.status_code == 422
