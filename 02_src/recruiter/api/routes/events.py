"""Platform event webhook routes."""

from datetime import datetime

from pydantic import BaseModel, Field
from fastapi import APIRouter, HTTPException

from ...app import Application
from ...models import Topic


class MemberEventRequest(BaseModel):
    """A member joined or left."""

    user_id: str
    username: str = ""


class MessageEventRequest(BaseModel):
    """A message posted in a channel."""

    message_id: str
    channel_id: str
    author_id: str
    content: str = ""
    timestamp: datetime | None = None
    is_bot: bool = False


class ReactionEventRequest(BaseModel):
    """A reaction added to a message."""

    message_id: str
    channel_id: str
    user_id: str
    emoji: str = Field(min_length=1)


class AcceptedResponse(BaseModel):
    """Response model for accepted events."""

    status: str
    topic: str


def create_events_router(app: Application) -> APIRouter:
    """Create platform events router."""
    router = APIRouter(prefix="/api/events", tags=["events"])

    async def publish(topic: Topic, request: BaseModel) -> dict:
        try:
            await app.publish(topic, request.model_dump(mode="json"), source="platform")
            return {"status": "accepted", "topic": topic.value}
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/member-joined", response_model=AcceptedResponse)
    async def member_joined(request: MemberEventRequest) -> dict:
        """A member joined the community."""
        return await publish(Topic.MEMBER_JOINED, request)

    @router.post("/member-left", response_model=AcceptedResponse)
    async def member_left(request: MemberEventRequest) -> dict:
        """A member left the community."""
        return await publish(Topic.MEMBER_LEFT, request)

    @router.post("/messages", response_model=AcceptedResponse)
    async def message_received(request: MessageEventRequest) -> dict:
        """A message was posted in a channel."""
        return await publish(Topic.MESSAGE_RECEIVED, request)

    @router.post("/reactions", response_model=AcceptedResponse)
    async def reaction_added(request: ReactionEventRequest) -> dict:
        """A reaction was added to a message."""
        return await publish(Topic.REACTION_ADDED, request)

    return router
