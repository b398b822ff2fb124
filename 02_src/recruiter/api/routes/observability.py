"""Observability API routes."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException, Query

from ...app import Application


class TraceEventResponse(BaseModel):
    """Response model for trace event."""

    id: str
    event_type: str
    actor: str
    data: dict[str, Any]
    timestamp: datetime


class TurnResponse(BaseModel):
    author: str
    content: str
    timestamp: datetime
    external_message_id: str | None = None
    classifier_output: dict[str, Any] | None = None


class ConversationResponse(BaseModel):
    """Persisted conversation state plus its turn log."""

    user_id: str
    channel_id: str | None
    current_step: str
    active_waiter_kind: str
    step_entry_time: datetime | None
    timeout_at: datetime | None
    attempt_count: int
    last_intent: str | None
    last_processed_message_id: str | None
    vouch_initiator_id: str | None
    vouch_prompt_message_id: str | None
    turns: list[TurnResponse]


def create_observability_router(app: Application) -> APIRouter:
    """Create observability router."""
    router = APIRouter(prefix="/api", tags=["observability"])

    @router.get("/trace-events", response_model=list[TraceEventResponse])
    async def get_trace_events(
        after: str | None = Query(None, description="ISO timestamp filter"),
        limit: int = Query(100, ge=1, le=1000),
        event_type: str | None = Query(None, description="Filter by event type"),
        actor: str | None = Query(None, description="Filter by actor"),
    ) -> list[dict]:
        """Get trace events with optional filters."""
        after_dt = None
        if after:
            try:
                after_dt = datetime.fromisoformat(after)
            except ValueError:
                raise HTTPException(
                    status_code=400, detail="Invalid after timestamp format"
                )

        try:
            events = await app.storage.get_trace_events(
                after=after_dt,
                event_types=[event_type] if event_type else None,
                actor=actor,
                limit=limit,
            )
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

        return [
            {
                "id": e.id,
                "event_type": e.event_type,
                "actor": e.actor,
                "data": e.data,
                "timestamp": e.timestamp.isoformat(),
            }
            for e in events
        ]

    @router.get("/conversations/{user_id}", response_model=ConversationResponse)
    async def get_conversation(
        user_id: str,
        turns: int = Query(50, ge=0, le=1000, description="Max turns to include"),
    ) -> dict:
        """Get a user's conversation state and recent turns."""
        try:
            state = await app.storage.get_conversation_state(user_id)
            records = (
                await app.storage.get_turns(user_id, limit=turns) if turns else []
            )
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

        if state is None:
            raise HTTPException(status_code=404, detail="Conversation not found")

        return {
            "user_id": state.user_id,
            "channel_id": state.channel_id,
            "current_step": state.current_step.value,
            "active_waiter_kind": state.active_waiter_kind.value,
            "step_entry_time": state.step_entry_time,
            "timeout_at": state.timeout_at,
            "attempt_count": state.attempt_count,
            "last_intent": state.last_intent,
            "last_processed_message_id": state.last_processed_message_id,
            "vouch_initiator_id": state.vouch_initiator_id,
            "vouch_prompt_message_id": state.vouch_prompt_message_id,
            "turns": [
                {
                    "author": t.author,
                    "content": t.content,
                    "timestamp": t.timestamp,
                    "external_message_id": t.external_message_id,
                    "classifier_output": t.classifier_output,
                }
                for t in records
            ],
        }

    return router
