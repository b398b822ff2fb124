"""Guild application API routes.

Called by the platform's /apply command handler and by recruiters when an
application is decided.
"""

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException

from ...app import Application
from ...models import ApplicationStatus


class StartApplicationRequest(BaseModel):
    """Open an application, optionally in a dedicated channel."""

    application_channel_id: str | None = None


class FinishApplicationRequest(BaseModel):
    status: ApplicationStatus


class ApplicationStepResponse(BaseModel):
    """Conversation step after the application call."""

    user_id: str
    current_step: str
    active_waiter_kind: str


def create_applications_router(app: Application) -> APIRouter:
    """Create applications router."""
    router = APIRouter(prefix="/api/conversations", tags=["applications"])

    @router.post("/{user_id}/application", response_model=ApplicationStepResponse)
    async def start_application(
        user_id: str, request: StartApplicationRequest
    ) -> dict:
        """Hand a user's conversation to the application flow."""
        try:
            state = await app.conversations.start_application(
                user_id, request.application_channel_id
            )
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

        return {
            "user_id": user_id,
            "current_step": state.current_step.value,
            "active_waiter_kind": state.active_waiter_kind.value,
        }

    @router.post(
        "/{user_id}/application/finish", response_model=ApplicationStepResponse
    )
    async def finish_application(
        user_id: str, request: FinishApplicationRequest
    ) -> dict:
        """Record the application outcome and close the flow."""
        try:
            state = await app.conversations.finish_application(user_id, request.status)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

        if state is None:
            raise HTTPException(status_code=404, detail="Conversation not found")

        return {
            "user_id": user_id,
            "current_step": state.current_step.value,
            "active_waiter_kind": state.active_waiter_kind.value,
        }

    return router
