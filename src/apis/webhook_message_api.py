from fastapi import APIRouter
from typing import Dict, Any

# Utils
from utils.log_utils import LogUtil

# Services
from services.user_state_service import UserStateService
from services.session_store import SessionStore

# Models
from models.request.process_message_request import ProcessMessageRequest
from models.response.process_message_response import ProcessMessageResponse


def create_webhook_message_api(
    log_util: LogUtil,
    user_state_service: UserStateService,
    session_store: SessionStore
) -> APIRouter:
    """
    Create API router for inbound messages forwarded by the channel gateway.
    This is the entry point for conversational automation.
    """
    router = APIRouter(
        prefix="/webhook",
        tags=["webhook"],
    )

    @router.post("/message", response_model=ProcessMessageResponse)
    async def process_webhook_message(request: ProcessMessageRequest) -> ProcessMessageResponse:
        """
        Process an inbound message.

        The engine continues the contact's active flow, starts a matching flow,
        or answers through the knowledge fallback. The result tells the gateway
        whether the conversation must be handed to a human.
        """
        try:
            result = await user_state_service.process_message(
                contact_id=request.contact_id,
                text=request.text,
                context=request.to_context()
            )

            return ProcessMessageResponse(
                status="success",
                message="Message processed",
                result_type=result.type,
                flow_id=result.flow_id,
                result=result.model_dump(exclude_none=True)
            )

        except Exception as e:
            log_util.error(
                service_name="WebhookMessageAPI",
                message=f"Error processing message for contact {request.contact_id}: {str(e)}"
            )

            # The gateway retries on HTTP errors, so failures are reported in the body
            return ProcessMessageResponse(
                status="error",
                message="Error processing message",
                result_type=None,
                flow_id=None,
                result=None,
                error_details=str(e)
            )

    @router.get("/health")
    async def webhook_health_check() -> Dict[str, Any]:
        """Health check endpoint for webhook API"""
        return {
            "status": "healthy",
            "api": "webhook_message_api",
            "service": "flow_engine_service",
            "active_sessions": session_store.active_count()
        }

    return router
