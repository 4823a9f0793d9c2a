from fastapi import APIRouter
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.session_store import SessionStore
from services.user_state_service import UserStateService


def create_session_api(
    log_util: LogUtil,
    session_store: SessionStore,
    user_state_service: UserStateService
) -> APIRouter:
    """
    Operator access to live conversation sessions.
    """
    router = APIRouter(
        prefix="/session",
        tags=["session"],
    )

    @router.get("")
    async def list_sessions():
        return {"count": session_store.active_count(), "contact_ids": session_store.contact_ids()}

    @router.get("/{contact_id}")
    async def get_session(contact_id: str):
        session = session_store.get(contact_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"No active session for {contact_id}")
        return session.model_dump()

    @router.delete("/{contact_id}")
    async def clear_session(contact_id: str):
        """Abandon the contact's active flow. Its execution log is finalized as failed."""
        try:
            cleared = await user_state_service.clear_session(contact_id)
        except Exception as e:
            log_util.error(service_name="SessionAPI", message=f"Error clearing session for {contact_id}: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        if not cleared:
            raise HTTPException(status_code=404, detail=f"No active session for {contact_id}")
        log_util.info(service_name="SessionAPI", message=f"Session for {contact_id} cleared by operator")
        return {"status": "success", "contact_id": contact_id}

    return router
