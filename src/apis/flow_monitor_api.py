from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_event_service import FlowEventService
from services.session_store import SessionStore


def create_flow_monitor_api(
    log_util: LogUtil,
    flow_event_service: FlowEventService,
    session_store: SessionStore
) -> APIRouter:
    """
    Live view of flow execution: a websocket stream of execution events and a
    polling endpoint with the most recent ones.
    """
    router = APIRouter(
        prefix="/monitor",
        tags=["monitor"],
    )

    @router.get("/recent")
    async def get_recent_events(limit: int = Query(50, ge=1, le=200)):
        return {
            "events": jsonable_encoder(flow_event_service.recent_events(limit)),
            "active_sessions": session_store.active_count(),
            "subscribers": flow_event_service.subscriber_count()
        }

    @router.websocket("/ws")
    async def monitor_websocket(websocket: WebSocket):
        await websocket.accept()
        queue = flow_event_service.subscribe()
        log_util.info(service_name="FlowMonitorAPI", message=f"[MONITOR] Subscriber connected ({flow_event_service.subscriber_count()} total)")

        try:
            await websocket.send_json({
                "type": "initial_state",
                "active_sessions": session_store.active_count(),
                "events": jsonable_encoder(flow_event_service.recent_events(20))
            })
            while True:
                event = await queue.get()
                await websocket.send_json(jsonable_encoder(event))
        except WebSocketDisconnect:
            log_util.info(service_name="FlowMonitorAPI", message="[MONITOR] Subscriber disconnected")
        except Exception as e:
            log_util.error(service_name="FlowMonitorAPI", message=f"[MONITOR] Websocket error: {str(e)}")
        finally:
            flow_event_service.unsubscribe(queue)

    return router
