import time
import traceback
from typing import Optional, List, Dict, Any

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Models
from models.flow_data import FlowData

# Exceptions
from exceptions.flow_exception import FlowNotFoundException, FlowServiceException

class FlowService:
    """
    Serves the snapshot of active flows used by trigger matching.
    The snapshot is reloaded after reload_interval_seconds or on demand; a failed
    reload keeps the previous snapshot.
    """
    def __init__(self, log_util: LogUtil, flow_db: FlowDB, reload_interval_seconds: int = 300):
        self.log_util = log_util
        self.flow_db = flow_db
        self.reload_interval_seconds = reload_interval_seconds
        self._flows: List[FlowData] = []
        self._loaded_at: Optional[float] = None

    async def reload_flows(self) -> List[FlowData]:
        try:
            flows = await self.flow_db.get_active_flows()
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"[FLOWS] ❌ Reload failed, keeping {len(self._flows)} cached flows: {str(e)}"
            )
            self._loaded_at = time.monotonic()
            return self._flows

        self._flows = flows or []
        self._loaded_at = time.monotonic()
        self.log_util.info(
            service_name="FlowService",
            message=f"[FLOWS] ✅ Loaded {len(self._flows)} active flows: {[flow.slug or flow.name for flow in self._flows]}"
        )
        return self._flows

    async def get_active_flows(self, force_reload: bool = False) -> List[FlowData]:
        """
        Active flows in evaluation order: non-default by priority, default flows last.
        """
        if force_reload or self._loaded_at is None or time.monotonic() - self._loaded_at > self.reload_interval_seconds:
            await self.reload_flows()
        return self._flows

    async def get_flow(self, flow_id: str) -> Optional[FlowData]:
        """
        Resolve a flow for a running session, from the snapshot first then storage.
        """
        for flow in await self.get_active_flows():
            if flow.id == flow_id:
                return flow
        return await self.flow_db.get_flow(flow_id)

    async def get_flow_by_slug(self, slug: str) -> Optional[FlowData]:
        for flow in await self.get_active_flows():
            if flow.slug == slug:
                return flow
        return None

    async def find_flow_for_intent(self, intent: str, exclude_flow_id: Optional[str] = None) -> Optional[FlowData]:
        """
        First active flow declaring the intent, other than exclude_flow_id.
        """
        for flow in await self.get_active_flows():
            if flow.id == exclude_flow_id:
                continue
            if intent in flow.declared_intents():
                return flow
        return None

    async def record_flow_triggered(self, flow: FlowData) -> None:
        if flow.id:
            await self.flow_db.increment_flow_stats(flow.id, "times_triggered")

    async def record_flow_completed(self, flow: FlowData) -> None:
        if flow.id:
            await self.flow_db.increment_flow_stats(flow.id, "times_completed")

    async def get_flows_list(self) -> List[Dict[str, Any]]:
        """
        Summary of every stored flow for the flow list API
        """
        try:
            flows = await self.flow_db.get_flows()
            return [
                {
                    "id": flow.id,
                    "slug": flow.slug,
                    "name": flow.name,
                    "description": flow.description,
                    "isActive": flow.isActive,
                    "isDefault": flow.isDefault,
                    "priority": flow.priority,
                    "trigger_type": flow.triggerConfig.type if flow.triggerConfig is not None else None,
                    "node_count": len(flow.nodes),
                    "times_triggered": flow.times_triggered,
                    "times_completed": flow.times_completed,
                    "updated_at": flow.updated_at,
                }
                for flow in flows
            ]
        except Exception as e:
            self.log_util.error(service_name="FlowService", message=f"Error listing flows: {str(e)}\n{traceback.format_exc()}")
            raise FlowServiceException(message=f"Error listing flows: {str(e)}")

    async def get_flow_detail(self, flow_id: str) -> FlowData:
        flow = await self.flow_db.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")
        return flow
