"""
Action Service
Runs the side effect of an action node. Results are reported, never raised:
an action failure does not stop the flow.
"""
import aiohttp
from typing import Optional, Dict, Any, Callable, Awaitable

# Utils
from utils.log_utils import LogUtil
from utils.template_utils import render_object

# Database
from database.flow_db import FlowDB

# Models
from models.flow_data import ActionNode
from models.session_state import SessionState


class ActionService:
    def __init__(self, log_util: LogUtil, flow_db: FlowDB, notify_webhook_url: Optional[str] = None, timeout_seconds: float = 10):
        self.log_util = log_util
        self.flow_db = flow_db
        self.notify_webhook_url = notify_webhook_url or None
        self.timeout_seconds = timeout_seconds
        self._actions: Dict[str, Callable[[SessionState, Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "notify_sales": self._notify_sales,
            "notify_team": self._notify_team,
            "create_ticket": self._create_ticket,
            "save_lead": self._save_lead,
            "webhook": self._webhook,
        }

    def supported_actions(self):
        return sorted(self._actions.keys())

    async def execute_action(self, node: ActionNode, session: SessionState) -> Dict[str, Any]:
        """
        Execute the action of an action node.

        Returns:
            {"success": bool, "action": str, "error"?: str, ...}
        """
        handler = self._actions.get(node.action)
        if handler is None:
            self.log_util.warning(
                service_name="ActionService",
                message=f"[ACTION] Unknown action '{node.action}' on node {node.id}, supported: {', '.join(self.supported_actions())}"
            )
            return {"success": False, "action": node.action, "error": "Unknown action"}

        payload = render_object(node.payload or {}, session.variables)
        try:
            result = await handler(session, payload)
        except Exception as e:
            self.log_util.error(
                service_name="ActionService",
                message=f"[ACTION] ❌ {node.action} failed for {session.contact_id}: {str(e)}"
            )
            return {"success": False, "action": node.action, "error": str(e)}

        self.log_util.info(
            service_name="ActionService",
            message=f"[ACTION] {'✅' if result.get('success') else '❌'} {node.action} for {session.contact_id}"
        )
        return {"action": node.action, **result}

    async def _post_json(self, url: str, body: Dict[str, Any]) -> int:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as http_session:
            async with http_session.post(url, json=body) as response:
                return response.status

    async def _notify(self, team: str, session: SessionState, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.notify_webhook_url:
            self.log_util.info(
                service_name="ActionService",
                message=f"[ACTION] Notify {team} for {session.contact_id} (no NOTIFY_WEBHOOK_URL, logged only): {payload}"
            )
            return {"success": True, "delivered": False}

        status = await self._post_json(self.notify_webhook_url, {
            "team": team,
            "contact_id": session.contact_id,
            "flow_id": session.flow_id,
            "payload": payload,
            "variables": session.variables
        })
        return {"success": status < 400, "delivered": status < 400, "status_code": status}

    async def _notify_sales(self, session: SessionState, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._notify("sales", session, payload)

    async def _notify_team(self, session: SessionState, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._notify(payload.get("team", "support"), session, payload)

    async def _create_ticket(self, session: SessionState, payload: Dict[str, Any]) -> Dict[str, Any]:
        ticket_id = await self.flow_db.create_ticket(session.contact_id, {
            "flow_id": session.flow_id,
            "subject": payload.get("subject"),
            "priority": payload.get("priority", "normal"),
            "payload": payload
        })
        if ticket_id is None:
            return {"success": False, "error": "Ticket could not be stored"}
        return {"success": True, "ticket_id": ticket_id}

    async def _save_lead(self, session: SessionState, payload: Dict[str, Any]) -> Dict[str, Any]:
        saved = await self.flow_db.save_lead(session.contact_id, {
            "flow_id": session.flow_id,
            "score": payload.get("score", 50),
            "data": payload
        })
        if not saved:
            return {"success": False, "error": "Lead could not be stored"}
        return {"success": True}

    async def _webhook(self, session: SessionState, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = payload.get("url")
        if not url:
            return {"success": False, "error": "No URL provided"}
        status = await self._post_json(url, payload.get("data") or session.variables)
        return {"success": status < 400, "status_code": status}
