from typing import Optional, Dict, Any, List
import httpx

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.flow_exception import ChannelDispatchException

# Models
from models.flow_data import NodeOption

# WhatsApp Cloud API limits
MAX_BUTTONS = 3
BUTTON_TITLE_LIMIT = 20
LIST_ROW_TITLE_LIMIT = 24
LIST_ROW_LIMIT = 10


class WhatsAppFlowService:
    """
    Outbound messaging over the WhatsApp Cloud API.
    Every send returns {"status": "success", "message_id": ...} or {"status": "error", "message": ...}.
    """
    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.log_util = log_util
        self.api_url = environment_utils.get_env_variable("WHATSAPP_API_URL")
        self.phone_number_id = environment_utils.get_env_variable("WHATSAPP_PHONE_NUMBER_ID")
        self.access_token = environment_utils.get_env_variable("WHATSAPP_ACCESS_TOKEN")
        self.transport = transport

    def _messages_url(self) -> str:
        return f"{self.api_url}/{self.phone_number_id}/messages"

    async def _post_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.phone_number_id or not self.access_token:
            raise ChannelDispatchException("WhatsApp credentials are not configured")

        async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
            response = await client.post(
                self._messages_url(),
                json={"messaging_product": "whatsapp", **payload},
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json"
                }
            )

        if response.status_code >= 400:
            raise ChannelDispatchException(f"WhatsApp API error: {response.status_code} - {response.text}")
        return response.json()

    async def _dispatch(self, contact_id: str, payload: Dict[str, Any], kind: str) -> Dict[str, Any]:
        try:
            response_data = await self._post_message(payload)
            message_id = None
            messages = response_data.get("messages") or []
            if messages:
                message_id = messages[0].get("id")
            self.log_util.info(
                service_name="WhatsAppFlowService",
                message=f"[SEND] ✅ {kind} sent to {contact_id} (message_id={message_id})"
            )
            return {"status": "success", "message_id": message_id}
        except ChannelDispatchException as e:
            self.log_util.error(
                service_name="WhatsAppFlowService",
                message=f"[SEND] ❌ {kind} to {contact_id} rejected: {e.message}"
            )
            return {"status": "error", "message": e.message}
        except httpx.TimeoutException:
            self.log_util.error(
                service_name="WhatsAppFlowService",
                message=f"[SEND] ❌ Timeout sending {kind} to {contact_id}"
            )
            return {"status": "error", "message": "Timeout calling WhatsApp API"}
        except Exception as e:
            self.log_util.error(
                service_name="WhatsAppFlowService",
                message=f"[SEND] ❌ Error sending {kind} to {contact_id}: {str(e)}"
            )
            return {"status": "error", "message": f"Error calling WhatsApp API: {str(e)}"}

    async def send_text(self, contact_id: str, text: str) -> Dict[str, Any]:
        return await self._dispatch(contact_id, {
            "recipient_type": "individual",
            "to": contact_id,
            "type": "text",
            "text": {"preview_url": False, "body": text}
        }, "text")

    async def send_buttons(self, contact_id: str, text: str, options: List[NodeOption]) -> Dict[str, Any]:
        """
        Send up to three reply buttons. Longer option lists belong in send_list.
        """
        buttons = [
            {
                "type": "reply",
                "reply": {"id": option.id or option.stored_value(), "title": option.label[:BUTTON_TITLE_LIMIT]}
            }
            for option in options[:MAX_BUTTONS]
        ]
        return await self._dispatch(contact_id, {
            "recipient_type": "individual",
            "to": contact_id,
            "type": "interactive",
            "interactive": {
                "type": "button",
                "body": {"text": text},
                "action": {"buttons": buttons}
            }
        }, "buttons")

    async def send_list(self, contact_id: str, text: str, options: List[NodeOption], button_label: str = "Opciones") -> Dict[str, Any]:
        rows = [
            {"id": option.id or option.stored_value(), "title": option.label[:LIST_ROW_TITLE_LIMIT]}
            for option in options[:LIST_ROW_LIMIT]
        ]
        return await self._dispatch(contact_id, {
            "recipient_type": "individual",
            "to": contact_id,
            "type": "interactive",
            "interactive": {
                "type": "list",
                "body": {"text": text},
                "action": {
                    "button": button_label[:BUTTON_TITLE_LIMIT],
                    "sections": [{"title": button_label[:LIST_ROW_TITLE_LIMIT], "rows": rows}]
                }
            }
        }, "list")

    async def send_typing(self, contact_id: str, message_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Show the typing indicator. The Cloud API ties it to the inbound message,
        so without a message_id this is a no-op.
        """
        if not message_id:
            return {"status": "skipped", "message": "No inbound message_id for typing indicator"}
        return await self._dispatch(contact_id, {
            "status": "read",
            "message_id": message_id,
            "typing_indicator": {"type": "text"}
        }, "typing")
