"""
Webhook Node Service
Performs the outbound HTTP call of a webhook node. Never raises: failures are
returned as {"error": ...} so the flow can continue.
"""
import json
from typing import Optional, Dict, Any
import httpx

from utils.log_utils import LogUtil
from utils.template_utils import render_template, render_object
from models.flow_data import WebhookNode

DEFAULT_TIMEOUT_MS = 5000
MAX_TIMEOUT_MS = 30000


class WebhookNodeService:
    def __init__(self, log_util: LogUtil, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.log_util = log_util
        self.transport = transport

    def _build_headers(self, node: WebhookNode, variables: Dict[str, Any]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if not node.headers:
            return headers
        try:
            parsed = json.loads(node.headers) if isinstance(node.headers, str) else node.headers
            rendered = render_object(parsed, variables)
            headers.update({str(key): str(value) for key, value in rendered.items()})
        except (ValueError, AttributeError):
            self.log_util.warning(
                service_name="WebhookNodeService",
                message=f"[WEBHOOK] Invalid headers on node {node.id}, using defaults"
            )
        return headers

    def _build_body(self, node: WebhookNode, method: str, variables: Dict[str, Any]) -> Optional[str]:
        if method == "GET" or node.body in (None, ""):
            return None
        if isinstance(node.body, str):
            try:
                parsed = json.loads(node.body)
            except ValueError:
                # Not JSON: send the rendered text as-is
                return render_template(node.body, variables)
        else:
            parsed = node.body
        return json.dumps(render_object(parsed, variables), ensure_ascii=False, default=str)

    async def call_webhook(self, node: WebhookNode, variables: Dict[str, Any]) -> Dict[str, Any]:
        """
        Render and perform the webhook request.

        Returns:
            {"status": "success", "status_code": int, "data": parsed body}
            or {"status": "error", "error": str, "data": {"error": str}}
        """
        url = render_template(node.url or "", variables)
        method = (node.method or "POST").upper()
        timeout_ms = min(node.timeout or DEFAULT_TIMEOUT_MS, MAX_TIMEOUT_MS)

        if not url:
            return {"status": "error", "error": "No URL configured", "data": {"error": "No URL configured"}}

        try:
            headers = self._build_headers(node, variables)
            body = self._build_body(node, method, variables)

            async with httpx.AsyncClient(timeout=timeout_ms / 1000, transport=self.transport) as client:
                response = await client.request(method, url, headers=headers, content=body)

            content_type = response.headers.get("content-type", "")
            if "application/json" in content_type:
                data = response.json()
            else:
                data = response.text

            self.log_util.info(
                service_name="WebhookNodeService",
                message=f"[WEBHOOK] {'✅' if response.status_code < 400 else '❌'} {method} {url} -> {response.status_code}"
            )
            return {
                "status": "success" if response.status_code < 400 else "error",
                "status_code": response.status_code,
                "data": data
            }
        except httpx.TimeoutException:
            message = f"Timeout after {timeout_ms}ms"
        except Exception as e:
            message = str(e) or e.__class__.__name__

        self.log_util.error(
            service_name="WebhookNodeService",
            message=f"[WEBHOOK] ❌ {method} {url} failed: {message}"
        )
        return {"status": "error", "error": message, "data": {"error": message}}
