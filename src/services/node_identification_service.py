"""
Node Identification and Processing Service
Walks the flow graph from a given node, executing each node until one suspends
(question) or terminates the run (end, transfer, failure, dead end).
"""
import asyncio
import time
import traceback
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Awaitable

from utils.log_utils import LogUtil
from utils.template_utils import render_template
from database.flow_db import FlowDB
from exceptions.flow_exception import FlowServiceException

# Services
from services.session_store import SessionStore
from services.flow_service import FlowService
from services.whatsapp_flow_service import WhatsAppFlowService, MAX_BUTTONS
from services.completion_service import CompletionService
from services.execution_log_service import ExecutionLogService
from services.process_internal_node_service import ProcessInternalNodeService
from services.webhook_node_service import WebhookNodeService
from services.action_service import ActionService

# Models
from models.flow_data import (
    FlowData,
    NODE_CLASSES,
    TriggerNode,
    MessageNode,
    QuestionNode,
    ConditionNode,
    ActionNode,
    TransferNode,
    EndNode,
    AIResponseNode,
    WebhookNode,
    DelayNode,
    UnknownNode,
)
from models.session_state import SessionState
from models.engine_config_data import EngineConfig
from models.flow_result import FlowResult

# Variables that describe the conversation rather than the contact
ENGINE_VARIABLES = {"phone", "contact_id", "initial_message", "button_id", "message_id", "session_id", "channel", "contact_name"}


class NodeIdentificationService:
    """
    Service for executing flow nodes.
    Dispatch goes through a handler table keyed by node class; construction fails
    if any node class lacks a handler.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        session_store: SessionStore,
        flow_service: FlowService,
        whatsapp_flow_service: WhatsAppFlowService,
        completion_service: CompletionService,
        execution_log_service: ExecutionLogService,
        process_internal_node_service: ProcessInternalNodeService,
        webhook_node_service: WebhookNodeService,
        action_service: ActionService,
        max_steps: int = 50,
        message_pacing_seconds: float = 0.5,
        sleep_func: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.session_store = session_store
        self.flow_service = flow_service
        self.whatsapp_flow_service = whatsapp_flow_service
        self.completion_service = completion_service
        self.execution_log_service = execution_log_service
        self.process_internal_node_service = process_internal_node_service
        self.webhook_node_service = webhook_node_service
        self.action_service = action_service
        self.max_steps = max_steps
        self.message_pacing_seconds = message_pacing_seconds
        self.sleep_func = sleep_func

        self._node_handlers = {
            TriggerNode: self._process_trigger_node,
            MessageNode: self._process_message_node,
            QuestionNode: self._process_question_node,
            ConditionNode: self._process_condition_node,
            ActionNode: self._process_action_node,
            TransferNode: self._process_transfer_node,
            EndNode: self._process_end_node,
            AIResponseNode: self._process_ai_response_node,
            WebhookNode: self._process_webhook_node,
            DelayNode: self._process_delay_node,
            UnknownNode: self._process_unknown_node,
        }
        missing = [node_class.__name__ for node_class in NODE_CLASSES if node_class not in self._node_handlers]
        if missing:
            raise FlowServiceException(message=f"No handler registered for node types: {missing}")

    # Chain execution

    async def execute_chain(
        self,
        contact_id: str,
        flow: FlowData,
        node: Any,
        session: SessionState,
        config: EngineConfig
    ) -> FlowResult:
        """
        Execute nodes starting at `node` until a result is produced.

        Args:
            contact_id: Contact the session belongs to
            flow: Flow being executed
            node: First node to execute
            session: Live session, mutated in place
            config: Engine config snapshot for this message

        Returns:
            FlowResult of the suspending or terminal node
        """
        run = {
            "contact_id": contact_id,
            "flow": flow,
            "session": session,
            "config": config,
            "texts": []
        }
        current = node
        steps = 0

        while current is not None:
            if steps >= self.max_steps:
                self.log_util.error(
                    service_name="NodeIdentificationService",
                    message=f"[EXECUTE] ❌ Max steps ({self.max_steps}) exceeded in flow '{flow.slug}' for {contact_id} at node {current.id}"
                )
                return await self.fail_flow(run, current, "max_steps_exceeded")
            steps += 1

            session.current_node_id = current.id
            session.status = "running"
            self.session_store.save(session)
            self.execution_log_service.node_started(session.execution_log_id, contact_id, flow, current)

            handler = self._node_handlers.get(type(current), self._process_unknown_node)
            started_at = time.monotonic()
            try:
                outcome = await handler(run, current, started_at)
            except Exception as e:
                self.log_util.error(
                    service_name="NodeIdentificationService",
                    message=f"[EXECUTE] ❌ Node {current.id} ({current.type}) raised: {str(e)}\n{traceback.format_exc()}"
                )
                await self.execution_log_service.add_step(session.execution_log_id, contact_id, current, started_at, f"Error: {str(e)}", "error")
                return await self.fail_flow(run, current, str(e))

            if outcome.get("result") is not None:
                return outcome["result"]
            current = outcome.get("next_node")

        return await self.complete_flow(run, None, FlowResult(type="flow_completed", reason="no_next_node"))

    def _finish(self, run: Dict[str, Any], result: FlowResult) -> FlowResult:
        flow: FlowData = run["flow"]
        result.flow_id = result.flow_id or flow.id
        result.flow_slug = result.flow_slug or flow.slug
        result.execution_log_id = run["session"].execution_log_id
        if run["texts"] and not result.texts:
            result.texts = list(run["texts"])
        return result

    async def _continue_or_complete(self, run: Dict[str, Any], node: Any, result: FlowResult) -> Dict[str, Any]:
        next_node = run["flow"].find_next_node(node.id)
        if next_node is not None:
            return {"next_node": next_node}
        return {"result": await self.complete_flow(run, node, result)}

    # Terminal bookkeeping

    def _profile_fields(self, flow: FlowData, variables: Dict[str, Any]) -> Dict[str, Any]:
        if flow.persistVariables:
            return {name: variables[name] for name in flow.persistVariables if name in variables}
        return {
            name: value for name, value in variables.items()
            if name not in ENGINE_VARIABLES and not name.startswith("_") and isinstance(value, (str, int, float, bool))
        }

    async def complete_flow(self, run: Dict[str, Any], node: Any, result: FlowResult) -> FlowResult:
        """
        Persist profile fields, mark the flow completed, finalize the log as completed and clear the session.
        """
        contact_id = run["contact_id"]
        flow: FlowData = run["flow"]
        session: SessionState = run["session"]

        try:
            fields = self._profile_fields(flow, session.variables)
            if fields:
                await self.flow_db.save_contact_profile_fields(contact_id, fields, name=session.variables.get("name"))
        except Exception as e:
            self.log_util.error(service_name="NodeIdentificationService", message=f"[COMPLETE] ❌ Profile update failed for {contact_id}: {str(e)}")

        try:
            if flow.id:
                await self.flow_db.mark_flow_completed(contact_id, flow.id, flow.slug)
            await self.flow_service.record_flow_completed(flow)
        except Exception as e:
            self.log_util.error(service_name="NodeIdentificationService", message=f"[COMPLETE] ❌ Completion marker failed for {contact_id}: {str(e)}")

        await self.execution_log_service.update_variables(session.execution_log_id, session.variables)
        await self.execution_log_service.finalize(session.execution_log_id, contact_id, "completed", final_node=node)
        self.session_store.delete(contact_id)

        self.log_util.info(
            service_name="NodeIdentificationService",
            message=f"[COMPLETE] ✅ Flow '{flow.slug}' completed for {contact_id} ({result.type})"
        )
        result.flow_completed = True
        return self._finish(run, result)

    async def fail_flow(self, run: Dict[str, Any], node: Any, error: str) -> FlowResult:
        contact_id = run["contact_id"]
        session: SessionState = run["session"]
        await self.execution_log_service.update_variables(session.execution_log_id, session.variables)
        await self.execution_log_service.finalize(session.execution_log_id, contact_id, "failed", final_node=node, error_message=error)
        self.session_store.delete(contact_id)
        return self._finish(run, FlowResult(type="flow_failed", node_id=node.id if node is not None else None, error=error, reason=error))

    # Outbound helpers

    async def _send_text(self, run: Dict[str, Any], text: str) -> None:
        await self.whatsapp_flow_service.send_text(run["contact_id"], text)
        run["texts"].append(text)

    async def send_question(self, contact_id: str, node: QuestionNode, variables: Dict[str, Any]) -> str:
        """
        Send a question: plain text without options, buttons up to three options, a list beyond.

        Returns:
            The rendered question text
        """
        text = render_template(node.content or "", variables)
        if not node.options:
            await self.whatsapp_flow_service.send_text(contact_id, text)
        elif len(node.options) <= MAX_BUTTONS:
            await self.whatsapp_flow_service.send_buttons(contact_id, text, node.options)
        else:
            await self.whatsapp_flow_service.send_list(contact_id, text, node.options, node.list_button_label)
        return text

    # Node handlers

    async def _process_trigger_node(self, run: Dict[str, Any], node: TriggerNode, started_at: float) -> Dict[str, Any]:
        session = run["session"]
        await self.execution_log_service.add_step(session.execution_log_id, run["contact_id"], node, started_at, "Trigger activated")
        return await self._continue_or_complete(run, node, FlowResult(type="flow_completed", reason="no_next_node"))

    async def _process_message_node(self, run: Dict[str, Any], node: MessageNode, started_at: float) -> Dict[str, Any]:
        session = run["session"]
        text = render_template(node.content or "", session.variables)
        await self._send_text(run, text)
        await self.execution_log_service.add_step(session.execution_log_id, run["contact_id"], node, started_at, text)

        outcome = await self._continue_or_complete(run, node, FlowResult(type="message_sent", text=text))
        if outcome.get("next_node") is not None:
            await self.sleep_func(self.message_pacing_seconds)
        return outcome

    async def _process_question_node(self, run: Dict[str, Any], node: QuestionNode, started_at: float) -> Dict[str, Any]:
        session: SessionState = run["session"]
        text = await self.send_question(run["contact_id"], node, session.variables)
        run["texts"].append(text)

        session.status = "awaiting_input"
        session.expected_variable = node.variable
        session.expected_options = list(node.options)
        session.updated_at = datetime.utcnow()
        self.session_store.save(session)

        await self.execution_log_service.add_step(
            session.execution_log_id, run["contact_id"], node, started_at,
            f"Question: {text} (waiting for: {node.variable})"
        )
        await self.execution_log_service.update_variables(session.execution_log_id, session.variables)
        return {"result": self._finish(run, FlowResult(
            type="waiting_for_response",
            node_id=node.id,
            text=text,
            options=list(node.options),
            variable=node.variable
        ))}

    async def _process_condition_node(self, run: Dict[str, Any], node: ConditionNode, started_at: float) -> Dict[str, Any]:
        session = run["session"]
        resolution = self.process_internal_node_service.resolve_condition_target(node, session.variables)
        target_id = resolution["target_node_id"]
        await self.execution_log_service.add_step(
            session.execution_log_id, run["contact_id"], node, started_at,
            f"Condition evaluated: {resolution['matched']} -> {target_id}"
        )

        if target_id:
            target = run["flow"].get_node(target_id)
            if target is not None:
                return {"next_node": target}
            self.log_util.warning(
                service_name="NodeIdentificationService",
                message=f"[CONDITION] Branch target {target_id} not found in flow '{run['flow'].slug}', following connection"
            )
        return await self._continue_or_complete(run, node, FlowResult(type="flow_completed", reason="no_condition_match"))

    async def _process_action_node(self, run: Dict[str, Any], node: ActionNode, started_at: float) -> Dict[str, Any]:
        session = run["session"]
        action_result = await self.action_service.execute_action(node, session)
        succeeded = bool(action_result.get("success"))
        await self.execution_log_service.add_step(
            session.execution_log_id, run["contact_id"], node, started_at,
            f"Action: {node.action} - {'success' if succeeded else 'failed'}",
            "success" if succeeded else "error"
        )
        return await self._continue_or_complete(run, node, FlowResult(type="action_completed", action=node.action, data=action_result))

    async def _process_transfer_node(self, run: Dict[str, Any], node: TransferNode, started_at: float) -> Dict[str, Any]:
        contact_id = run["contact_id"]
        flow: FlowData = run["flow"]
        session: SessionState = run["session"]
        text = render_template(node.content or run["config"].transfer_message, session.variables)
        await self._send_text(run, text)
        await self.execution_log_service.add_step(session.execution_log_id, contact_id, node, started_at, f"Transferred to human: {text}")

        await self.execution_log_service.update_variables(session.execution_log_id, session.variables)
        await self.execution_log_service.finalize(session.execution_log_id, contact_id, "transferred", final_node=node)
        self.session_store.delete(contact_id)

        intents = flow.declared_intents()
        return {"result": self._finish(run, FlowResult(
            type="transfer_to_human",
            node_id=node.id,
            text=text,
            variables=dict(session.variables),
            hint=intents[0] if intents else None,
            reason="flow_transfer"
        ))}

    async def _process_end_node(self, run: Dict[str, Any], node: EndNode, started_at: float) -> Dict[str, Any]:
        session = run["session"]
        if node.content:
            await self._send_text(run, render_template(node.content, session.variables))
        await self.execution_log_service.add_step(session.execution_log_id, run["contact_id"], node, started_at, "Flow ended")
        return {"result": await self.complete_flow(run, node, FlowResult(type="flow_completed", node_id=node.id))}

    async def _process_ai_response_node(self, run: Dict[str, Any], node: AIResponseNode, started_at: float) -> Dict[str, Any]:
        contact_id = run["contact_id"]
        session: SessionState = run["session"]
        system_prompt = render_template(node.system_prompt, session.variables)
        user_prompt = render_template(node.user_prompt, session.variables) or session.variables.get("initial_message", "")

        try:
            completion = await self.completion_service.complete(
                [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt}
                ],
                model=node.model,
                temperature=max(0.0, min(node.temperature, 2.0)),
                max_tokens=max(1, min(node.max_tokens, 1000))
            )
        except Exception as e:
            await self.execution_log_service.add_step(session.execution_log_id, contact_id, node, started_at, f"AI Error: {str(e)}", "error")
            await self._send_text(run, run["config"].ai_error_message)
            await self.execution_log_service.finalize(session.execution_log_id, contact_id, "failed", final_node=node, error_message=str(e))
            self.session_store.delete(contact_id)
            return {"result": self._finish(run, FlowResult(type="ai_error", node_id=node.id, error=str(e)))}

        text = completion["text"]
        if node.variable:
            session.variables[node.variable] = text
        await self._send_text(run, text)
        await self.execution_log_service.add_step(session.execution_log_id, contact_id, node, started_at, f"AI Response: {text[:100]}")

        outcome = await self._continue_or_complete(run, node, FlowResult(type="ai_response_sent", text=text))
        if outcome.get("next_node") is not None:
            await self.sleep_func(self.message_pacing_seconds)
        return outcome

    async def _process_webhook_node(self, run: Dict[str, Any], node: WebhookNode, started_at: float) -> Dict[str, Any]:
        session: SessionState = run["session"]
        response = await self.webhook_node_service.call_webhook(node, session.variables)
        if node.variable:
            session.variables[node.variable] = response.get("data")

        if "error" in response:
            output, status = f"Webhook Error: {response['error']}", "error"
        else:
            output = f"Webhook {node.method.upper()} {node.url}: {response.get('status_code')}"
            status = "success" if response.get("status") == "success" else "error"
        await self.execution_log_service.add_step(session.execution_log_id, run["contact_id"], node, started_at, output, status)

        return await self._continue_or_complete(run, node, FlowResult(
            type="webhook_completed",
            node_id=node.id,
            data={"status_code": response.get("status_code"), "error": response.get("error")}
        ))

    async def _process_delay_node(self, run: Dict[str, Any], node: DelayNode, started_at: float) -> Dict[str, Any]:
        contact_id = run["contact_id"]
        session: SessionState = run["session"]
        message_id = session.context.get("message_id")

        async def show_typing():
            await self.whatsapp_flow_service.send_typing(contact_id, message_id)

        seconds = await self.process_internal_node_service.process_delay(node, show_typing)
        await self.execution_log_service.add_step(session.execution_log_id, contact_id, node, started_at, f"Delay: {seconds} seconds")
        return await self._continue_or_complete(run, node, FlowResult(type="delay_completed", node_id=node.id))

    async def _process_unknown_node(self, run: Dict[str, Any], node: Any, started_at: float) -> Dict[str, Any]:
        session = run["session"]
        self.log_util.warning(
            service_name="NodeIdentificationService",
            message=f"[EXECUTE] Unknown node type '{node.type}' (node {node.id}) in flow '{run['flow'].slug}', passing through"
        )
        await self.execution_log_service.add_step(session.execution_log_id, run["contact_id"], node, started_at, f"Unknown node type: {node.type}", "error")
        return await self._continue_or_complete(run, node, FlowResult(type="flow_completed", node_id=node.id, reason="unknown_node"))
