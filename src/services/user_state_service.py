"""
User State Service
Entry point for inbound messages. Decides, per contact, whether a message
continues an active flow, starts a new one, or goes to the knowledge fallback.
"""
import traceback
from datetime import datetime
from typing import Optional, Dict, Any

# Utils
from utils.log_utils import LogUtil
from utils.template_utils import render_template

# Database
from database.flow_db import FlowDB

# Services
from services.session_store import SessionStore
from services.flow_service import FlowService
from services.trigger_identification_service import TriggerIdentificationService
from services.reply_validation_service import ReplyValidationService
from services.node_identification_service import NodeIdentificationService
from services.interruption_service import InterruptionService
from services.knowledge_fallback_service import KnowledgeFallbackService
from services.execution_log_service import ExecutionLogService
from services.config_cache_service import ConfigCacheService
from services.classifier_service import ClassifierService, normalize_text
from services.whatsapp_flow_service import WhatsAppFlowService

# Models
from models.flow_data import FlowData, QuestionNode
from models.session_state import SessionState
from models.engine_config_data import EngineConfig, GlobalKeyword
from models.classification_data import ClassificationResult
from models.flow_result import FlowResult


class UserStateService:
    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        session_store: SessionStore,
        flow_service: FlowService,
        trigger_identification_service: TriggerIdentificationService,
        reply_validation_service: ReplyValidationService,
        node_identification_service: NodeIdentificationService,
        interruption_service: InterruptionService,
        knowledge_fallback_service: KnowledgeFallbackService,
        execution_log_service: ExecutionLogService,
        config_cache_service: ConfigCacheService,
        classifier_service: ClassifierService,
        whatsapp_flow_service: WhatsAppFlowService
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.session_store = session_store
        self.flow_service = flow_service
        self.trigger_identification_service = trigger_identification_service
        self.reply_validation_service = reply_validation_service
        self.node_identification_service = node_identification_service
        self.interruption_service = interruption_service
        self.knowledge_fallback_service = knowledge_fallback_service
        self.execution_log_service = execution_log_service
        self.config_cache_service = config_cache_service
        self.classifier_service = classifier_service
        self.whatsapp_flow_service = whatsapp_flow_service

    async def process_message(self, contact_id: str, text: str, context: Optional[Dict[str, Any]] = None) -> FlowResult:
        """
        Process one inbound message. Messages from the same contact are handled one at a time.

        Args:
            contact_id: Contact identifier (phone number)
            text: Message text
            context: Channel context (button_id, message_id, session_id, contact_name, ...)

        Returns:
            FlowResult describing what the engine did
        """
        context = dict(context or {})
        message = (text or "").strip()
        if not message and not context.get("button_id"):
            return FlowResult(type="no_response", reason="empty_message")

        async with self.session_store.lock_for(contact_id):
            config = await self.config_cache_service.get_config()
            self.log_util.info(
                service_name="UserStateService",
                message=f"[PROCESS] Message from {contact_id}: '{message[:80]}' (button_id={context.get('button_id')}, active_session={self.session_store.has(contact_id)})"
            )

            keyword = self._match_global_keyword(config, message)
            if keyword is not None:
                return await self.handle_global_keyword(contact_id, keyword, config)

            session = self.session_store.get(contact_id)
            if session is not None:
                return await self.continue_flow(contact_id, message, session, context, config)

            return await self._start_or_fallback(contact_id, message, context, config)

    # Global keywords

    def _match_global_keyword(self, config: EngineConfig, message: str) -> Optional[GlobalKeyword]:
        normalized = normalize_text(message)
        if not normalized:
            return None
        for keyword in config.global_keywords:
            if normalize_text(keyword.keyword) == normalized:
                return keyword
        return None

    async def _abandon_session(self, contact_id: str, status: str, reason: str) -> None:
        session = self.session_store.get(contact_id)
        if session is None:
            return
        await self.execution_log_service.update_variables(session.execution_log_id, session.variables)
        await self.execution_log_service.finalize(session.execution_log_id, contact_id, status, error_message=reason if status == "failed" else None)
        self.session_store.delete(contact_id)

    async def handle_global_keyword(self, contact_id: str, keyword: GlobalKeyword, config: EngineConfig) -> FlowResult:
        self.log_util.info(
            service_name="UserStateService",
            message=f"[GLOBAL_KEYWORD] '{keyword.keyword}' ({keyword.action}) from {contact_id}"
        )
        texts = []
        if keyword.response:
            await self.whatsapp_flow_service.send_text(contact_id, keyword.response)
            texts.append(keyword.response)

        if keyword.action == "human":
            session = self.session_store.get(contact_id)
            variables = dict(session.variables) if session else {}
            await self._abandon_session(contact_id, "transferred", "user_requested")
            return FlowResult(type="transfer_to_human", reason="user_requested", text=keyword.response, texts=texts, variables=variables, action=keyword.action)

        if keyword.action == "end":
            await self._abandon_session(contact_id, "failed", "ended_by_contact")
            return FlowResult(type="session_ended", text=keyword.response, texts=texts, action=keyword.action)

        if keyword.action == "reset":
            await self._abandon_session(contact_id, "failed", "reset_by_contact")

        if keyword.action == "menu" and keyword.flow_slug:
            flow = await self.flow_service.get_flow_by_slug(keyword.flow_slug)
            if flow is not None:
                await self._abandon_session(contact_id, "failed", "menu_requested")
                return await self.start_flow(contact_id, flow, keyword.keyword, {}, config, None)

        return FlowResult(type="global_keyword", action=keyword.action, text=keyword.response, texts=texts)

    # Active session

    async def continue_flow(self, contact_id: str, message: str, session: SessionState, context: Dict[str, Any], config: EngineConfig) -> FlowResult:
        """
        Resume the session's flow from its current node with the new message.
        """
        flow = await self.flow_service.get_flow(session.flow_id)
        current = flow.get_node(session.current_node_id) if flow is not None else None
        if flow is None or current is None:
            self.log_util.warning(
                service_name="UserStateService",
                message=f"[CONTINUE] Session of {contact_id} points at missing flow/node ({session.flow_id}/{session.current_node_id}), discarding"
            )
            await self._abandon_session(contact_id, "failed", "flow_or_node_missing")
            return await self._start_or_fallback(contact_id, message, context, config)

        interruption = await self.interruption_service.check_interruption(flow, message, context, config)
        if interruption["interrupted"]:
            await self._abandon_session(contact_id, "failed", "interrupted")
            target_flow: Optional[FlowData] = interruption["target_flow"]
            if target_flow is not None:
                return await self.start_flow(contact_id, target_flow, message, context, config, interruption["classification"])
            return await self._run_fallback(contact_id, message, context, interruption["classification"], config)

        session.context.update({key: value for key, value in context.items() if value is not None})

        if isinstance(current, QuestionNode):
            resolution = self.reply_validation_service.resolve_answer(current, message, context.get("button_id"))
            if resolution["status"] == "mismatch_retry":
                texts = []
                if current.retry_message:
                    retry_text = render_template(current.retry_message, session.variables)
                    await self.whatsapp_flow_service.send_text(contact_id, retry_text)
                    texts.append(retry_text)
                question_text = await self.node_identification_service.send_question(contact_id, current, session.variables)
                texts.append(question_text)
                return FlowResult(
                    type="retry",
                    flow_id=flow.id,
                    flow_slug=flow.slug,
                    node_id=current.id,
                    text=question_text,
                    texts=texts,
                    options=list(current.options),
                    variable=current.variable,
                    execution_log_id=session.execution_log_id
                )
            if current.variable:
                session.variables[current.variable] = resolution["value"]

        session.status = "running"
        session.expected_variable = None
        session.expected_options = []
        session.updated_at = datetime.utcnow()

        next_node = flow.find_next_node(current.id)
        run = {"contact_id": contact_id, "flow": flow, "session": session, "config": config, "texts": []}
        if next_node is None:
            return await self.node_identification_service.complete_flow(run, current, FlowResult(type="flow_completed", reason="no_next_node"))
        return await self.node_identification_service.execute_chain(contact_id, flow, next_node, session, config)

    # New conversation

    async def _classify(self, message: str, context: Dict[str, Any]) -> Optional[ClassificationResult]:
        try:
            return await self.classifier_service.classify(message, context)
        except Exception as e:
            self.log_util.error(service_name="UserStateService", message=f"[CLASSIFY] ❌ {str(e)}")
            return None

    async def _start_or_fallback(self, contact_id: str, message: str, context: Dict[str, Any], config: EngineConfig,
                                 classification: Optional[ClassificationResult] = None) -> FlowResult:
        classification = classification or await self._classify(message, context)
        flow = await self.trigger_identification_service.match_flow(message, classification)
        if flow is None:
            return await self._run_fallback(contact_id, message, context, classification, config)

        greeting = await self._personalized_greeting(contact_id, flow, context, config)
        if greeting is not None:
            return greeting
        return await self.start_flow(contact_id, flow, message, context, config, classification)

    async def _personalized_greeting(self, contact_id: str, flow: FlowData, context: Dict[str, Any], config: EngineConfig) -> Optional[FlowResult]:
        if not config.greeting_flow_slug or flow.slug != config.greeting_flow_slug or not flow.id:
            return None
        if not await self.flow_db.has_completed_flow(contact_id, flow.id):
            return None

        profile = await self.flow_db.get_contact_profile(contact_id)
        name = None
        if profile is not None:
            name = profile.name or profile.fields.get("name")
        name = name or context.get("contact_name")

        # Collapse the gap a missing name leaves behind
        text = " ".join(render_template(config.returning_greeting, {"name": name or ""}).split()).replace(" !", "!")
        await self.whatsapp_flow_service.send_text(contact_id, text)
        self.log_util.info(service_name="UserStateService", message=f"[GREETING] Returning contact {contact_id} greeted instead of re-running '{flow.slug}'")
        return FlowResult(type="personalized_greeting", flow_id=flow.id, flow_slug=flow.slug, user=name, text=text, texts=[text])

    async def start_flow(self, contact_id: str, flow: FlowData, message: str, context: Dict[str, Any], config: EngineConfig,
                         classification: Optional[ClassificationResult]) -> FlowResult:
        """
        Create the session and execution log for a new run and execute from the trigger node.
        """
        trigger_node = flow.get_trigger_node()
        if trigger_node is None:
            self.log_util.error(service_name="UserStateService", message=f"[START] ❌ Flow '{flow.slug}' has no trigger node")
            return FlowResult(type="flow_failed", flow_id=flow.id, flow_slug=flow.slug, error="no_trigger_node", reason="no_trigger_node")

        try:
            await self.flow_service.record_flow_triggered(flow)
        except Exception as e:
            self.log_util.error(service_name="UserStateService", message=f"[START] Flow stats update failed: {str(e)}")

        log_id = await self.execution_log_service.start_run(contact_id, flow, message, classification)
        variables = dict(flow.variables)
        variables.update({"phone": contact_id, "initial_message": message})
        if context.get("contact_name"):
            variables.setdefault("contact_name", context["contact_name"])

        session = SessionState(
            contact_id=contact_id,
            flow_id=flow.id or "",
            flow_slug=flow.slug,
            current_node_id=trigger_node.id,
            variables=variables,
            context={key: value for key, value in context.items() if value is not None},
            execution_log_id=log_id
        )
        self.session_store.save(session)
        self.log_util.info(
            service_name="UserStateService",
            message=f"[START] ✅ Flow '{flow.slug}' started for {contact_id} (log={log_id})"
        )
        return await self.node_identification_service.execute_chain(contact_id, flow, trigger_node, session, config)

    async def _run_fallback(self, contact_id: str, message: str, context: Dict[str, Any],
                            classification: Optional[ClassificationResult], config: EngineConfig) -> FlowResult:
        if config.fallback_enabled:
            try:
                generated = await self.knowledge_fallback_service.respond(contact_id, message, context, classification, config)
            except Exception as e:
                self.log_util.error(
                    service_name="UserStateService",
                    message=f"[FALLBACK] ❌ {str(e)}\n{traceback.format_exc()}"
                )
                generated = None
            if generated is not None:
                return FlowResult(
                    type="ai_fallback",
                    text=generated["text"],
                    texts=[part["text"] for part in generated.get("parts", [])],
                    data={
                        "knowledge_count": len(generated.get("knowledge", [])),
                        "price_count": len(generated.get("prices", [])),
                        "temperature": generated.get("temperature")
                    }
                )

        await self.whatsapp_flow_service.send_text(contact_id, config.fallback_message)
        return FlowResult(type="fallback_message", text=config.fallback_message, texts=[config.fallback_message])

    # Operator helpers

    async def clear_session(self, contact_id: str) -> bool:
        async with self.session_store.lock_for(contact_id):
            if not self.session_store.has(contact_id):
                return False
            await self._abandon_session(contact_id, "failed", "cleared_by_operator")
            return True
