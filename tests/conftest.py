import itertools
from datetime import datetime
from types import SimpleNamespace
from typing import Optional, Dict, Any, List

import pytest

from utils.log_utils import LogUtil

# Services
from services.session_store import SessionStore
from services.flow_event_service import FlowEventService
from services.config_cache_service import ConfigCacheService
from services.flow_service import FlowService
from services.classifier_service import ClassifierService
from services.execution_log_service import ExecutionLogService
from services.trigger_identification_service import TriggerIdentificationService
from services.reply_validation_service import ReplyValidationService
from services.process_internal_node_service import ProcessInternalNodeService
from services.webhook_node_service import WebhookNodeService
from services.action_service import ActionService
from services.node_identification_service import NodeIdentificationService
from services.interruption_service import InterruptionService
from services.knowledge_retrieval_service import KnowledgeRetrievalService
from services.response_pacing_service import ResponsePacingService
from services.knowledge_fallback_service import KnowledgeFallbackService
from services.user_state_service import UserStateService

# Models
from models.flow_data import FlowData
from models.execution_log_data import ExecutionLogData, ExecutionStep
from models.engine_config_data import EngineConfig
from models.classification_data import ClassificationResult, ClassifierRule, IntentResult
from models.contact_profile import ContactProfile, CompletedFlowData, GeneratedMessageData
from models.knowledge_data import KnowledgeItem, PriceRecord

# Exceptions
from exceptions.flow_exception import CompletionException


class FakeFlowDB:
    """In-memory stand-in for FlowDB with the same async surface."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.flows: Dict[str, FlowData] = {}
        self.execution_logs: Dict[str, ExecutionLogData] = {}
        self.profiles: Dict[str, ContactProfile] = {}
        self.completed: Dict[tuple, CompletedFlowData] = {}
        self.engine_config: Optional[EngineConfig] = None
        self.engine_config_error: Optional[Exception] = None
        self.classifier_rules: List[ClassifierRule] = []
        self.learned_pairs: List[KnowledgeItem] = []
        self.faq_entries: List[KnowledgeItem] = []
        self.prices: List[PriceRecord] = []
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.generated_messages: List[GeneratedMessageData] = []
        self.leads: Dict[str, Dict[str, Any]] = {}
        self.tickets: List[Dict[str, Any]] = []
        self.price_queries: List[tuple] = []

    def _next_id(self) -> str:
        return f"id{next(self._ids)}"

    def add_flow(self, flow: Dict[str, Any]) -> FlowData:
        data = FlowData.model_validate(flow)
        if data.id is None:
            data.id = self._next_id()
        self.flows[data.id] = data
        return data

    def logs_for(self, contact_id: str) -> List[ExecutionLogData]:
        return [log for log in self.execution_logs.values() if log.contact_id == contact_id]

    async def ensure_indexes(self):
        return None

    def close(self):
        return None

    async def get_active_flows(self) -> List[FlowData]:
        active = [flow for flow in self.flows.values() if flow.isActive]
        return sorted(active, key=lambda flow: (flow.isDefault, flow.priority))

    async def get_flows(self) -> List[FlowData]:
        return list(self.flows.values())

    async def get_flow(self, flow_id: str) -> Optional[FlowData]:
        return self.flows.get(flow_id)

    async def increment_flow_stats(self, flow_id: str, field: str) -> bool:
        flow = self.flows.get(flow_id)
        if flow is None:
            return False
        setattr(flow, field, getattr(flow, field) + 1)
        return True

    async def create_execution_log(self, execution_log: ExecutionLogData) -> Optional[str]:
        log_id = self._next_id()
        execution_log.id = log_id
        self.execution_logs[log_id] = execution_log
        return log_id

    async def append_execution_step(self, log_id: str, step: ExecutionStep) -> bool:
        log = self.execution_logs.get(log_id)
        if log is None:
            return False
        log.steps.append(step)
        return True

    async def update_execution_log_variables(self, log_id: str, variables: Dict[str, Any]) -> bool:
        log = self.execution_logs.get(log_id)
        if log is None:
            return False
        log.variables = dict(variables)
        return True

    async def finalize_execution_log(self, log_id, status, final_node_id=None, final_node_type=None,
                                     error_message=None, error_node_id=None) -> bool:
        log = self.execution_logs.get(log_id)
        if log is None or log.status != "running":
            return False
        log.status = status
        log.final_node_id = final_node_id
        log.final_node_type = final_node_type
        log.error_message = error_message
        log.error_node_id = error_node_id
        log.completed_at = datetime.utcnow()
        log.total_duration_ms = int((log.completed_at - log.started_at).total_seconds() * 1000)
        return True

    async def get_execution_log(self, log_id: str) -> Optional[ExecutionLogData]:
        return self.execution_logs.get(log_id)

    async def get_execution_logs(self, flow_id=None, contact_id=None, status=None, limit=50, skip=0):
        logs = [
            log for log in self.execution_logs.values()
            if (flow_id is None or log.flow_id == flow_id)
            and (contact_id is None or log.contact_id == contact_id)
            and (status is None or log.status == status)
        ]
        return logs[skip:skip + limit]

    async def get_execution_log_stats(self, flow_id=None):
        by_status: Dict[str, Any] = {}
        for log in await self.get_execution_logs(flow_id=flow_id, limit=10000):
            by_status.setdefault(log.status, {"count": 0, "avg_duration_ms": None})["count"] += 1
        return {"total": sum(entry["count"] for entry in by_status.values()), "by_status": by_status}

    async def get_contact_profile(self, contact_id: str) -> Optional[ContactProfile]:
        return self.profiles.get(contact_id)

    async def save_contact_profile_fields(self, contact_id: str, fields: Dict[str, Any], name: Optional[str] = None):
        profile = self.profiles.get(contact_id) or ContactProfile(contact_id=contact_id)
        profile.fields.update(fields)
        if name:
            profile.name = name
        self.profiles[contact_id] = profile
        return profile

    async def mark_flow_completed(self, contact_id: str, flow_id: str, flow_slug: Optional[str] = None):
        key = (contact_id, flow_id)
        record = self.completed.get(key)
        if record is None:
            record = CompletedFlowData(contact_id=contact_id, flow_id=flow_id, flow_slug=flow_slug, completion_count=0)
            self.completed[key] = record
        record.completion_count += 1
        record.last_completed_at = datetime.utcnow()
        return record

    async def has_completed_flow(self, contact_id: str, flow_id: str) -> bool:
        return (contact_id, flow_id) in self.completed

    async def get_engine_config(self) -> Optional[EngineConfig]:
        if self.engine_config_error is not None:
            raise self.engine_config_error
        return self.engine_config

    async def save_engine_config(self, config: EngineConfig) -> Optional[EngineConfig]:
        self.engine_config = config
        return config

    async def get_classifier_rules(self) -> List[ClassifierRule]:
        return [rule for rule in self.classifier_rules if rule.is_active]

    async def search_learned_pairs(self, text: str, min_quality: float, limit: int) -> List[KnowledgeItem]:
        return [item for item in self.learned_pairs if (item.quality_score or 0) >= min_quality][:limit]

    async def search_faq_entries(self, text: str, limit: int) -> List[KnowledgeItem]:
        return self.faq_entries[:limit]

    async def find_product_prices(self, product_name, variant=None, limit=5) -> List[PriceRecord]:
        self.price_queries.append((product_name, variant))
        matches = [
            price for price in self.prices
            if (not product_name or price.product_name.lower() in product_name.lower() or product_name.lower() in price.product_name.lower())
            and (not variant or (price.variant or "").lower() == variant.lower())
        ]
        return matches[:limit]

    async def get_recent_messages(self, session_id: str, limit: int) -> List[Dict[str, Any]]:
        return self.messages.get(session_id, [])[-limit:]

    async def save_generated_message(self, message: GeneratedMessageData) -> Optional[str]:
        self.generated_messages.append(message)
        return self._next_id()

    async def save_lead(self, contact_id: str, data: Dict[str, Any]) -> bool:
        self.leads[contact_id] = data
        return True

    async def create_ticket(self, contact_id: str, data: Dict[str, Any]) -> Optional[str]:
        ticket_id = self._next_id()
        self.tickets.append({"id": ticket_id, "contact_id": contact_id, **data})
        return ticket_id


class FakeWhatsApp:
    """Records every outbound message instead of calling the Cloud API."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    def _ok(self) -> Dict[str, Any]:
        return {"status": "success", "message_id": f"wamid.{next(self._ids)}"}

    async def send_text(self, contact_id, text):
        self.sent.append({"kind": "text", "to": contact_id, "text": text})
        return self._ok()

    async def send_buttons(self, contact_id, text, options):
        self.sent.append({"kind": "buttons", "to": contact_id, "text": text, "options": [option.label for option in options]})
        return self._ok()

    async def send_list(self, contact_id, text, options, button_label="Opciones"):
        self.sent.append({"kind": "list", "to": contact_id, "text": text, "options": [option.label for option in options]})
        return self._ok()

    async def send_typing(self, contact_id, message_id=None):
        self.sent.append({"kind": "typing", "to": contact_id, "message_id": message_id})
        return self._ok() if message_id else {"status": "skipped"}

    def texts(self, kind: Optional[str] = None) -> List[str]:
        return [entry["text"] for entry in self.sent if "text" in entry and (kind is None or entry["kind"] == kind)]


class FakeCompletion:
    """Returns queued replies; an Exception in the queue is raised instead."""

    def __init__(self, replies: Optional[List[Any]] = None):
        self.replies = list(replies or [])
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, model=None, temperature=0.7, max_tokens=200):
        self.calls.append({"messages": messages, "model": model, "temperature": temperature, "max_tokens": max_tokens})
        reply = self.replies.pop(0) if self.replies else "Respuesta generada."
        if isinstance(reply, Exception):
            raise reply
        return {"text": reply, "model": model or "test-model", "usage": {}}


class FakeClassifier:
    """Classifies by substring lookup in a {phrase: (intent, confidence)} table."""

    def __init__(self, table: Optional[Dict[str, tuple]] = None):
        self.table = table or {}
        self.calls: List[str] = []

    async def load_rules(self) -> int:
        return 0

    async def classify(self, text, context=None) -> ClassificationResult:
        self.calls.append(text)
        for phrase, (intent, confidence) in self.table.items():
            if phrase in (text or "").lower():
                return ClassificationResult(intent=IntentResult(type=intent, confidence=confidence))
        return ClassificationResult()


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def build_engine(
    flow_db: Optional[FakeFlowDB] = None,
    whatsapp: Optional[FakeWhatsApp] = None,
    completion: Optional[FakeCompletion] = None,
    classifier: Any = None,
    webhook_transport: Any = None,
    max_steps: int = 50,
    rng: Any = None
) -> SimpleNamespace:
    """Wire the engine the way main.py does, over in-memory fakes."""
    log_util = LogUtil(enable_loki=False)
    flow_db = flow_db or FakeFlowDB()
    whatsapp = whatsapp or FakeWhatsApp()
    completion = completion or FakeCompletion()
    sleeper = SleepRecorder()

    session_store = SessionStore(log_util=log_util)
    flow_event_service = FlowEventService(log_util=log_util)
    config_cache_service = ConfigCacheService(log_util=log_util, flow_db=flow_db, ttl_seconds=60)
    flow_service = FlowService(log_util=log_util, flow_db=flow_db)
    classifier = classifier or ClassifierService(log_util=log_util, flow_db=flow_db)
    execution_log_service = ExecutionLogService(log_util=log_util, flow_db=flow_db, flow_event_service=flow_event_service)
    trigger_identification_service = TriggerIdentificationService(log_util=log_util, flow_service=flow_service)
    reply_validation_service = ReplyValidationService(log_util=log_util)
    process_internal_node_service = ProcessInternalNodeService(log_util=log_util, sleep_func=sleeper)
    webhook_node_service = WebhookNodeService(log_util=log_util, transport=webhook_transport)
    action_service = ActionService(log_util=log_util, flow_db=flow_db)

    node_identification_service = NodeIdentificationService(
        log_util=log_util,
        flow_db=flow_db,
        session_store=session_store,
        flow_service=flow_service,
        whatsapp_flow_service=whatsapp,
        completion_service=completion,
        execution_log_service=execution_log_service,
        process_internal_node_service=process_internal_node_service,
        webhook_node_service=webhook_node_service,
        action_service=action_service,
        max_steps=max_steps,
        message_pacing_seconds=0.5,
        sleep_func=sleeper
    )
    interruption_service = InterruptionService(log_util=log_util, classifier_service=classifier, flow_service=flow_service)
    knowledge_retrieval_service = KnowledgeRetrievalService(log_util=log_util, flow_db=flow_db)
    response_pacing_service = ResponsePacingService(
        log_util=log_util, flow_db=flow_db, whatsapp_flow_service=whatsapp, sleep_func=sleeper, rng=rng
    )
    knowledge_fallback_service = KnowledgeFallbackService(
        log_util=log_util,
        flow_db=flow_db,
        knowledge_retrieval_service=knowledge_retrieval_service,
        completion_service=completion,
        response_pacing_service=response_pacing_service
    )
    user_state_service = UserStateService(
        log_util=log_util,
        flow_db=flow_db,
        session_store=session_store,
        flow_service=flow_service,
        trigger_identification_service=trigger_identification_service,
        reply_validation_service=reply_validation_service,
        node_identification_service=node_identification_service,
        interruption_service=interruption_service,
        knowledge_fallback_service=knowledge_fallback_service,
        execution_log_service=execution_log_service,
        config_cache_service=config_cache_service,
        classifier_service=classifier,
        whatsapp_flow_service=whatsapp
    )

    return SimpleNamespace(
        log_util=log_util,
        flow_db=flow_db,
        whatsapp=whatsapp,
        completion=completion,
        classifier=classifier,
        sleeper=sleeper,
        session_store=session_store,
        flow_event_service=flow_event_service,
        config_cache_service=config_cache_service,
        flow_service=flow_service,
        execution_log_service=execution_log_service,
        trigger_identification_service=trigger_identification_service,
        reply_validation_service=reply_validation_service,
        process_internal_node_service=process_internal_node_service,
        node_identification_service=node_identification_service,
        interruption_service=interruption_service,
        knowledge_retrieval_service=knowledge_retrieval_service,
        response_pacing_service=response_pacing_service,
        knowledge_fallback_service=knowledge_fallback_service,
        user_state_service=user_state_service,
    )


def lead_flow(**overrides) -> Dict[str, Any]:
    """Keyword flow: welcome, size question with three options, free-text budget, end."""
    flow = {
        "id": "flow_lead",
        "slug": "cotizacion",
        "name": "Cotización",
        "priority": 10,
        "triggerConfig": {"type": "keyword", "keywords": ["cotizar"]},
        "intents": ["sales"],
        "nodes": [
            {"id": "trigger", "type": "trigger", "name": "Inicio"},
            {"id": "welcome", "type": "message", "content": "¡Hola! Te ayudo con tu cotización."},
            {
                "id": "ask_size", "type": "question", "content": "¿Qué medida buscas?", "variable": "size",
                "retry_message": "Por favor elige una de las opciones.",
                "options": [
                    {"id": "size_1", "label": "1 plaza", "value": "1p"},
                    {"id": "size_2", "label": "2 plazas", "value": "2p"},
                    {"id": "size_king", "label": "King", "value": "king"}
                ]
            },
            {"id": "ask_budget", "type": "question", "content": "¿Cuál es tu presupuesto?", "variable": "budget"},
            {"id": "bye", "type": "end", "content": "¡Gracias! Medida {{size}}, presupuesto {{budget}}."}
        ],
        "connections": [
            {"from": "trigger", "to": "welcome"},
            {"from": "welcome", "to": "ask_size"},
            {"from": "ask_size", "to": "ask_budget"},
            {"from": "ask_budget", "to": "bye"}
        ]
    }
    flow.update(overrides)
    return flow


def complaint_flow(**overrides) -> Dict[str, Any]:
    flow = {
        "id": "flow_complaint",
        "slug": "reclamos",
        "name": "Reclamos",
        "priority": 5,
        "triggerConfig": {"type": "intent", "intents": ["complaint"], "min_confidence": 0.6},
        "nodes": [
            {"id": "trigger", "type": "trigger"},
            {"id": "sorry", "type": "message", "content": "Lamento el problema, cuéntame qué pasó."},
            {"id": "ask_detail", "type": "question", "content": "¿Cuál es tu número de pedido?", "variable": "order"},
            {"id": "handoff", "type": "transfer", "content": "Te paso con un agente."}
        ],
        "connections": [
            {"from": "trigger", "to": "sorry"},
            {"from": "sorry", "to": "ask_detail"},
            {"from": "ask_detail", "to": "handoff"}
        ]
    }
    flow.update(overrides)
    return flow


@pytest.fixture
def log_util():
    return LogUtil(enable_loki=False)


@pytest.fixture
def flow_db():
    return FakeFlowDB()


@pytest.fixture
def engine(flow_db):
    return build_engine(flow_db=flow_db)


@pytest.fixture
def completion_error():
    return CompletionException("provider down")
