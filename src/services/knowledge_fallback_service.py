"""
Knowledge Fallback Service
Answers messages no flow handled: retrieves approved knowledge and current prices,
builds the system prompt, asks the completion provider and delivers the reply with
human pacing. Any completion failure yields None so the caller can decide what to send.
"""
import traceback
from typing import Optional, Dict, Any, List

from utils.log_utils import LogUtil
from database.flow_db import FlowDB

# Services
from services.knowledge_retrieval_service import KnowledgeRetrievalService
from services.completion_service import CompletionService
from services.response_pacing_service import ResponsePacingService

# Models
from models.engine_config_data import EngineConfig
from models.classification_data import ClassificationResult
from models.knowledge_data import KnowledgeItem, PriceRecord

DEFAULT_PERSONA = "Eres un asistente de atención al cliente amable y conciso. Responde en español, en mensajes breves."

FIDELITY_INSTRUCTIONS = {
    "exact": "Copia las respuestas del conocimiento de forma literal, sin cambiar ninguna palabra.",
    "polished": "Usa las respuestas del conocimiento corrigiendo solo ortografía y gramática; no cambies el contenido.",
    "enhanced": "Puedes reorganizar y mejorar la redacción del conocimiento, pero los datos (precios, plazos, condiciones) deben quedar exactos.",
    "creative": "Reescribe el conocimiento con un estilo totalmente natural y conversacional; los datos deben quedar exactos.",
}


class KnowledgeFallbackService:
    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        knowledge_retrieval_service: KnowledgeRetrievalService,
        completion_service: CompletionService,
        response_pacing_service: ResponsePacingService
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.knowledge_retrieval_service = knowledge_retrieval_service
        self.completion_service = completion_service
        self.response_pacing_service = response_pacing_service

    def build_system_prompt(
        self,
        config: EngineConfig,
        contact_name: Optional[str],
        knowledge: List[KnowledgeItem],
        prices: List[PriceRecord]
    ) -> str:
        sections = [config.system_prompt or DEFAULT_PERSONA]

        if contact_name:
            sections.append(f"El cliente se llama {contact_name}. Puedes usar su nombre de forma natural.")

        if knowledge:
            snippets = "\n\n".join(f"P: {item.question}\nR: {item.answer}" for item in knowledge)
            sections.append(f"CONOCIMIENTO VERIFICADO (respuestas aprobadas por el equipo):\n{snippets}")
            sections.append(f"NIVEL DE FIDELIDAD ({config.fidelity_level}): {FIDELITY_INSTRUCTIONS[config.fidelity_level]}")

        if prices:
            lines = "\n".join(
                f"- {price.product_name}{f' {price.variant}' if price.variant else ''}: ${price.price:,.0f} {price.currency}"
                + (f" ({price.notes})" if price.notes else "")
                for price in prices
            )
            sections.append(
                f"PRECIOS VIGENTES:\n{lines}\n"
                "Confía en estos precios por sobre cualquier precio mencionado en el conocimiento."
            )

        if config.behavior_rules:
            rules = "\n".join(f"- {rule}" for rule in config.behavior_rules)
            sections.append(f"REGLAS DEL OPERADOR (máxima prioridad, prevalecen sobre la personalidad):\n{rules}")

        return "\n\n".join(sections)

    async def _load_contact_name(self, contact_id: str, context: Dict[str, Any]) -> Optional[str]:
        try:
            profile = await self.flow_db.get_contact_profile(contact_id)
        except Exception as e:
            self.log_util.error(service_name="KnowledgeFallbackService", message=f"[FALLBACK] Profile load failed for {contact_id}: {str(e)}")
            profile = None
        if profile is not None:
            return profile.name or profile.fields.get("name")
        return context.get("contact_name")

    async def generate_response(
        self,
        contact_id: str,
        text: str,
        context: Dict[str, Any],
        classification: Optional[ClassificationResult],
        config: EngineConfig
    ) -> Optional[Dict[str, Any]]:
        """
        Build the prompt and run the completion.

        Returns:
            {"text", "knowledge", "prices", "temperature", "system_prompt", "usage"} or None on failure
        """
        contact_name = await self._load_contact_name(contact_id, context)
        knowledge = await self.knowledge_retrieval_service.retrieve(text)

        prices: List[PriceRecord] = []
        if self.knowledge_retrieval_service.is_price_query(text):
            product = self.knowledge_retrieval_service.extract_product_info(text)
            prices = await self.knowledge_retrieval_service.find_price(product.product_name, product.variant)

        history = await self.knowledge_retrieval_service.get_recent_context(context.get("session_id"))
        if history and history[-1].role == "user" and history[-1].content.strip() == text.strip():
            history = history[:-1]
        history = history[-config.history_turns:] if config.history_turns > 0 else []

        system_prompt = self.build_system_prompt(config, contact_name, knowledge, prices)
        temperature = config.knowledge_temperature if knowledge else config.default_temperature
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": turn.role, "content": turn.content} for turn in history)
        messages.append({"role": "user", "content": text})

        try:
            completion = await self.completion_service.complete(
                messages,
                model=config.fallback_model,
                temperature=temperature,
                max_tokens=config.fallback_max_tokens
            )
        except Exception as e:
            self.log_util.error(
                service_name="KnowledgeFallbackService",
                message=f"[FALLBACK] ❌ Completion failed for {contact_id}: {str(e)}"
            )
            return None

        self.log_util.info(
            service_name="KnowledgeFallbackService",
            message=f"[FALLBACK] ✅ Reply generated for {contact_id} (knowledge={len(knowledge)}, prices={len(prices)}, history={len(history)}, temperature={temperature})"
        )
        return {
            "text": completion["text"],
            "knowledge": knowledge,
            "prices": prices,
            "temperature": temperature,
            "system_prompt": system_prompt,
            "usage": completion.get("usage", {})
        }

    async def respond(
        self,
        contact_id: str,
        text: str,
        context: Dict[str, Any],
        classification: Optional[ClassificationResult],
        config: EngineConfig
    ) -> Optional[Dict[str, Any]]:
        """
        Generate and deliver a fallback reply.

        Returns:
            The generation dict plus "parts" (delivered parts), or None when nothing was generated
        """
        try:
            generated = await self.generate_response(contact_id, text, context, classification, config)
        except Exception as e:
            self.log_util.error(
                service_name="KnowledgeFallbackService",
                message=f"[FALLBACK] ❌ Fallback pipeline failed for {contact_id}: {str(e)}\n{traceback.format_exc()}"
            )
            return None
        if generated is None:
            return None

        generated["parts"] = await self.response_pacing_service.deliver(contact_id, generated["text"], config, context)
        return generated
