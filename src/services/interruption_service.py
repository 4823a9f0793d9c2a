"""
Interruption Service
Decides whether a message sent mid-flow is really a new, high-priority request
that should abandon the current flow.
"""
from typing import Optional, Dict, Any

from utils.log_utils import LogUtil
from services.classifier_service import ClassifierService
from services.flow_service import FlowService
from models.flow_data import FlowData
from models.engine_config_data import EngineConfig


class InterruptionService:
    def __init__(self, log_util: LogUtil, classifier_service: ClassifierService, flow_service: FlowService):
        self.log_util = log_util
        self.classifier_service = classifier_service
        self.flow_service = flow_service

    async def check_interruption(
        self,
        flow: FlowData,
        text: str,
        context: Dict[str, Any],
        config: EngineConfig
    ) -> Dict[str, Any]:
        """
        Returns:
            {"interrupted": bool, "classification", "intent", "target_flow"}.
            Button/list replies and short messages are never interruptions.
        """
        result: Dict[str, Any] = {"interrupted": False, "classification": None, "intent": None, "target_flow": None}

        if not config.interruption_enabled or context.get("button_id"):
            return result
        if len((text or "").strip()) <= config.interruption_min_length:
            return result

        classification = await self.classifier_service.classify(text, context)
        result["classification"] = classification
        intent = classification.intent

        if intent.type not in config.high_priority_intents:
            return result
        if intent.confidence < config.interruption_confidence:
            return result
        if intent.type in flow.declared_intents():
            return result

        target_flow: Optional[FlowData] = await self.flow_service.find_flow_for_intent(intent.type, exclude_flow_id=flow.id)
        result.update({"interrupted": True, "intent": intent.type, "target_flow": target_flow})
        self.log_util.info(
            service_name="InterruptionService",
            message=f"[INTERRUPT] Intent '{intent.type}' ({intent.confidence:.2f}) interrupts flow '{flow.slug}', "
                    f"target={target_flow.slug if target_flow else 'fallback'}"
        )
        return result
