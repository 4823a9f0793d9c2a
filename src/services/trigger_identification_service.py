from typing import Optional, Dict, Any, List

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_service import FlowService

# Models
from models.flow_data import (
    FlowData,
    KeywordTrigger,
    ClassificationTrigger,
    IntentTrigger,
    AlwaysTrigger,
)
from models.classification_data import ClassificationResult


class TriggerIdentificationService:
    """
    Service for identifying which flow, if any, an inbound message should start.
    Flows are checked in snapshot order; the default flow is the last resort.
    """

    def __init__(self, log_util: LogUtil, flow_service: FlowService):
        self.log_util = log_util
        self.flow_service = flow_service

    def match_trigger(self, trigger_config: Any, message: str, classification: Optional[ClassificationResult] = None) -> bool:
        """
        Evaluate one trigger configuration against a message.

        Args:
            trigger_config: The flow's trigger config (None never matches)
            message: Raw inbound text
            classification: Classification of the message, if available

        Returns:
            True when the trigger accepts the message
        """
        if trigger_config is None:
            return False

        if isinstance(trigger_config, KeywordTrigger):
            lowered = (message or "").lower()
            return any(keyword and keyword.lower() in lowered for keyword in trigger_config.keywords)

        if isinstance(trigger_config, ClassificationTrigger):
            if classification is None:
                return False
            conditions = trigger_config.conditions
            if conditions.intent:
                allowed = [conditions.intent] if isinstance(conditions.intent, str) else conditions.intent
                if classification.intent.type not in allowed:
                    return False
            if conditions.urgency and classification.urgency.level != conditions.urgency:
                return False
            if conditions.lead_score_min is not None and classification.lead_score.value < conditions.lead_score_min:
                return False
            return True

        if isinstance(trigger_config, IntentTrigger):
            if classification is None:
                return False
            return (
                classification.intent.type in trigger_config.intents
                and classification.intent.confidence >= trigger_config.min_confidence
            )

        if isinstance(trigger_config, AlwaysTrigger):
            return True

        self.log_util.warning(
            service_name="TriggerIdentificationService",
            message=f"[TRIGGER_IDENTIFY] Unknown trigger type '{getattr(trigger_config, 'type', None)}', treating as no match"
        )
        return False

    async def match_flow(self, message: str, classification: Optional[ClassificationResult] = None) -> Optional[FlowData]:
        """
        First non-default flow whose trigger matches, else the first default flow, else None.
        """
        flows = await self.flow_service.get_active_flows()
        default_flow: Optional[FlowData] = None

        for flow in flows:
            if flow.isDefault:
                if default_flow is None:
                    default_flow = flow
                continue
            if self.match_trigger(flow.triggerConfig, message, classification):
                self.log_util.info(
                    service_name="TriggerIdentificationService",
                    message=f"[TRIGGER_IDENTIFY] ✅ Flow '{flow.slug or flow.name}' matched ({flow.triggerConfig.type})"
                )
                return flow

        if default_flow is not None:
            self.log_util.info(
                service_name="TriggerIdentificationService",
                message=f"[TRIGGER_IDENTIFY] No trigger matched, using default flow '{default_flow.slug or default_flow.name}'"
            )
            return default_flow

        self.log_util.info(
            service_name="TriggerIdentificationService",
            message="[TRIGGER_IDENTIFY] ❌ No trigger matched and no default flow"
        )
        return None

    async def evaluate_all(self, message: str, classification: Optional[ClassificationResult] = None) -> Dict[str, Any]:
        """
        Evaluate every active flow without short-circuiting, for diagnostics.

        Returns:
            {"selected_flow_id", "selected_flow_slug", "evaluations": [...]}
        """
        flows = await self.flow_service.get_active_flows()
        evaluations: List[Dict[str, Any]] = []
        selected: Optional[FlowData] = None

        for flow in flows:
            matched = self.match_trigger(flow.triggerConfig, message, classification)
            evaluations.append({
                "flow_id": flow.id,
                "flow_slug": flow.slug,
                "is_default": flow.isDefault,
                "trigger_type": flow.triggerConfig.type if flow.triggerConfig is not None else None,
                "matched": matched
            })
            if matched and selected is None and not flow.isDefault:
                selected = flow

        if selected is None:
            selected = next((flow for flow in flows if flow.isDefault), None)

        return {
            "selected_flow_id": selected.id if selected else None,
            "selected_flow_slug": selected.slug if selected else None,
            "evaluations": evaluations
        }
