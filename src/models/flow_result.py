from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal

from models.flow_data import NodeOption

FlowResultType = Literal[
    "message_sent",
    "waiting_for_response",
    "retry",
    "flow_completed",
    "flow_failed",
    "transfer_to_human",
    "action_completed",
    "ai_response_sent",
    "ai_error",
    "webhook_completed",
    "delay_completed",
    "ai_fallback",
    "fallback_message",
    "personalized_greeting",
    "global_keyword",
    "session_ended",
    "no_response",
]

class FlowResult(BaseModel):
    """
    Outcome of processing one inbound message.
    Only the fields relevant to the result type are set.
    """
    type: FlowResultType
    flow_id: Optional[str] = None
    flow_slug: Optional[str] = None
    node_id: Optional[str] = None
    text: Optional[str] = None
    texts: List[str] = Field(default_factory=list, description="Every outbound text sent while producing this result")
    options: Optional[List[NodeOption]] = None
    variable: Optional[str] = None
    variables: Optional[Dict[str, Any]] = None
    flow_completed: bool = False
    reason: Optional[str] = None
    hint: Optional[str] = None
    action: Optional[str] = None
    user: Optional[str] = None
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    execution_log_id: Optional[str] = None
