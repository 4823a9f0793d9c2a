from pydantic import BaseModel, Field, Discriminator, ConfigDict, Tag
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from datetime import datetime

class NodeOption(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str = ""
    label: str = ""
    value: Optional[str] = None

    def stored_value(self) -> str:
        """Value written to the question variable when this option is chosen."""
        if self.value not in (None, ""):
            return self.value
        return self.id or self.label

class FlowNodeCondition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    if_: Optional[str] = Field(default=None, alias="if", description="Expression such as score >= 50")
    goto: Optional[str] = Field(default=None, description="Target node ID when the branch is taken")
    else_: bool = Field(default=False, alias="else", description="Marks the fallback branch")

# Base FlowNode with common fields
class BaseFlowNode(BaseModel):
    model_config = ConfigDict(extra='allow')  # Allow editor fields like position, label, etc.

    id: str
    type: str
    name: Optional[str] = None

# Trigger Node
class TriggerNode(BaseFlowNode):
    type: Literal["trigger"]

# Message Node
class MessageNode(BaseFlowNode):
    type: Literal["message"]
    content: str = ""

# Question Node
class QuestionNode(BaseFlowNode):
    type: Literal["question"]
    content: str = ""
    options: List[NodeOption] = Field(default_factory=list)
    variable: Optional[str] = None
    retry_message: Optional[str] = None
    list_button_label: str = "Opciones"

# Condition Node
class ConditionNode(BaseFlowNode):
    type: Literal["condition"]
    conditions: List[FlowNodeCondition] = Field(default_factory=list)

# Action Node
class ActionNode(BaseFlowNode):
    type: Literal["action"]
    action: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)

# Transfer Node
class TransferNode(BaseFlowNode):
    type: Literal["transfer"]
    content: Optional[str] = None

# End Node
class EndNode(BaseFlowNode):
    type: Literal["end"]
    content: Optional[str] = None

# AI Response Node
class AIResponseNode(BaseFlowNode):
    type: Literal["ai_response"]
    system_prompt: str = "Eres un asistente útil."
    user_prompt: str = "{{initial_message}}"
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 200
    variable: Optional[str] = None

# Webhook Node
class WebhookNode(BaseFlowNode):
    type: Literal["webhook"]
    url: str = ""
    method: str = "POST"
    headers: Optional[Union[Dict[str, Any], str]] = None
    body: Optional[Union[Dict[str, Any], List[Any], str]] = None
    timeout: Optional[int] = Field(default=None, description="Timeout in milliseconds")
    variable: Optional[str] = None

# Delay Node
class DelayNode(BaseFlowNode):
    type: Literal["delay"]
    seconds: float = 2
    typing_indicator: bool = True

# Any node type this engine does not know; executed as a pass-through
class UnknownNode(BaseFlowNode):
    type: str

NODE_TYPES = {
    "trigger": TriggerNode,
    "message": MessageNode,
    "question": QuestionNode,
    "condition": ConditionNode,
    "action": ActionNode,
    "transfer": TransferNode,
    "end": EndNode,
    "ai_response": AIResponseNode,
    "webhook": WebhookNode,
    "delay": DelayNode,
}

NODE_CLASSES = tuple(NODE_TYPES.values()) + (UnknownNode,)

def _node_type_tag(value: Any) -> str:
    node_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return node_type if node_type in NODE_TYPES else "unknown"

# Union of all node types, unknown types fall through to UnknownNode
FlowNode = Annotated[
    Union[
        Annotated[TriggerNode, Tag("trigger")],
        Annotated[MessageNode, Tag("message")],
        Annotated[QuestionNode, Tag("question")],
        Annotated[ConditionNode, Tag("condition")],
        Annotated[ActionNode, Tag("action")],
        Annotated[TransferNode, Tag("transfer")],
        Annotated[EndNode, Tag("end")],
        Annotated[AIResponseNode, Tag("ai_response")],
        Annotated[WebhookNode, Tag("webhook")],
        Annotated[DelayNode, Tag("delay")],
        Annotated[UnknownNode, Tag("unknown")],
    ],
    Discriminator(_node_type_tag)
]

class KeywordTrigger(BaseModel):
    type: Literal["keyword"]
    keywords: List[str] = Field(default_factory=list)

class ClassificationConditions(BaseModel):
    intent: Optional[Union[str, List[str]]] = None
    urgency: Optional[str] = None
    lead_score_min: Optional[float] = None

class ClassificationTrigger(BaseModel):
    type: Literal["classification"]
    conditions: ClassificationConditions = Field(default_factory=ClassificationConditions)

class IntentTrigger(BaseModel):
    type: Literal["intent"]
    intents: List[str] = Field(default_factory=list)
    min_confidence: float = 0.5

class AlwaysTrigger(BaseModel):
    type: Literal["always"]

# Unknown trigger kinds never match
class UnknownTrigger(BaseModel):
    model_config = ConfigDict(extra='allow')

    type: Optional[str] = None

TRIGGER_TYPES = ("keyword", "classification", "intent", "always")

def _trigger_type_tag(value: Any) -> str:
    trigger_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return trigger_type if trigger_type in TRIGGER_TYPES else "unknown"

TriggerConfig = Annotated[
    Union[
        Annotated[KeywordTrigger, Tag("keyword")],
        Annotated[ClassificationTrigger, Tag("classification")],
        Annotated[IntentTrigger, Tag("intent")],
        Annotated[AlwaysTrigger, Tag("always")],
        Annotated[UnknownTrigger, Tag("unknown")],
    ],
    Discriminator(_trigger_type_tag)
]

class FlowConnection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_node: str = Field(..., alias="from")
    to_node: str = Field(..., alias="to")

class FlowData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    slug: str = ""
    name: str
    description: Optional[str] = None
    isDefault: bool = False
    isActive: bool = True
    priority: int = Field(default=0, description="Lower values are evaluated first")
    triggerConfig: Optional[TriggerConfig] = None
    nodes: List[FlowNode] = Field(default_factory=list)
    connections: List[FlowConnection] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict, description="Initial variables seeded into every session")
    intents: List[str] = Field(default_factory=list, description="Intents this flow handles")
    persistVariables: List[str] = Field(default_factory=list, description="Variables copied to the contact profile on completion")
    times_triggered: int = 0
    times_completed: int = 0
    created_at: Optional[datetime] = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = Field(default_factory=datetime.utcnow)

    def get_node(self, node_id: Optional[str]):
        if not node_id:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_trigger_node(self):
        for node in self.nodes:
            if isinstance(node, TriggerNode):
                return node
        return None

    def find_next_node(self, from_node_id: str):
        """First declared connection wins when a node has several outgoing edges."""
        for connection in self.connections:
            if connection.from_node == from_node_id:
                return self.get_node(connection.to_node)
        return None

    def declared_intents(self) -> List[str]:
        intents = list(self.intents)
        trigger = self.triggerConfig
        if isinstance(trigger, IntentTrigger):
            intents.extend(trigger.intents)
        elif isinstance(trigger, ClassificationTrigger):
            intent = trigger.conditions.intent
            if isinstance(intent, str):
                intents.append(intent)
            elif intent:
                intents.extend(intent)
        seen = []
        for intent in intents:
            if intent not in seen:
                seen.append(intent)
        return seen
