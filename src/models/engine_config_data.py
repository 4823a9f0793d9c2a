from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime

class GlobalKeyword(BaseModel):
    keyword: str = Field(..., description="Exact phrase, compared after normalization")
    action: Literal["reset", "human", "end", "menu", "reply"] = "reply"
    response: Optional[str] = Field(None, description="Message sent when the keyword fires")
    flow_slug: Optional[str] = Field(None, description="Flow started by the menu action")

class EngineConfig(BaseModel):
    """
    Runtime-tunable engine settings, stored as a single document and cached with a TTL.
    """
    interruption_enabled: bool = True
    interruption_min_length: int = 10
    interruption_confidence: float = 0.7
    high_priority_intents: List[str] = Field(default_factory=lambda: ["complaint", "support", "sales"])
    fallback_enabled: bool = True
    fidelity_level: Literal["exact", "polished", "enhanced", "creative"] = "enhanced"
    behavior_rules: List[str] = Field(default_factory=list, description="Operator rules, highest priority in the prompt")
    system_prompt: str = "Eres un asistente de atención al cliente amable y conciso."
    fallback_model: Optional[str] = None
    fallback_max_tokens: int = 300
    history_turns: int = 10
    knowledge_temperature: float = 0.3
    default_temperature: float = 0.7
    message_split_enabled: bool = True
    message_split_budget: int = 180
    typing_ms_per_char: int = 25
    typing_min_delay_ms: int = 1200
    typing_max_delay_ms: int = 6000
    fallback_message: str = "Gracias por tu mensaje. Un agente te atenderá pronto."
    ai_error_message: str = "Disculpa, hubo un problema. Un agente te atenderá pronto."
    transfer_message: str = "Te estoy transfiriendo con un agente. Un momento por favor."
    greeting_flow_slug: Optional[str] = None
    returning_greeting: str = "¡Hola de nuevo {{name}}! ¿En qué te puedo ayudar hoy?"
    global_keywords: List[GlobalKeyword] = Field(default_factory=list)
    updated_at: Optional[datetime] = None
