from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any

class IntentResult(BaseModel):
    type: str = "unknown"
    confidence: float = 0.0
    matched_rule: Optional[str] = None
    matched_keywords: List[str] = Field(default_factory=list)

class UrgencyResult(BaseModel):
    level: str = "low"
    signals: List[str] = Field(default_factory=list)

class LeadScoreResult(BaseModel):
    value: float = 0
    factors: List[str] = Field(default_factory=list)

class ClassificationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    intent: IntentResult = Field(default_factory=IntentResult)
    urgency: UrgencyResult = Field(default_factory=UrgencyResult)
    lead_score: LeadScoreResult = Field(default_factory=LeadScoreResult, alias="leadScore")
    sentiment: str = "neutral"

class ClassifierRule(BaseModel):
    """
    Rule stored in the classifier_rules collection.
    rule_type is one of intent, urgency, lead_score.
    """
    id: Optional[str] = None
    rule_type: str = Field(default="intent", description="intent, urgency or lead_score")
    name: str = Field(..., description="Intent name, urgency level or lead-score factor")
    keywords: List[str] = Field(default_factory=list)
    patterns: List[str] = Field(default_factory=list)
    exclusions: List[str] = Field(default_factory=list)
    score_modifier: float = Field(default=0, description="Lead-score contribution when the rule matches")
    priority: int = 0
    is_active: bool = True
    extra: Dict[str, Any] = Field(default_factory=dict)
