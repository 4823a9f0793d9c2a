from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List, Literal
from datetime import datetime

class ExecutionStep(BaseModel):
    node_id: str = Field(..., description="Node ID that was executed")
    node_type: str = Field(..., description="Type of the executed node")
    node_name: Optional[str] = Field(None, description="Display name of the node")
    status: Literal["success", "error"] = Field(default="success", description="Outcome of the node")
    output: Optional[str] = Field(None, description="Output summary, truncated")
    duration_ms: int = Field(default=0, description="Wall-clock duration of the node")
    timestamp: datetime = Field(default_factory=datetime.utcnow)

class ExecutionLogData(BaseModel):
    """
    Model for storing one flow run.
    Tracks every executed node for analytics and auditing.
    """
    id: Optional[str] = None  # MongoDB _id
    flow_id: str = Field(..., description="Flow ID of the run")
    flow_name: Optional[str] = Field(None, description="Flow name at run time")
    flow_slug: Optional[str] = Field(None, description="Flow slug at run time")
    contact_id: str = Field(..., description="Contact the run belongs to")
    trigger_type: Optional[str] = Field(None, description="Trigger kind that started the run")
    trigger_message: Optional[str] = Field(None, description="Message that started the run")
    classification: Optional[Dict[str, Any]] = Field(None, description="Classification of the triggering message")
    status: Literal["running", "completed", "failed", "transferred"] = Field(default="running")
    steps: List[ExecutionStep] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    final_node_id: Optional[str] = None
    final_node_type: Optional[str] = None
    error_message: Optional[str] = None
    error_node_id: Optional[str] = None
    total_duration_ms: Optional[int] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
