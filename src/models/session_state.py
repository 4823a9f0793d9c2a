from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List, Literal
from datetime import datetime

from models.flow_data import NodeOption

class SessionState(BaseModel):
    """
    In-memory record of an active conversation inside a flow.
    At most one session exists per contact; it is discarded on completion,
    transfer, failure or interruption.
    """
    contact_id: str = Field(..., description="Contact identifier (phone number, user ID, etc.)")
    flow_id: str = Field(..., description="ID of the flow being executed")
    flow_slug: str = Field(default="", description="Slug of the flow being executed")
    current_node_id: Optional[str] = Field(None, description="Node the cursor is on")
    status: Literal["running", "awaiting_input"] = Field(default="running", description="running while chaining nodes, awaiting_input at a question")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Variables collected in this run")
    context: Dict[str, Any] = Field(default_factory=dict, description="Inbound context of the triggering message")
    expected_variable: Optional[str] = Field(None, description="Variable the pending question writes to")
    expected_options: List[NodeOption] = Field(default_factory=list, description="Options of the pending question")
    execution_log_id: Optional[str] = Field(None, description="Execution log of this run")
    started_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
