from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime

class ContactProfile(BaseModel):
    id: Optional[str] = None  # MongoDB _id
    contact_id: str = Field(..., description="Contact identifier (phone number, user ID, etc.)")
    name: Optional[str] = Field(None, description="Display name, if known")
    fields: Dict[str, Any] = Field(default_factory=dict, description="Variables persisted from completed flows")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class CompletedFlowData(BaseModel):
    """One record per (contact, flow) pair; completion is counted, never duplicated."""
    id: Optional[str] = None  # MongoDB _id
    contact_id: str
    flow_id: str
    flow_slug: Optional[str] = None
    completion_count: int = 1
    first_completed_at: datetime = Field(default_factory=datetime.utcnow)
    last_completed_at: datetime = Field(default_factory=datetime.utcnow)

class GeneratedMessageData(BaseModel):
    """Assistant message part produced by the knowledge-augmented fallback."""
    id: Optional[str] = None  # MongoDB _id
    contact_id: str
    session_id: Optional[str] = None
    text: str
    channel_message_id: Optional[str] = None
    part_index: int = 0
    total_parts: int = 1
    is_ai_generated: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
