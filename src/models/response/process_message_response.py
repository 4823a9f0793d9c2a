from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class ProcessMessageResponse(BaseModel):
    """
    Response model for message processing.
    Carries the engine result so the gateway can react to transfers and completions.
    """
    status: str = Field(..., description="Processing status (success, error)")
    message: str = Field(..., description="Human-readable message")
    result_type: Optional[str] = Field(None, description="Engine result type")
    flow_id: Optional[str] = Field(None, description="Flow ID if a flow handled the message")
    result: Optional[Dict[str, Any]] = Field(None, description="Full engine result")
    error_details: Optional[str] = Field(None, description="Error details if status is error")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "success",
                "message": "Message processed",
                "result_type": "waiting_for_response",
                "flow_id": "6650c0f1a2b3c4d5e6f70811",
                "result": {"type": "waiting_for_response", "variable": "budget"},
                "error_details": None
            }
        }
