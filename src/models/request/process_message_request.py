from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class ProcessMessageRequest(BaseModel):
    """
    Request model for incoming messages from the channel gateway.
    The channel normalizes its payload into text plus an optional button/list reply ID.
    """
    contact_id: str = Field(..., description="Contact identifier (phone number, user ID, etc.)")
    text: str = Field(default="", description="Message text")
    button_id: Optional[str] = Field(None, description="ID of the pressed button or list row, if any")
    message_id: Optional[str] = Field(None, description="Channel message ID, used for typing indicators")
    session_id: Optional[str] = Field(None, description="Conversation ID used for history lookups")
    contact_name: Optional[str] = Field(None, description="Display name reported by the channel")
    channel: str = Field(default="whatsapp", description="Channel name")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Any other channel metadata")

    class Config:
        json_schema_extra = {
            "example": {
                "contact_id": "+56912345678",
                "text": "Quiero cotizar un colchón",
                "button_id": None,
                "message_id": "wamid.HBgLNTY5MTIzNDU2NzgVAgASGBQzQUVCMEI",
                "session_id": "conv_8841",
                "contact_name": "María",
                "channel": "whatsapp",
                "metadata": {}
            }
        }

    def to_context(self) -> Dict[str, Any]:
        context = dict(self.metadata)
        context.update({
            "button_id": self.button_id,
            "message_id": self.message_id,
            "session_id": self.session_id,
            "contact_name": self.contact_name,
            "channel": self.channel,
        })
        return {key: value for key, value in context.items() if value is not None}
