from typing import Optional
from pydantic import BaseModel, Field

from models.classification_data import ClassificationResult


class FlowMatchRequest(BaseModel):
    """Dry-run trigger evaluation for a message, used by operators to debug flows."""
    text: str = Field(..., description="Message text to evaluate")
    classification: Optional[ClassificationResult] = Field(None, description="Classification to use instead of running the classifier")
