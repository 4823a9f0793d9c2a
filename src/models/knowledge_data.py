from pydantic import BaseModel, Field
from typing import Optional, Literal

class KnowledgeItem(BaseModel):
    source: Literal["learned", "faq"] = Field(..., description="learned Q&A pair or curated FAQ entry")
    question: str = ""
    answer: str = ""
    title: Optional[str] = None
    score: float = 0.0
    quality_score: Optional[float] = None

class ProductInfo(BaseModel):
    product_name: Optional[str] = None
    variant: Optional[str] = None

class PriceRecord(BaseModel):
    product_name: str
    variant: Optional[str] = None
    price: float
    currency: str = "CLP"
    notes: Optional[str] = None

class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
