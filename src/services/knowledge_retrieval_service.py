import re
import asyncio
from typing import Optional, Dict, Any, List

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Models
from models.knowledge_data import KnowledgeItem, ProductInfo, PriceRecord, ConversationTurn

PRICE_PATTERNS = [
    re.compile(r"cu[aá]nto\s*(vale|cuesta|sale|est[aá])", re.IGNORECASE),
    re.compile(r"precio", re.IGNORECASE),
    re.compile(r"valor", re.IGNORECASE),
    re.compile(r"\$\s*\d"),
    re.compile(r"cotiz", re.IGNORECASE),
    re.compile(r"cuotas", re.IGNORECASE),
    re.compile(r"how\s+much|price|cost", re.IGNORECASE),
]

# Order matters: more specific sizes first
VARIANT_PATTERNS = [
    (re.compile(r"super\s*king", re.IGNORECASE), "Super King"),
    (re.compile(r"king", re.IGNORECASE), "King"),
    (re.compile(r"queen", re.IGNORECASE), "Queen"),
    (re.compile(r"full", re.IGNORECASE), "Full"),
    (re.compile(r"2\s*plazas?|dos\s*plazas?|doble", re.IGNORECASE), "2 Plazas"),
    (re.compile(r"plaza\s*y\s*media|1\.5\s*plazas?|1\s*1/2", re.IGNORECASE), "Plaza y media"),
    (re.compile(r"1\s*plaza|una\s*plaza", re.IGNORECASE), "1 Plaza"),
]

STOP_WORDS = {
    "cuanto", "cuánto", "vale", "cuesta", "sale", "precio", "quiero", "ver", "el", "la", "los", "las",
    "un", "una", "en", "de", "del", "que", "por", "para", "con", "tiene", "tienen", "hola",
    "how", "much", "is", "the", "price", "of", "for",
}


class KnowledgeRetrievalService:
    """
    Retrieval side of the knowledge-augmented fallback.
    Every lookup degrades to an empty result instead of raising.
    """
    def __init__(self, log_util: LogUtil, flow_db: FlowDB, min_quality: float = 50,
                 learned_top_k: int = 3, faq_top_k: int = 2, context_messages: int = 30):
        self.log_util = log_util
        self.flow_db = flow_db
        self.min_quality = min_quality
        self.learned_top_k = learned_top_k
        self.faq_top_k = faq_top_k
        self.context_messages = context_messages

    async def retrieve(self, text: str) -> List[KnowledgeItem]:
        """
        Learned Q&A pairs first, then FAQ entries whose answer or question is not already present.
        """
        try:
            learned, faq = await asyncio.gather(
                self.flow_db.search_learned_pairs(text, self.min_quality, self.learned_top_k),
                self.flow_db.search_faq_entries(text, self.faq_top_k)
            )
        except Exception as e:
            self.log_util.error(service_name="KnowledgeRetrievalService", message=f"[KNOWLEDGE] ❌ Retrieval failed: {str(e)}")
            return []

        combined = list(learned)
        for item in faq:
            duplicate = any(existing.answer == item.answer or existing.question == item.question for existing in combined)
            if not duplicate:
                combined.append(item)

        self.log_util.info(
            service_name="KnowledgeRetrievalService",
            message=f"[KNOWLEDGE] Retrieved {len(combined)} items (learned={len(learned)}, faq={len(faq)})"
        )
        return combined

    def is_price_query(self, text: str) -> bool:
        return any(pattern.search(text or "") for pattern in PRICE_PATTERNS)

    def extract_product_info(self, text: str) -> ProductInfo:
        normalized = (text or "").lower()

        variant = None
        for pattern, variant_name in VARIANT_PATTERNS:
            if pattern.search(normalized):
                variant = variant_name
                break

        words = re.findall(r"[\wáéíóúñ]+", normalized)
        product_words = [word for word in words if word not in STOP_WORDS and len(word) > 2]
        product_name = " ".join(product_words).strip()

        return ProductInfo(product_name=product_name or None, variant=variant)

    async def find_price(self, product_name: Optional[str], variant: Optional[str] = None) -> List[PriceRecord]:
        if not product_name:
            return []
        try:
            prices = await self.flow_db.find_product_prices(product_name, variant, limit=5)
            if not prices and variant:
                prices = await self.flow_db.find_product_prices(product_name, None, limit=5)
            return prices
        except Exception as e:
            self.log_util.error(service_name="KnowledgeRetrievalService", message=f"[KNOWLEDGE] ❌ Price lookup failed: {str(e)}")
            return []

    async def get_recent_context(self, session_id: Optional[str], limit: Optional[int] = None) -> List[ConversationTurn]:
        """
        Last messages of a conversation, oldest first, consecutive messages from the same side merged.
        """
        if not session_id:
            return []
        try:
            messages = await self.flow_db.get_recent_messages(session_id, limit or self.context_messages)
        except Exception as e:
            self.log_util.error(service_name="KnowledgeRetrievalService", message=f"[KNOWLEDGE] ❌ Context load failed: {str(e)}")
            return []

        turns: List[ConversationTurn] = []
        for message in messages:
            content = (message.get("content") or "").strip()
            if not content:
                continue
            role = "user" if message.get("direction") == "inbound" else "assistant"
            if turns and turns[-1].role == role:
                turns[-1].content += "\n" + content
            else:
                turns.append(ConversationTurn(role=role, content=content))
        return turns
