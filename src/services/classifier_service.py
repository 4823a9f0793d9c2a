import re
import time
import unicodedata
import traceback
from typing import Optional, Dict, Any, List

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Models
from models.classification_data import (
    ClassificationResult,
    ClassifierRule,
    IntentResult,
    UrgencyResult,
    LeadScoreResult,
)

URGENCY_LEVELS = {"low": 1, "medium": 2, "high": 3}
POSITIVE_WORDS = ["gracias", "excelente", "genial", "perfecto", "bueno", "bien", "feliz", "contento", "encanta"]
NEGATIVE_WORDS = ["mal", "malo", "terrible", "pesimo", "horrible", "enojado", "molesto", "decepcionado", "frustrado"]


def normalize_text(text: str) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""
    decomposed = unicodedata.normalize("NFD", (text or "").lower())
    without_accents = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    without_punctuation = re.sub(r"[^\w\s]", " ", without_accents)
    return re.sub(r"\s+", " ", without_punctuation).strip()


class ClassifierService:
    """
    Rule-based message classifier: intent, urgency, lead score and sentiment.
    Rules live in the classifier_rules collection and are reloaded periodically.
    """
    def __init__(self, log_util: LogUtil, flow_db: FlowDB, reload_interval_seconds: int = 300):
        self.log_util = log_util
        self.flow_db = flow_db
        self.reload_interval_seconds = reload_interval_seconds
        self.rules: Dict[str, List[ClassifierRule]] = {"intent": [], "urgency": [], "lead_score": []}
        self._loaded_at: Optional[float] = None

    async def load_rules(self) -> int:
        rules = await self.flow_db.get_classifier_rules()
        grouped: Dict[str, List[ClassifierRule]] = {"intent": [], "urgency": [], "lead_score": []}
        for rule in rules:
            grouped.setdefault(rule.rule_type, []).append(rule)
        self.rules = grouped
        self._loaded_at = time.monotonic()
        self.log_util.info(
            service_name="ClassifierService",
            message=f"[CLASSIFIER] Loaded {len(rules)} rules (intent={len(grouped['intent'])}, urgency={len(grouped['urgency'])}, lead_score={len(grouped['lead_score'])})"
        )
        return len(rules)

    async def _ensure_rules(self) -> None:
        if self._loaded_at is None or time.monotonic() - self._loaded_at > self.reload_interval_seconds:
            await self.load_rules()

    def match_rule(self, message: str, rule: ClassifierRule) -> Dict[str, Any]:
        """
        Match a normalized message against one rule.
        Keywords add 0.3 each, patterns 0.5 each, any exclusion vetoes the rule.
        """
        result = {"matched": False, "score": 0.0, "matched_keywords": []}

        for word in rule.exclusions:
            if normalize_text(word) and normalize_text(word) in message:
                return result

        for keyword in rule.keywords:
            normalized_keyword = normalize_text(keyword)
            if normalized_keyword and normalized_keyword in message:
                result["matched"] = True
                result["score"] += 0.3
                result["matched_keywords"].append(keyword)

        for pattern in rule.patterns:
            try:
                if re.search(pattern, message, re.IGNORECASE):
                    result["matched"] = True
                    result["score"] += 0.5
                    result["matched_keywords"].append(f"pattern:{pattern}")
            except re.error as e:
                self.log_util.warning(
                    service_name="ClassifierService",
                    message=f"[CLASSIFIER] Invalid regex pattern '{pattern}' in rule {rule.name}: {str(e)}"
                )

        result["score"] = min(result["score"], 1.0)
        return result

    def classify_intent(self, message: str) -> IntentResult:
        best = IntentResult()
        for rule in self.rules.get("intent", []):
            match = self.match_rule(message, rule)
            if match["matched"] and match["score"] > best.confidence:
                best = IntentResult(
                    type=rule.name,
                    confidence=match["score"],
                    matched_rule=rule.id,
                    matched_keywords=match["matched_keywords"]
                )
        return best

    def classify_urgency(self, message: str) -> UrgencyResult:
        result = UrgencyResult()
        for rule in self.rules.get("urgency", []):
            match = self.match_rule(message, rule)
            if not match["matched"]:
                continue
            if URGENCY_LEVELS.get(rule.name, 1) > URGENCY_LEVELS.get(result.level, 1):
                result.level = rule.name
            result.signals.extend(match["matched_keywords"])
        return result

    def calculate_lead_score(self, message: str) -> LeadScoreResult:
        total = 0.0
        factors: List[str] = []
        for rule in self.rules.get("lead_score", []):
            if self.match_rule(message, rule)["matched"]:
                total += rule.score_modifier
                factors.append(rule.name)
        return LeadScoreResult(value=max(0, min(100, total)), factors=factors)

    def classify_sentiment(self, message: str) -> str:
        positive = sum(1 for word in POSITIVE_WORDS if word in message)
        negative = sum(1 for word in NEGATIVE_WORDS if word in message)
        if positive > negative:
            return "positive"
        if negative > positive:
            return "negative"
        return "neutral"

    async def classify(self, text: str, context: Optional[Dict[str, Any]] = None) -> ClassificationResult:
        """
        Classify a message. Never raises: on failure an empty classification is returned.
        """
        try:
            await self._ensure_rules()
            message = normalize_text(text)
            return ClassificationResult(
                intent=self.classify_intent(message),
                urgency=self.classify_urgency(message),
                lead_score=self.calculate_lead_score(message),
                sentiment=self.classify_sentiment(message)
            )
        except Exception as e:
            self.log_util.error(
                service_name="ClassifierService",
                message=f"[CLASSIFIER] ❌ Classification failed, using empty result: {str(e)}\n{traceback.format_exc()}"
            )
            return ClassificationResult()
