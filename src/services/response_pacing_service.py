"""
Response Pacing Service
Delivers a generated reply the way a person types it: split into a few parts,
each preceded by a typing indicator and a length-proportional pause.
"""
import re
import random
import asyncio
from typing import Optional, Dict, Any, List, Callable, Awaitable

from utils.log_utils import LogUtil
from database.flow_db import FlowDB
from services.whatsapp_flow_service import WhatsAppFlowService
from models.engine_config_data import EngineConfig
from models.contact_profile import GeneratedMessageData

SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?…])\s+|\n{2,}")
MAX_PARTS = 3
JITTER = 0.2


def split_response(text: str, budget: int) -> List[str]:
    """
    Split text at sentence boundaries into parts of roughly `budget` characters.
    A part closes once it reaches the budget; a short tail joins the previous part.
    More than three parts are merged back into two.
    """
    text = (text or "").strip()
    if not text or len(text) <= budget:
        return [text] if text else []

    sentences = [sentence.strip() for sentence in SENTENCE_BOUNDARY.split(text) if sentence and sentence.strip()]
    parts: List[str] = []
    current = ""
    for sentence in sentences:
        current = f"{current} {sentence}" if current else sentence
        if len(current) >= budget:
            parts.append(current)
            current = ""
    if current:
        if parts and len(current) < budget // 2:
            parts[-1] = f"{parts[-1]} {current}"
        else:
            parts.append(current)

    if len(parts) > MAX_PARTS:
        parts = _merge_into_two(parts)
    return parts


def _merge_into_two(parts: List[str]) -> List[str]:
    total = sum(len(part) for part in parts)
    running = 0
    split_at = 1
    for index, part in enumerate(parts):
        running += len(part)
        if running >= total / 2:
            split_at = max(1, min(index + 1, len(parts) - 1))
            break
    return [" ".join(parts[:split_at]), " ".join(parts[split_at:])]


class ResponsePacingService:
    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        whatsapp_flow_service: WhatsAppFlowService,
        sleep_func: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.whatsapp_flow_service = whatsapp_flow_service
        self.sleep_func = sleep_func
        self.rng = rng or random.Random()

    def compute_delay_ms(self, part: str, config: EngineConfig) -> int:
        base = len(part) * config.typing_ms_per_char
        jittered = base * self.rng.uniform(1 - JITTER, 1 + JITTER)
        return int(max(config.typing_min_delay_ms, min(jittered, config.typing_max_delay_ms)))

    def plan(self, text: str, config: EngineConfig) -> List[Dict[str, Any]]:
        parts = split_response(text, config.message_split_budget) if config.message_split_enabled else [text.strip()]
        return [{"text": part, "delay_ms": self.compute_delay_ms(part, config)} for part in parts if part]

    async def deliver(self, contact_id: str, text: str, config: EngineConfig, context: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Send the reply part by part and persist each part.

        Returns:
            One {"text", "delay_ms", "message_id"} dict per part sent
        """
        context = context or {}
        planned = self.plan(text, config)
        delivered: List[Dict[str, Any]] = []

        for index, part in enumerate(planned):
            await self.whatsapp_flow_service.send_typing(contact_id, context.get("message_id"))
            await self.sleep_func(part["delay_ms"] / 1000)
            send_result = await self.whatsapp_flow_service.send_text(contact_id, part["text"])
            message_id = send_result.get("message_id") if isinstance(send_result, dict) else None

            try:
                await self.flow_db.save_generated_message(GeneratedMessageData(
                    contact_id=contact_id,
                    session_id=context.get("session_id"),
                    text=part["text"],
                    channel_message_id=message_id,
                    part_index=index,
                    total_parts=len(planned)
                ))
            except Exception as e:
                self.log_util.error(service_name="ResponsePacingService", message=f"[PACING] ❌ Could not persist part {index}: {str(e)}")

            delivered.append({**part, "message_id": message_id})

        self.log_util.info(
            service_name="ResponsePacingService",
            message=f"[PACING] ✅ Delivered {len(delivered)} part(s) to {contact_id} (delays={[part['delay_ms'] for part in delivered]})"
        )
        return delivered
