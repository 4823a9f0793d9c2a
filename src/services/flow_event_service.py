import asyncio
from collections import deque
from datetime import datetime
from typing import Dict, Any, List, Optional, Set

# Utils
from utils.log_utils import LogUtil


class FlowEventService:
    """
    In-process fan-out of flow execution events to monitor subscribers.
    Emitting never blocks and never raises; slow subscribers lose events.
    """
    def __init__(self, log_util: LogUtil, history_size: int = 200, queue_size: int = 500):
        self.log_util = log_util
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()
        self._recent: deque = deque(maxlen=history_size)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def recent_events(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        events = list(self._recent)
        return events[-limit:] if limit else events

    def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        event = {"type": event_type, "timestamp": datetime.utcnow().isoformat(), **payload}
        self._recent.append(event)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.log_util.warning(service_name="FlowEventService", message=f"[MONITOR] Subscriber queue full, dropped {event_type}")
