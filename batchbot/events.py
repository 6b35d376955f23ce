# batchbot/events.py
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

EVENT_NAMES = frozenset({
    "current-price", "last-prices", "buy-price", "max-price",
    "batch-created", "multi-step-sell", "stop-loss", "batch-completed",
    "wallet", "check", "checkstart", "market-selected", "trading-mode",
    "error", "stream-error", "reset-complete", "shutdown",
})


class EventBus:
    """
    Outward event stream for the presentation layer.
    Fans every event out to subscriber queues and remembers the latest value
    per (event, market) so a late subscriber can render the current state.
    """
    def __init__(self, logger: logging.Logger, max_queue: int = 1000):
        self.logger = logger
        self.max_queue = max_queue
        self._queues: List[asyncio.Queue] = []
        self._latest: Dict[Tuple[str, Optional[str]], Dict[str, Any]] = {}

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._queues:
            self._queues.remove(queue)

    def emit(self, name: str, payload: Any = None):
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {name}")
        market = payload.get("market") if isinstance(payload, dict) else None
        event = {"event": name, "payload": payload, "ts": time.time()}
        self._latest[(name, market)] = event

        for queue in self._queues:
            if queue.full():
                # Slow consumer: drop its oldest event rather than block trading
                queue.get_nowait()
            queue.put_nowait(event)

    def latest(self, name: str, market: Optional[str] = None) -> Optional[Any]:
        event = self._latest.get((name, market))
        return event["payload"] if event else None

    def clear(self):
        self._latest.clear()
