import json
import logging
import queue
import threading
from typing import Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class OrderEventHub:
    """Fan-out of order state changes to connected admin dashboards.

    Each listener owns a bounded queue. ``register`` and ``unregister`` are
    explicit; a listener whose queue is full misses events rather than
    blocking the payment path.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._listeners: List[queue.Queue] = []
        self._lock = threading.Lock()

    def register(self) -> queue.Queue:
        listener: queue.Queue = queue.Queue(maxsize=self.max_queue_size)
        with self._lock:
            self._listeners.append(listener)
        logger.debug("Order stream listener registered (%s active)", self.listener_count)
        return listener

    def unregister(self, listener: queue.Queue):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def broadcast(self, event_type: str, payload: Dict) -> int:
        message = {"type": event_type, "data": payload}
        with self._lock:
            listeners = list(self._listeners)

        delivered = 0
        for listener in listeners:
            try:
                listener.put_nowait(message)
                delivered += 1
            except queue.Full:
                logger.warning("Order stream listener is full, dropping %s event", event_type)
        return delivered

    def stream(self, listener: queue.Queue, heartbeat_seconds: float = 15.0,
               max_events: Optional[int] = None) -> Iterator[str]:
        """Yield server-sent-event frames until the client goes away."""
        sent = 0
        try:
            yield ": connected\n\n"
            while max_events is None or sent < max_events:
                try:
                    message = listener.get(timeout=heartbeat_seconds)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {message['type']}\ndata: {json.dumps(message['data'])}\n\n"
                sent += 1
        finally:
            self.unregister(listener)
