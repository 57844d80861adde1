"""
Realtime Notifier - fire-and-forget event fan-out over Server-Sent Events

Each connected client owns a bounded queue. broadcast() never blocks: a full
queue drops the event for that client only. There is no persistence and no
delivery guarantee.
"""
import json
import logging
import threading
from datetime import datetime, timezone
from queue import Empty, Full, Queue
from typing import Any, Dict, Iterator, List

logger = logging.getLogger(__name__)

EVENT_NAMES = [
    'disaster_created',
    'disaster_updated',
    'resources_updated',
    'report_created',
    'report_verified',
    'report_deleted',
]


class RealtimeNotifier:
    """Broadcast domain events to every subscribed SSE stream"""

    def __init__(self, queue_size: int = 500, keepalive_seconds: float = 15.0):
        self.queue_size = queue_size
        self.keepalive_seconds = keepalive_seconds
        self._clients: List[Queue] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def subscribe(self) -> Queue:
        q = Queue(maxsize=self.queue_size)
        with self._lock:
            self._clients.append(q)
        logger.info(f"SSE client connected ({self.subscriber_count} total)")
        return q

    def unsubscribe(self, q: Queue) -> None:
        with self._lock:
            if q in self._clients:
                self._clients.remove(q)
        logger.info(f"SSE client disconnected ({self.subscriber_count} total)")

    def broadcast(self, event_name: str, payload: Dict[str, Any]) -> int:
        """
        Send an event to all current subscribers

        Args:
            event_name: Event name (e.g., 'report_created')
            payload: JSON-serializable event data

        Returns:
            Number of subscribers the event was queued for
        """
        message = json.dumps({
            'event': event_name,
            'data': payload,
            'timestamp': datetime.now(timezone.utc).isoformat()
        }, default=str)

        with self._lock:
            clients = list(self._clients)

        delivered = 0
        for q in clients:
            try:
                q.put_nowait((event_name, message))
                delivered += 1
            except Full:
                logger.warning(f"Dropping {event_name} for a slow SSE client")

        logger.debug(f"Broadcast {event_name} to {delivered} client(s)")
        return delivered

    def stream(self, q: Queue) -> Iterator[str]:
        """
        Yield SSE frames for one subscriber until the client disconnects

        Frames look like "event: report_created\\ndata: {...}\\n\\n"; idle periods
        produce keep-alive comments.
        """
        try:
            yield "event: hello\ndata: {}\n\n"
            while True:
                try:
                    event_name, message = q.get(timeout=self.keepalive_seconds)
                    yield f"event: {event_name}\ndata: {message}\n\n"
                except Empty:
                    yield ": keep-alive\n\n"
        finally:
            self.unsubscribe(q)
