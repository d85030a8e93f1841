"""Status aggregation and de-duplicated change events.

The broadcaster is a QueueListener: the queue calls it after every committed
transition. It keeps the last emitted snapshot per queue and only emits a
``queue_status`` event when the snapshot actually changed. Terminal job
transitions additionally produce a ``job_update`` event.

Transports (SSE, WebSocket) are plain subscribers.
"""

import itertools
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .queue.backends import QueueBackend, QueueListener
from .queue.models import Job, QueueSnapshot

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
Subscriber = Callable[[Event], None]


def job_event(job: Job) -> Event:
    event: Event = {
        "type": "job_update",
        "job_id": job.id,
        "episode_id": job.episode_id,
        "show_id": job.show_id,
        "queue_name": job.queue_name,
        "status": job.state.value,
        "resource_class": job.resource_class.value if job.resource_class else None,
        "attempt": job.attempt,
    }
    if job.error is not None:
        event["error"] = job.error
        event["error_kind"] = job.error_kind
    return event


class StatusBroadcaster(QueueListener):
    def __init__(self, queue: QueueBackend):
        self._queue = queue
        # Reentrant: subscribers may unsubscribe from inside their callback
        self._lock = threading.RLock()
        self._last: Dict[str, QueueSnapshot] = {}
        self._subscribers: Dict[int, Subscriber] = {}
        self._tokens = itertools.count()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def last_snapshot(self, queue_name: str) -> Optional[QueueSnapshot]:
        with self._lock:
            return self._last.get(queue_name)

    def on_job_state_change(self, job: Job) -> None:
        with self._lock:
            self._refresh_locked(job.queue_name)
            if job.state.is_terminal:
                self._emit_locked(job_event(job))

    def on_jobs_deleted(self, queue_name: str, job_ids: List[int]) -> None:
        with self._lock:
            self._refresh_locked(queue_name)

    def publish_alarm(self, message: str, **details: Any) -> None:
        """Process-level alarm (e.g. repeated invalid transitions)."""
        with self._lock:
            self._emit_locked({"type": "alarm", "message": message, **details})

    def _refresh_locked(self, queue_name: str) -> None:
        # Snapshot taken under the broadcaster lock so emissions stay ordered
        snapshot = self._queue.snapshot(queue_name)
        if self._last.get(queue_name) == snapshot:
            return
        self._last[queue_name] = snapshot
        self._emit_locked(
            {
                "type": "queue_status",
                "queue_name": queue_name,
                "snapshot": snapshot.model_dump(),
            }
        )

    def _emit_locked(self, event: Event) -> None:
        for token, callback in list(self._subscribers.items()):
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %s failed on %s event", token, event.get("type"))
