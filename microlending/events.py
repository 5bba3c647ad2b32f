"""
Event System Module

Publish/subscribe dispatcher for loan lifecycle events. Events are published
after the transition they describe has committed; handler failures are
logged and never reach the publisher.

With ``background=True`` events are queued and delivered by a worker thread,
so a slow notification channel cannot hold up an API request.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from queue import Queue, Empty
import threading
import uuid

from .logging_config import get_logger


class LoanEvent(Enum):
    """Lifecycle events"""
    APPLICATION_SUBMITTED = "loan_application_submitted"
    APPROVED = "loan_approved"
    AUTO_APPROVED = "loan_auto_approved"
    SPECIALLY_APPROVED = "loan_specially_approved"
    REJECTED = "loan_rejected"
    DISBURSED = "loan_disbursed"
    REFUND_PROCESSED = "loan_refund_processed"
    REFUND_FAILED = "loan_refund_failed"


@dataclass
class EventPayload:
    """Payload for lifecycle events"""
    event_type: LoanEvent
    user_id: str
    loan_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value,
            'user_id': self.user_id,
            'loan_id': self.loan_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


_STOP = object()


class EventDispatcher:
    """Central event dispatcher, publish/subscribe"""

    def __init__(self, background: bool = False):
        self._handlers: Dict[LoanEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = threading.RLock()
        self.logger = get_logger("microlending.events")
        self.background = background
        self._queue: "Queue[Any]" = Queue()
        self._worker: Optional[threading.Thread] = None
        if background:
            self._start_worker()

    def subscribe(self, event_type: LoanEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed {getattr(handler, '__name__', repr(handler))} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to every event"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: LoanEvent, handler: Callable) -> None:
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Deliver now, or enqueue when running in the background"""
        if self.background:
            self._queue.put(event)
        else:
            self._deliver(event)

    def emit(self, event_type: LoanEvent, user_id: str, loan_id: str, **data) -> EventPayload:
        """Build and publish an event"""
        event = EventPayload(event_type=event_type, user_id=user_id, loan_id=loan_id, data=data)
        self.publish(event)
        return event

    def _deliver(self, event: EventPayload) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing {event.event_type.value} for loan:{event.loan_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Side channels never break the transition that emitted the event
                self.logger.error(
                    f"Error in event handler {getattr(handler, '__name__', repr(handler))} "
                    f"for {event.event_type.value}: {e}"
                )

    def _start_worker(self) -> None:
        self._worker = threading.Thread(target=self._run, name="event-dispatcher", daemon=True)
        self._worker.start()

    def _run(self) -> None:
        while True:
            try:
                item = self._queue.get(timeout=1.0)
            except Empty:
                continue
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued event has been delivered"""
        if self.background:
            self._queue.join()

    def close(self) -> None:
        """Drain the queue and stop the worker"""
        if self._worker is not None and self._worker.is_alive():
            self._queue.put(_STOP)
            self._worker.join(timeout=5.0)
        self._worker = None

    def get_handler_count(self, event_type: Optional[LoanEvent] = None) -> int:
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()
