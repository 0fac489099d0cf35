"""Observability events emitted by the replacement engine and pipeline.

Every event is logged as a structured record and then handed to subscribers.
A subscriber that raises is logged and skipped; publishing never fails.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .log import get_logger, log_event

logger = get_logger(__name__)


class EventKind(Enum):
    """Kinds of observability events."""

    CHECKPOINT_REACHED = "checkpoint_reached"
    BATCH_REPLACED = "batch_replaced"
    PLAN_TERMINAL = "plan_terminal_state"
    PLAN_STARTED = "plan_started"
    STAGE_CHANGED = "pipeline_stage_changed"


@dataclass(frozen=True)
class RolloutEvent:
    """A single observability event.

    ``counts`` carries the numeric progress at the time of the event, e.g.
    ``replaced_count``, ``desired_count``, ``in_service``.
    """

    kind: EventKind
    subject_id: str
    timestamp: float
    counts: Dict[str, int] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def plan_id(self) -> str:
        return self.subject_id


EventHandler = Callable[[RolloutEvent], None]


class EventRecorder:
    """Thread-safe publish/subscribe hub that keeps an in-memory history."""

    def __init__(self, max_history: Optional[int] = 1000) -> None:
        self._lock = threading.Lock()
        self._handlers: List[EventHandler] = []
        self._history: List[RolloutEvent] = []
        self._max_history = max_history

    def subscribe(self, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            try:
                self._handlers.remove(handler)
                return True
            except ValueError:
                return False

    def publish(self, event: RolloutEvent) -> None:
        """Log ``event`` and dispatch it to every subscriber in registration order."""
        log_event(
            logger,
            "event",
            f"{event.kind.value} {event.subject_id}",
            event_kind=event.kind.value,
            subject_id=event.subject_id,
            event_timestamp=event.timestamp,
            counts=dict(event.counts),
            **event.attributes,
        )
        with self._lock:
            self._history.append(event)
            if self._max_history is not None and len(self._history) > self._max_history:
                del self._history[: len(self._history) - self._max_history]
            handlers = list(self._handlers)

        for handler in handlers:
            try:
                handler(event)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Error in event handler %r", handler)

    def history(self, kind: Optional[EventKind] = None) -> List[RolloutEvent]:
        """Recorded events, oldest first, optionally filtered by kind."""
        with self._lock:
            events = list(self._history)
        if kind is None:
            return events
        return [event for event in events if event.kind is kind]

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
