"""
Lifecycle events and the callback bus that delivers them.
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

WILDCARD = "*"


class EventType:
    """Event names emitted by the engine, queue and monitor."""

    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_PROGRESS = "workflow.progress"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_CANCELLED = "workflow.cancelled"
    STEP_STARTED = "step.started"
    STEP_COMPLETED = "step.completed"
    STEP_FAILED = "step.failed"
    STEP_SKIPPED = "step.skipped"
    STEP_RETRYING = "step.retrying"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    JOB_PROGRESS = "job.progress"
    JOB_EXHAUSTED = "job.exhausted"


@dataclass
class WorkflowEvent:
    """A single lifecycle event."""

    type: str
    execution_id: str
    step_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "execution_id": self.execution_id,
            "step_id": self.step_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


EventCallback = Callable[[WorkflowEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Explicit subscription pub/sub.

    Callbacks run in subscription order and are awaited one after another, so
    events reach a subscriber in the order they were emitted. A callback that
    raises is logged and does not affect other subscribers or the emitter.
    """

    def __init__(self, history_size: int = 0):
        self._subscribers: Dict[str, List[EventCallback]] = {}
        self._lock = Lock()
        self._history: Deque[WorkflowEvent] = deque(maxlen=history_size or None)
        self._keep_history = history_size > 0

    def subscribe(self, event_type: str, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback`` for ``event_type`` (``"*"`` for everything).

        Returns:
            Function that removes the subscription
        """
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

        def unsubscribe() -> None:
            self.unsubscribe(event_type, callback)

        return unsubscribe

    def unsubscribe(self, event_type: str, callback: EventCallback) -> None:
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def subscriber_count(self, event_type: Optional[str] = None) -> int:
        with self._lock:
            if event_type is not None:
                return len(self._subscribers.get(event_type, []))
            return sum(len(cbs) for cbs in self._subscribers.values())

    async def emit(self, event: WorkflowEvent) -> None:
        """Deliver ``event`` to its direct and wildcard subscribers."""
        if self._keep_history:
            self._history.append(event)

        with self._lock:
            callbacks = list(self._subscribers.get(event.type, []))
            if event.type != WILDCARD:
                callbacks += self._subscribers.get(WILDCARD, [])

        for callback in callbacks:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event callback error for {event.type}: {e}")

    async def publish(
        self,
        event_type: str,
        execution_id: str,
        step_id: Optional[str] = None,
        **data: Any,
    ) -> WorkflowEvent:
        """Build and emit an event in one call."""
        event = WorkflowEvent(type=event_type, execution_id=execution_id, step_id=step_id, data=data)
        await self.emit(event)
        return event

    def history(self, event_type: Optional[str] = None) -> List[WorkflowEvent]:
        """Recently emitted events, oldest first (empty unless history is enabled)."""
        events = list(self._history)
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        return events
