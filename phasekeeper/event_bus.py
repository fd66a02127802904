import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class PhaseEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    source: str
    payload: Dict[str, Any]


class EventBus:
    """A synchronous event bus for the runner's audit trail."""

    def __init__(self):
        self._subscribers: List[Callable[[PhaseEvent], None]] = []

    def subscribe(self, callback: Callable[[PhaseEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(self, event_type: str, source: str, payload: Dict[str, Any]) -> PhaseEvent:
        """Construct and broadcast a PhaseEvent to all subscribers."""
        event = PhaseEvent(event_type=event_type, source=source, payload=payload)

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A bad subscriber must not take the run down with it
                logger.warning(f"[EVENTS] Subscriber failed on {event_type}: {e}")

        return event
