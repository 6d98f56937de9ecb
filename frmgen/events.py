"""Communication events and the single-observer event bus.

Every request event opened with :meth:`EventBus.start_tracking` returns a
:class:`Tracking` handle. The handle is passed back to
:meth:`EventBus.end_tracking`, which emits exactly one terminal event and
closes the handle, so concurrent operations never share timing state.
"""

from __future__ import annotations

import logging
import random
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, Field

_LOGGER = logging.getLogger(__name__)
_ID_ALPHABET = string.ascii_lowercase + string.digits

EventType = Literal["request", "response", "error", "info"]
Observer = Callable[["CommunicationEvent"], None]


def _event_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommunicationEvent(BaseModel):
    """Timestamped record of one boundary crossing in the pipeline."""

    id: str = Field(default_factory=_event_id)
    timestamp: datetime = Field(default_factory=_utcnow)
    source: str
    target: str
    type: EventType
    message: str
    data: Optional[Any] = None
    duration: Optional[int] = Field(default=None, description="Elapsed milliseconds since the matching request")
    correlation_id: Optional[str] = None


@dataclass
class Tracking:
    """Correlation handle for one open request."""

    source: str
    target: str
    id: str = field(default_factory=_event_id)
    started: float = field(default_factory=time.monotonic)
    closed: bool = False

    def elapsed_ms(self) -> int:
        return max(0, int((time.monotonic() - self.started) * 1000))


class EventBus:
    """Publishes events to at most one attached observer.

    With no observer attached, events are dropped.
    """

    def __init__(self, observer: Optional[Observer] = None) -> None:
        self._observer = observer
        self._lock = threading.Lock()

    @property
    def observer(self) -> Optional[Observer]:
        return self._observer

    def attach(self, observer: Optional[Observer]) -> None:
        with self._lock:
            self._observer = observer

    def detach(self) -> None:
        self.attach(None)

    def publish(self, event: CommunicationEvent) -> CommunicationEvent:
        observer = self._observer
        if observer is None:
            _LOGGER.debug("No observer attached; dropping %s event %r", event.type, event.message)
            return event
        try:
            observer(event)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Event observer failed on %s event %r", event.type, event.message)
        return event

    def emit(
        self,
        source: str,
        target: str,
        type: EventType,
        message: str,
        data: Any = None,
        *,
        duration: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> CommunicationEvent:
        return self.publish(
            CommunicationEvent(
                source=source,
                target=target,
                type=type,
                message=message,
                data=data,
                duration=duration,
                correlation_id=correlation_id,
            )
        )

    def info(self, source: str, target: str, message: str, data: Any = None, *, tracking: Optional[Tracking] = None) -> CommunicationEvent:
        return self.emit(source, target, "info", message, data, correlation_id=tracking.id if tracking else None)

    def start_tracking(self, source: str, target: str, message: str, data: Any = None) -> Tracking:
        tracking = Tracking(source=source, target=target)
        self.emit(source, target, "request", message, data, correlation_id=tracking.id)
        return tracking

    def end_tracking(
        self,
        tracking: Tracking,
        message: str,
        data: Any = None,
        *,
        is_error: bool = False,
        target: Optional[str] = None,
    ) -> CommunicationEvent:
        if tracking.closed:
            raise RuntimeError(f"Tracking {tracking.id} already closed")
        tracking.closed = True
        return self.emit(
            tracking.source,
            target or tracking.target,
            "error" if is_error else "response",
            message,
            data,
            duration=tracking.elapsed_ms(),
            correlation_id=tracking.id,
        )


class EventRecorder:
    """Observer that keeps events in memory; handy for hosts and tests."""

    def __init__(self) -> None:
        self.events: list[CommunicationEvent] = []

    def __call__(self, event: CommunicationEvent) -> None:
        self.events.append(event)

    def of_type(self, type: EventType) -> list[CommunicationEvent]:
        return [event for event in self.events if event.type == type]


__all__ = ["CommunicationEvent", "EventBus", "EventRecorder", "Tracking", "Observer", "EventType"]
