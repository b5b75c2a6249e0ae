"""Event emitters for run observability.

- LoggingEventEmitter: events as structured log entries
- CompositeEventEmitter: fan-out to several emitters
- NullEventEmitter: discards events

Emitters must never break a run: failures are logged and dropped.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from src.issuebot.events.models import EventType, RunEvent

logger = logging.getLogger(__name__)


class EventEmitter(ABC):
    """Publishes run events to a sink."""

    @abstractmethod
    async def emit(self, event: RunEvent) -> None:
        """Emit one event. Implementations should not raise."""

    async def close(self) -> None:
        """Release sink resources. No-op by default."""


class LoggingEventEmitter(EventEmitter):
    """Writes events as log records, ERROR events at error level."""

    LOG_LEVELS = {
        EventType.STATE_TRANSITION: logging.INFO,
        EventType.COMPLETION: logging.INFO,
        EventType.NO_CHANGES: logging.INFO,
        EventType.ERROR: logging.ERROR,
    }

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    async def emit(self, event: RunEvent) -> None:
        self._logger.log(
            self.LOG_LEVELS.get(event.event_type, logging.INFO),
            "Run event: %s for %s",
            event.event_type.value,
            event.request_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Delegates every event to each child emitter independently.

    Example:
        >>> emitter = CompositeEventEmitter([LoggingEventEmitter(), MetricsEventEmitter()])
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = list(emitters or [])

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    async def emit(self, event: RunEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as exc:
                logger.error(
                    "Failed to emit event to %s: %s",
                    type(emitter).__name__,
                    exc,
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "request_id": event.request_id,
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as exc:
                logger.error("Failed to close emitter %s: %s", type(emitter).__name__, exc)


class NullEventEmitter(EventEmitter):
    """Discards all events."""

    async def emit(self, event: RunEvent) -> None:
        return None
