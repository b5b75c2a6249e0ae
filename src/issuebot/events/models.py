"""Run event models for observability.

Events are emitted at the key points of an orchestration run: stage
changes, failures, completion with a published change, and runs that
ended without changes. Sinks (logs, Prometheus) consume them through the
EventEmitter interface.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Categories of run events.

    Attributes:
        STATE_TRANSITION: The run moved to another stage.
        ERROR: The run failed; details carry ``stage`` and ``error_message``.
        COMPLETION: A pull request was created or updated.
        NO_CHANGES: The agent succeeded but touched no files.
    """

    STATE_TRANSITION = "state_transition"
    ERROR = "error"
    COMPLETION = "completion"
    NO_CHANGES = "no_changes"


class RunEvent(BaseModel):
    """Structured event emitted during an orchestration run.

    Attributes:
        event_type: Event category.
        request_id: Identifier in format "{owner}/{repo}#{number}".
        repository: Repository in format "{owner}/{repo}".
        flow: "issue" or "review".
        timestamp: When the event occurred (UTC).
        details: Event-specific context, e.g. ``from_stage``/``to_stage``
            for transitions or ``duration_seconds`` for completions.
    """

    event_type: EventType
    request_id: str = Field(..., min_length=1)
    repository: str = Field(..., min_length=1)
    flow: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        """Flat dictionary for structured logging.

        Detail keys are prefixed so they cannot clash with LogRecord
        attributes when passed as ``extra``.
        """
        return {
            "event_type": self.event_type.value,
            "request_id": self.request_id,
            "repository": self.repository,
            "flow": self.flow,
            "event_timestamp": self.timestamp.isoformat(),
            **{f"detail_{key}": value for key, value in self.details.items()},
        }
