"""Structured pipeline events and the sinks that receive them."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Iterable, Protocol

logger = logging.getLogger(__name__)


class PipelineEventType(str, Enum):
    BACKUP_STARTED = "backup_started"
    STAGE_CHANGED = "stage_changed"
    FACET_STARTED = "facet_started"
    FACET_COMPLETED = "facet_completed"
    ARTIFACT_PERSISTED = "artifact_persisted"
    BACKUP_FAILED = "backup_failed"


class Outcome(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"


@dataclass
class PipelineEvent:
    event_type: PipelineEventType
    post_id: str
    preservation_id: str | None = None
    stage: str | None = None
    facet: str | None = None
    outcome: Outcome | None = None
    detail: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["event_type"] = self.event_type.value
        payload["outcome"] = self.outcome.value if self.outcome else None
        return {key: value for key, value in payload.items() if value is not None}


class EventSink(Protocol):
    def emit(self, event: PipelineEvent) -> None:
        ...


class LoggingEventSink:
    """Writes every event to the ``castvault.events`` logger."""

    def emit(self, event: PipelineEvent) -> None:
        level = logging.WARNING if event.outcome == Outcome.DEGRADED else logging.INFO
        if event.event_type == PipelineEventType.BACKUP_FAILED:
            level = logging.ERROR
        logger.log(level, "%s %s", event.event_type.value, event.to_dict())


class RecordingEventSink:
    """Keeps events in memory so callers can assert on pipeline behaviour."""

    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    def emit(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: PipelineEventType) -> list[PipelineEvent]:
        return [event for event in self.events if event.event_type == event_type]

    def facet_outcomes(self, post_id: str | None = None) -> dict[str, Outcome]:
        outcomes: dict[str, Outcome] = {}
        for event in self.of_type(PipelineEventType.FACET_COMPLETED):
            if post_id is not None and event.post_id != post_id:
                continue
            if event.facet and event.outcome:
                outcomes[event.facet] = event.outcome
        return outcomes


class EventBus:
    """Fans events out to sinks; a failing sink never breaks the pipeline."""

    def __init__(self, sinks: Iterable[EventSink] | None = None) -> None:
        self._sinks: list[EventSink] = list(sinks) if sinks is not None else [LoggingEventSink()]

    def emit(self, event_type: PipelineEventType, post_id: str, **fields: Any) -> PipelineEvent:
        event = PipelineEvent(event_type=event_type, post_id=post_id, **fields)
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception:
                logger.exception("Event sink %r failed on %s", sink, event_type.value)
        return event
