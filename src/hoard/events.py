"""Stage-transition events for progress display.

Sinks are observational: nothing they do (or raise) influences an install.
"""

import logging
from datetime import datetime, timezone
from typing import Protocol

import structlog
from pydantic import BaseModel, Field

from hoard.models.enums import InstallStage

logger = logging.getLogger(__name__)


class StageEvent(BaseModel):
    package: str
    profile: str
    stage: InstallStage
    family_id: str | None = None
    detail: str | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventSink(Protocol):
    def emit(self, event: StageEvent) -> None:
        ...


class LoggingEventSink:
    """Default sink: one structured log line per transition."""

    def __init__(self) -> None:
        self._log = structlog.get_logger("hoard.progress")

    def emit(self, event: StageEvent) -> None:
        level = "warning" if event.stage == InstallStage.FAILED else "info"
        getattr(self._log, level)(
            "stage_transition",
            package=event.package,
            profile=event.profile,
            stage=event.stage.value,
            family_id=event.family_id,
            detail=event.detail,
        )


class RecordingEventSink:
    """Keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[StageEvent] = []

    def emit(self, event: StageEvent) -> None:
        self.events.append(event)

    def stages_for(self, package: str) -> list[InstallStage]:
        return [e.stage for e in self.events if e.package == package]


def safe_emit(sink: EventSink, event: StageEvent) -> None:
    """Deliver *event*; a failing sink is logged and ignored."""
    try:
        sink.emit(event)
    except Exception:
        logger.warning("Event sink failed for %s -> %s", event.package, event.stage, exc_info=True)
