"""
Structured trace events for the detection pipeline.

Callers pass an optional observer (any callable taking a ``TraceEvent``) into
the engine entry points. Events are emitted at fixed checkpoints:

    region.found / region.rejected
    axis.scored / orientation.selected
    candidate.accepted / candidate.rejected / candidate.segmented
    sheet.analyzed
    analysis.completed

An observer that raises is logged and ignored; tracing never changes results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from shared.utils.app_logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TraceEvent:
    stage: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)


DetectionObserver = Callable[[TraceEvent], None]


class TraceEmitter:
    """Thin wrapper that fans events out to an optional observer."""

    def __init__(self, observer: Optional[DetectionObserver] = None):
        self._observer = observer

    @property
    def enabled(self) -> bool:
        return self._observer is not None

    def emit(self, stage: str, event: str, **payload: Any) -> None:
        if self._observer is None:
            return
        try:
            self._observer(TraceEvent(stage=stage, event=event, payload=dict(payload)))
        except Exception:
            logger.exception(f"Detection observer failed on {event}")


class TraceRecorder:
    """Observer that keeps every event in memory (handy in tests)."""

    def __init__(self) -> None:
        self.events: List[TraceEvent] = []

    def __call__(self, event: TraceEvent) -> None:
        self.events.append(event)

    def names(self) -> List[str]:
        return [e.event for e in self.events]

    def of(self, event: str) -> List[TraceEvent]:
        return [e for e in self.events if e.event == event]
