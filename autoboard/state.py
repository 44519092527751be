from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from threading import Event
from typing import List, Optional

from autoboard.types import CritiqueResult, ImagePayload, ProgressEvent


@dataclass
class RefinementState:
    shot_id: str
    iteration: int = 0
    last_image: Optional[ImagePayload] = None
    last_critique: Optional[CritiqueResult] = None


@dataclass
class RunState:
    """Per-run bookkeeping for one auto-mode stream: logs, events and the cancel flag."""

    scene_id: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    events: List[ProgressEvent] = field(default_factory=list)
    cancel_event: Event = field(default_factory=Event)

    def log(self, message: str) -> None:
        ts = datetime.now().strftime("%H:%M:%S")
        self.logs.append(f"[{ts}] {message}")

    def record(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()
