from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from autoboard.config import DEFAULT_BASE_URL, ModelConfig, clamp_loops
from autoboard.errors import ValidationError
from autoboard.pipeline import Pipeline
from autoboard.state import RunState
from autoboard.types import ProgressEvent

CONTENT_TYPE = "text/event-stream"

STREAM_HEADERS: Dict[str, str] = {
    "Content-Type": CONTENT_TYPE,
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def encode_event(event: ProgressEvent) -> str:
    """One Server-Sent-Events frame holding the event as a single JSON line."""
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"


def _text(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


@dataclass(frozen=True)
class AutoModeRequest:
    scene_id: str
    description: str
    llm: ModelConfig
    image: ModelConfig
    max_loops: Optional[object] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], defaults: Optional[ModelConfig] = None) -> "AutoModeRequest":
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        if not _text(payload, "llmApiKey") or not _text(payload, "geminiApiKey"):
            raise ValidationError("API keys not configured")
        if not _text(payload, "description").strip():
            raise ValidationError("Description is required")
        if not _text(payload, "sceneId"):
            raise ValidationError("sceneId is required")
        timeout_sec = defaults.timeout_sec if defaults else 120
        retries = defaults.retries if defaults else 0
        return cls(
            scene_id=payload["sceneId"],
            description=payload["description"],
            llm=ModelConfig(
                api_key=payload["llmApiKey"],
                base_url=_text(payload, "llmBaseUrl") or DEFAULT_BASE_URL,
                model=_text(payload, "llmModel") or "openai/gpt-4o-mini",
                timeout_sec=timeout_sec,
                retries=retries,
            ),
            image=ModelConfig(
                api_key=payload["geminiApiKey"],
                base_url=_text(payload, "geminiBaseUrl") or DEFAULT_BASE_URL,
                model=_text(payload, "geminiModel") or "google/gemini-2.5-flash-image-preview",
                timeout_sec=timeout_sec,
                retries=retries,
            ),
            max_loops=payload.get("maxLoops"),
        )


def stream_auto_mode(
    payload: Dict[str, Any],
    pipeline: Pipeline,
    run: Optional[RunState] = None,
) -> Iterator[str]:
    """Validate an auto-mode request and return its event-stream frames.

    Raises ValidationError synchronously, before any frame is produced. Closing
    the returned iterator (client disconnect) cancels the run; work already in
    flight finishes first.
    """
    request = AutoModeRequest.from_dict(payload, defaults=pipeline.cfg.image)
    max_iterations = clamp_loops(request.max_loops, pipeline.cfg)
    run = run or RunState()
    run.scene_id = request.scene_id
    events = pipeline.run_auto_mode(
        request.scene_id,
        request.description,
        max_loops=max_iterations,
        llm_cfg=request.llm,
        image_cfg=request.image,
        cancel=run.cancel_event,
    )
    return _frames(events, run)


def _frames(events: Iterator[ProgressEvent], run: RunState) -> Iterator[str]:
    try:
        for event in events:
            run.record(event)
            run.log(event.message)
            yield encode_event(event)
    finally:
        if not run.events or not run.events[-1].is_terminal:
            run.cancel()
        close = getattr(events, "close", None)
        if close is not None:
            close()
