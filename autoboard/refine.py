"""Per-shot generate / critique / regenerate loop.

The loop is a generator of ``ProgressEvent``. It is strictly sequential: an
iteration starts only after the previous image is persisted and critiqued.
Synthesis failures propagate to the caller; a failed critique ends the loop
for this shot and keeps the current image.
"""

from __future__ import annotations

from threading import Event
from typing import Callable, Iterator, Optional

from autoboard.config import ModelConfig
from autoboard.errors import AnalysisError
from autoboard.services.critique import analyze_image
from autoboard.services.images import edit_image, generate_image
from autoboard.state import RefinementState
from autoboard.store import VersionStore
from autoboard.types import CritiqueResult, ProgressEvent, ShotSpec

ANALYSIS_FAILED_SUMMARY = "Analysis failed, accepting current result"


def analysis_failed_critique() -> CritiqueResult:
    return CritiqueResult(has_issues=False, issues=[], suggestions=[], summary=ANALYSIS_FAILED_SUMMARY)


def build_edit_instruction(prompt: str, critique: Optional[CritiqueResult]) -> str:
    """Append the previous critique's issues and suggestions, numbered, to the shot prompt."""
    if critique is None or not (critique.issues or critique.suggestions):
        return prompt
    parts = [prompt]
    if critique.issues:
        numbered = "\n".join(f"{i}. {issue}" for i, issue in enumerate(critique.issues, 1))
        parts.append(f"Please fix these issues:\n{numbered}")
    if critique.suggestions:
        numbered = "\n".join(f"{i}. {s}" for i, s in enumerate(critique.suggestions, 1))
        parts.append(f"Suggestions:\n{numbered}")
    return "\n\n".join(parts)


def refine_shot(
    shot: ShotSpec,
    scene_context: str,
    max_iterations: int,
    cfg: ModelConfig,
    store: VersionStore,
    *,
    cancel: Optional[Event] = None,
    on_log: Optional[Callable[[str], None]] = None,
) -> Iterator[ProgressEvent]:
    if max_iterations < 1:
        raise ValueError("max_iterations must be positive")
    log = on_log or (lambda _msg: None)
    state = RefinementState(shot_id=shot.id)
    total = max_iterations

    def event(kind: str, message: str, analysis: Optional[CritiqueResult] = None) -> ProgressEvent:
        return ProgressEvent(
            type=kind,
            message=message,
            shot_id=shot.id,
            shot_name=shot.shot_name,
            iteration=state.iteration,
            analysis=analysis,
        )

    while state.iteration < max_iterations:
        if cancel is not None and cancel.is_set():
            log(f"Shot '{shot.shot_name}': cancelled after {state.iteration} iterations")
            return
        state.iteration += 1
        yield event("generate", f"Generating image ({state.iteration}/{total})...")

        if state.iteration == 1 or state.last_image is None:
            instruction = None
            image = generate_image(shot.generation_prompt, cfg, on_log=on_log)
        else:
            instruction = build_edit_instruction(shot.generation_prompt, state.last_critique)
            image = edit_image(instruction, state.last_image, cfg, on_log=on_log)
        state.last_image = image

        record = store.insert_version(shot.id, image, shot.generation_prompt, edit_instruction=instruction)
        log(f"Shot '{shot.shot_name}': stored version {record.version}")

        yield event("analyze", f"Analyzing image ({state.iteration}/{total})...")
        try:
            critique = analyze_image(image, shot.description, scene_context, cfg, on_log=on_log)
        except AnalysisError as e:
            log(f"Shot '{shot.shot_name}': {e}")
            critique = analysis_failed_critique()
            store.attach_critique(record.id, critique)
            yield event("done", "Analysis failed, using the current image", critique)
            return
        store.attach_critique(record.id, critique)
        state.last_critique = critique

        if not critique.has_issues:
            yield event("done", "Image looks good", critique)
            return
        if state.iteration < max_iterations:
            yield event("regenerate", f"Found {len(critique.issues)} issues, regenerating...", critique)
            continue
        yield event("done", f"Max iterations reached ({total})", critique)
        return
