from __future__ import annotations

from threading import Event
from typing import Callable, Iterator, List, Optional

from autoboard.config import AppConfig, ModelConfig, clamp_loops, load_config
from autoboard.db import Image
from autoboard.errors import NotFoundError, ValidationError
from autoboard.refine import refine_shot
from autoboard.services.images import annotation_edit_image, edit_image, generate_image, upscale_image
from autoboard.services.parser import parse_shot_description
from autoboard.services.storage import composite_annotation, image_size
from autoboard.store import VersionStore, image_payload, shot_spec
from autoboard.types import ImagePayload, ProgressEvent, ShotSpec

UPSCALE_RESOLUTION = "4K"
CANCELLED_MESSAGE = "Cancelled"


def validate_auto_mode(description: str, llm_cfg: ModelConfig, image_cfg: ModelConfig) -> None:
    if not llm_cfg.api_key or not image_cfg.api_key:
        raise ValidationError("API keys not configured")
    if not description or not description.strip():
        raise ValidationError("Description is required")


def parse_scene_to_shots(
    scene_id: str,
    description: str,
    llm_cfg: ModelConfig,
    store: VersionStore,
    on_log: Optional[Callable[[str], None]] = None,
) -> List[ShotSpec]:
    """Parse a description into a new shot batch and make it the scene's context."""
    parsed = parse_shot_description(description, llm_cfg, on_log=on_log)
    if not parsed:
        return []
    store.update_scene_description(scene_id, description)
    return store.insert_shot_batch(scene_id, parsed)


def run_auto_mode(
    scene_id: str,
    description: str,
    llm_cfg: ModelConfig,
    image_cfg: ModelConfig,
    max_iterations: int,
    store: VersionStore,
    *,
    cancel: Optional[Event] = None,
    on_log: Optional[Callable[[str], None]] = None,
) -> Iterator[ProgressEvent]:
    """Validate, then return the event stream of one scene run.

    Validation happens eagerly so bad input is rejected before the stream opens.
    The returned iterator always ends with a scene-level ``done`` or an ``error``
    (``"Cancelled"`` when the cancel event is set) unless it is closed first.
    """
    validate_auto_mode(description, llm_cfg, image_cfg)
    return _auto_mode_events(
        scene_id, description, llm_cfg, image_cfg, max_iterations, store, cancel or Event(), on_log
    )


def _auto_mode_events(
    scene_id: str,
    description: str,
    llm_cfg: ModelConfig,
    image_cfg: ModelConfig,
    max_iterations: int,
    store: VersionStore,
    cancel: Event,
    on_log: Optional[Callable[[str], None]],
) -> Iterator[ProgressEvent]:
    log = on_log or (lambda _msg: None)
    try:
        scene = store.get_scene(scene_id)
        if scene is None:
            log(f"Auto mode: scene {scene_id} not found")
            yield ProgressEvent(type="error", message="Scene not found")
            return

        yield ProgressEvent(type="parse", message="Parsing scene description...")
        shots = parse_scene_to_shots(scene_id, description, llm_cfg, store, on_log=on_log)
        if not shots:
            yield ProgressEvent(type="error", message="No shots parsed")
            return
        yield ProgressEvent(type="parse", message=f"Parsed {len(shots)} shots")

        for index, shot in enumerate(shots, 1):
            if cancel.is_set():
                log(f"Auto mode cancelled before shot {index}/{len(shots)}")
                yield ProgressEvent(type="error", message=CANCELLED_MESSAGE)
                return
            log(f"Auto mode: shot {index}/{len(shots)} '{shot.shot_name}'")
            yield from refine_shot(
                shot, description, max_iterations, image_cfg, store, cancel=cancel, on_log=on_log
            )

        if cancel.is_set():
            log("Auto mode cancelled")
            yield ProgressEvent(type="error", message=CANCELLED_MESSAGE)
            return
        yield ProgressEvent(type="done", message="All shots processed")
    except GeneratorExit:
        cancel.set()
        raise
    except Exception as e:  # noqa: BLE001
        log(f"Auto mode failed: {e}")
        message = getattr(e, "message", None) or str(e) or e.__class__.__name__
        yield ProgressEvent(type="error", message=message)


class Pipeline:
    """Application-facing wrapper over the services and the version store.

    Responsibilities:
    - Own the model configs and the store
    - Run auto mode and the manual single-shot operations
    - Centralize logging through an injected callback
    """

    def __init__(
        self,
        cfg: Optional[AppConfig] = None,
        store: Optional[VersionStore] = None,
        on_log: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.on_log: Callable[[str], None] = on_log or (lambda _msg: None)
        self.cfg: AppConfig = cfg or load_config()
        self.on_log(f"Loaded configuration: llm_model={self.cfg.llm.model}, image_model={self.cfg.image.model}")
        self.store: VersionStore = store or VersionStore.from_url(self.cfg.database_url)
        if not self.cfg.llm.api_key or not self.cfg.image.api_key:
            self.on_log("API keys missing; model calls will be rejected")

    def set_logger(self, on_log: Optional[Callable[[str], None]]) -> None:
        self.on_log = on_log or (lambda _msg: None)

    def reload_config(self, cfg: AppConfig) -> None:
        self.cfg = cfg
        self.on_log(f"New configuration: llm_model={self.cfg.llm.model}, image_model={self.cfg.image.model}")

    # ---------- Auto mode ----------
    def run_auto_mode(
        self,
        scene_id: str,
        description: str,
        *,
        max_loops: Optional[object] = None,
        llm_cfg: Optional[ModelConfig] = None,
        image_cfg: Optional[ModelConfig] = None,
        cancel: Optional[Event] = None,
    ) -> Iterator[ProgressEvent]:
        return run_auto_mode(
            scene_id,
            description,
            llm_cfg or self.cfg.llm,
            image_cfg or self.cfg.image,
            clamp_loops(max_loops, self.cfg),
            self.store,
            cancel=cancel,
            on_log=self.on_log,
        )

    def parse_scene(self, scene_id: str, description: str) -> List[ShotSpec]:
        if not description or not description.strip():
            raise ValidationError("Description is required")
        if self.store.get_scene(scene_id) is None:
            raise NotFoundError("Scene not found", {"scene_id": scene_id})
        return parse_scene_to_shots(scene_id, description, self.cfg.llm, self.store, on_log=self.on_log)

    # ---------- Manual single-shot operations ----------
    def _require_shot(self, shot_id: str) -> ShotSpec:
        shot = self.store.get_shot(shot_id)
        if shot is None:
            raise NotFoundError("Shot not found", {"shot_id": shot_id})
        return shot_spec(shot)

    def _require_active(self, shot_id: str, action: str) -> Image:
        active = self.store.get_active_version(shot_id)
        if active is None:
            raise NotFoundError(f"No active image to {action}", {"shot_id": shot_id})
        return active

    def generate_shot(self, shot_id: str, prompt: Optional[str] = None, resolution: str = "1K") -> Image:
        shot = self._require_shot(shot_id)
        prompt = (prompt or shot.generation_prompt).strip()
        if not prompt:
            raise ValidationError("Prompt is required")
        image = generate_image(prompt, self.cfg.image, resolution=resolution, on_log=self.on_log)
        return self.store.insert_version(shot_id, image, prompt, resolution=resolution)

    def edit_shot(self, shot_id: str, instruction: str, reference: Optional[ImagePayload] = None) -> Image:
        if not instruction or not instruction.strip():
            raise ValidationError("Edit instruction is required")
        self._require_shot(shot_id)
        active = self._require_active(shot_id, "edit")
        image = edit_image(
            instruction, image_payload(active), self.cfg.image, reference=reference, on_log=self.on_log
        )
        return self.store.insert_version(
            shot_id,
            image,
            instruction,
            edit_instruction=instruction,
            reference_image_path="uploaded" if reference is not None else None,
            resolution=active.resolution,
        )

    def annotate_shot(self, shot_id: str, annotated: ImagePayload, note: str = "", overlay: bool = False) -> Image:
        """Apply annotation marks to the active image.

        ``annotated`` is either the flattened annotated image or, with
        ``overlay=True``, a transparent layer holding only the marks.
        """
        self._require_shot(shot_id)
        active = self._require_active(shot_id, "annotate")
        if overlay:
            annotated = composite_annotation(image_payload(active), annotated)
        image = annotation_edit_image(annotated, self.cfg.image, note=note, on_log=self.on_log)
        return self.store.insert_version(
            shot_id,
            image,
            active.prompt,
            edit_instruction=note.strip() or "Annotation edit",
            resolution=active.resolution,
        )

    def upscale_shot(self, shot_id: str) -> Image:
        self._require_shot(shot_id)
        active = self._require_active(shot_id, "upscale")
        if active.resolution == UPSCALE_RESOLUTION:
            raise ValidationError("Image is already 4K")
        source = image_payload(active)
        width, height = image_size(source)
        self.on_log(f"Upscaling shot {shot_id} from {width}x{height} to {UPSCALE_RESOLUTION}…")
        image = upscale_image(source, self.cfg.image, resolution=UPSCALE_RESOLUTION, on_log=self.on_log)
        return self.store.insert_version(
            shot_id,
            image,
            active.prompt,
            edit_instruction=f"Upscale to {UPSCALE_RESOLUTION}",
            resolution=UPSCALE_RESOLUTION,
        )

    def activate(self, image_id: str) -> Image:
        return self.store.activate_version(image_id)
