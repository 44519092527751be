from __future__ import annotations

import json
import re
from typing import Callable, List, Optional

from openai import OpenAI

from autoboard.config import ModelConfig
from autoboard.errors import ParseError, ValidationError
from autoboard.services import chat_completion, message_text
from autoboard.types import ParsedShot

SHOT_PARSER_SYSTEM_PROMPT = (
    "You are a professional storyboard artist and an expert at writing prompts for image generation models. "
    "Break the user's scene description down into a list of shots ordered by time or narrative logic.\n\n"
    "Guidelines:\n"
    "- Each shot is one distinct still frame: a camera setup, framing/scale (CU/MCU/MS/WS), subject and action.\n"
    "- 'description' restates the on-screen action of the shot in one or two plain sentences.\n"
    "- 'nanoPrompt' is an English prompt optimized for an image generation model: subject, action, setting, "
    "framing, lighting and mood in a single paragraph.\n"
    "- Keep characters, wardrobe and setting consistent across shots.\n\n"
    "Respond with a JSON array only, no additional text. Each element is an object with the keys "
    "'shotName' (short title), 'description' and 'nanoPrompt'."
)

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?|\n?\s*```", re.IGNORECASE)


def build_parser_messages(description: str) -> List[dict]:
    return [
        {"role": "system", "content": SHOT_PARSER_SYSTEM_PROMPT},
        {"role": "user", "content": description},
    ]


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def parse_shot_output(text: str) -> List[ParsedShot]:
    """
    Read the model's shot list. Order is kept exactly as emitted; it becomes
    the shot sort order.

    Accepts a bare JSON array or an object wrapping it under ``shots``.
    Raises ParseError when the text is not JSON or an element lacks a field.
    """
    cleaned = strip_code_fences(text)
    if not cleaned:
        raise ParseError("Shot parser returned an empty completion")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ParseError(f"Shot parser returned malformed JSON: {e}", {"text": cleaned[:200]}) from e

    if isinstance(data, dict) and isinstance(data.get("shots"), list):
        data = data["shots"]
    if not isinstance(data, list):
        raise ParseError("Shot parser did not return a JSON array", {"text": cleaned[:200]})

    shots: List[ParsedShot] = []
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ParseError(f"Shot {index + 1} is not an object")
        name = item.get("shotName", item.get("shot_name"))
        desc = item.get("description")
        prompt = item.get("nanoPrompt", item.get("nano_prompt", item.get("prompt")))
        if not all(isinstance(v, str) and v.strip() for v in (name, prompt)):
            raise ParseError(f"Shot {index + 1} is missing shotName or nanoPrompt")
        desc = desc.strip() if isinstance(desc, str) else ""
        shots.append(ParsedShot(shot_name=name.strip(), description=desc, nano_prompt=prompt.strip()))
    return shots


def parse_shot_description(
    description: str,
    cfg: ModelConfig,
    *,
    client: Optional[OpenAI] = None,
    on_log: Optional[Callable[[str], None]] = None,
) -> List[ParsedShot]:
    if not description or not description.strip():
        raise ValidationError("Description is required")
    cfg.require_key("Shot parser")
    resp = chat_completion(
        cfg,
        build_parser_messages(description),
        client=client,
        temperature=0.7,
        on_log=on_log,
        label="Shot parser",
    )
    text = message_text(resp)
    if on_log:
        on_log(f"Shot parser: received {len(text)} characters")
    shots = parse_shot_output(text)
    if on_log:
        on_log(f"Shot parser: {len(shots)} shots")
    return shots
