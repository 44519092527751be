from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

from openai import OpenAI

from autoboard.config import ModelConfig
from autoboard.errors import AnalysisError, AutoboardError
from autoboard.services import chat_completion, message_text
from autoboard.services.storage import compress_to_jpeg_data_url
from autoboard.types import CritiqueResult, ImagePayload


CRITIQUE_PROMPT = (
    "You are a meticulous storyboard supervisor reviewing one generated frame. Compare the image with the "
    "shot description and the scene context, and check:\n"
    "1. Does the image match the shot description (subjects, action, framing)?\n"
    "2. Are required elements missing, or are there unwanted elements?\n"
    "3. Are composition and lighting appropriate for the shot?\n"
    "4. Are there visual artifacts: malformed hands or faces, garbled text, duplicated limbs, broken perspective?\n\n"
    "Only report issues that matter for the storyboard. Respond with a JSON object only:\n"
    '{"hasIssues": boolean, "issues": [string], "suggestions": [string], "summary": string}'
)

PARSE_FAILURE_ISSUE = "Could not parse the analysis response as JSON"
SUMMARY_PREFIX_LEN = 200


def build_critique_messages(image: ImagePayload, shot_description: str, scene_context: str) -> List[dict]:
    user_text = (
        f"{CRITIQUE_PROMPT}\n\n"
        f"Scene context:\n{scene_context or '(none)'}\n\n"
        f"Shot description:\n{shot_description}"
    )
    content = [
        {"type": "text", "text": user_text},
        {"type": "image_url", "image_url": {"url": compress_to_jpeg_data_url(image)}},
    ]
    return [{"role": "user", "content": content}]


def find_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first balanced ``{...}`` substring of ``text`` that decodes to an object."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            char = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    try:
                        data = json.loads(text[start:i + 1])
                    except json.JSONDecodeError:
                        break
                    if isinstance(data, dict):
                        return data
                    break
        start = text.find("{", start + 1)
    return None


def degraded_critique(raw: str) -> CritiqueResult:
    return CritiqueResult(
        has_issues=True,
        issues=[PARSE_FAILURE_ISSUE],
        suggestions=[],
        summary=raw.strip()[:SUMMARY_PREFIX_LEN],
    )


def parse_critique_output(text: str) -> CritiqueResult:
    """
    Parse the critique text. Unparseable text yields a degraded result that
    reports an issue, so the image gets another look instead of being accepted.
    """
    data = find_json_object(text)
    if data is None:
        return degraded_critique(text)
    critique = CritiqueResult.from_dict(data)
    # A verdict without the flag is judged by its issue list
    if "hasIssues" not in data and "has_issues" not in data:
        critique.has_issues = bool(critique.issues)
    return critique


def analyze_image(
    image: ImagePayload,
    shot_description: str,
    scene_context: str,
    cfg: ModelConfig,
    *,
    client: Optional[OpenAI] = None,
    on_log: Optional[Callable[[str], None]] = None,
) -> CritiqueResult:
    try:
        messages = build_critique_messages(image, shot_description, scene_context)
    except (OSError, ValueError) as e:
        # Pillow cannot decode the frame (UnidentifiedImageError is an OSError)
        raise AnalysisError(f"Image analysis failed: cannot read image: {e}", {"mime_type": image.mime_type}) from e
    try:
        cfg.require_key("Critique")
        resp = chat_completion(
            cfg,
            messages,
            client=client,
            on_log=on_log,
            label="Critique",
        )
    except AutoboardError as e:
        raise AnalysisError(f"Image analysis failed: {e.message}", e.details) from e
    text = message_text(resp).strip()
    if not text:
        raise AnalysisError("Image analysis returned no text")
    if on_log:
        on_log(f"Critique: received {len(text)} characters")
    return parse_critique_output(text)
