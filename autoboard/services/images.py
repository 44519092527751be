from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import requests
from openai import OpenAI

from autoboard.config import ModelConfig
from autoboard.errors import SynthesisError, TransportError
from autoboard.services import chat_completion, message_text
from autoboard.services.storage import compress_to_jpeg_data_url, data_url_to_payload, payload_to_data_url
from autoboard.types import ImagePayload


IMAGE_SYSTEM_PROMPT = "Generate a single cinematic storyboard still that matches the description."

EDIT_SYSTEM_PROMPT = (
    "Edit the provided image according to the instruction. Keep the composition, characters and style "
    "of the image unless the instruction asks to change them. Return the edited image."
)

REFERENCE_GUIDANCE = (
    "The first image is the base image to edit. The second image is a reference only: take from it just the "
    "attributes the instruction names (for example a face, a likeness, an outfit or a prop). Do not copy its "
    "composition, framing, background or lighting, and do not replace the base image with it."
)

ANNOTATION_PROMPT = (
    "The image carries hand-drawn annotations (strokes, arrows, circled areas and written notes) marking "
    "changes to make. Apply the changes the annotations describe, then remove every annotation mark so the "
    "result is a clean image. Leave unmarked areas unchanged."
)

UPSCALE_PROMPT = (
    "Re-render this exact image at higher resolution. Keep the composition, content, colors and style "
    "identical; only increase detail and sharpness."
)

IMAGE_MODALITIES = {"modalities": ["image", "text"]}


def _image_extra_body(resolution: Optional[str]) -> Dict[str, Any]:
    body: Dict[str, Any] = dict(IMAGE_MODALITIES)
    if resolution:
        body["image_config"] = {"image_size": resolution}
    return body


def build_image_messages(prompt: str, images: Optional[List[ImagePayload]] = None, system: str = IMAGE_SYSTEM_PROMPT) -> List[dict]:
    content: List[dict] = [{"type": "text", "text": f"{system}\n\nInstruction: {prompt}"}]
    for image in images or []:
        content.append({"type": "image_url", "image_url": {"url": payload_to_data_url(image)}})
    return [{"role": "user", "content": content}]


def build_reference_instruction(instruction: str) -> str:
    return f"{instruction}\n\n{REFERENCE_GUIDANCE}"


def _fetch_remote_image(url: str) -> ImagePayload:
    try:
        resp = requests.get(url, timeout=30)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise TransportError(f"Images: cannot download generated image: {e}") from e
    mime = (resp.headers.get("content-type") or "").split(";")[0].strip().lower()
    if not mime.startswith("image/"):
        raise SynthesisError("Provider image URL did not return an image", {"content_type": mime or None})
    return ImagePayload(data=resp.content, mime_type=mime)


def _embedded_data_url(text: str) -> Optional[str]:
    s = text.find("data:image/")
    if s == -1:
        return None
    e = len(text)
    for sep in ["\n", " ", ")", "]", '"', "'"]:
        ix = text.find(sep, s)
        if ix != -1:
            e = min(e, ix)
    return text[s:e]


def _find_image_url(obj: Any) -> Optional[str]:
    """Find an image in an ``images`` array or a content list.

    Remote URLs count only inside ``image_url`` items; bare strings count only
    when they hold a ``data:image/`` URL.
    """
    if isinstance(obj, str):
        return _embedded_data_url(obj)
    if isinstance(obj, dict):
        if obj.get("type") == "image_url" or "image_url" in obj:
            image_url = obj.get("image_url")
            url = image_url.get("url") if isinstance(image_url, dict) else image_url
            if isinstance(url, str):
                if url.startswith("http://") or url.startswith("https://"):
                    return url
                return _embedded_data_url(url)
        inline = obj.get("inline_data") or obj.get("inlineData")
        if isinstance(inline, dict) and inline.get("data"):
            mime = inline.get("mime_type") or inline.get("mimeType") or "image/png"
            return f"data:{mime};base64,{inline['data']}"
        if obj.get("type") == "text":
            return _embedded_data_url(obj.get("text") or "")
        return None
    if isinstance(obj, list):
        for it in obj:
            found = _find_image_url(it)
            if found:
                return found
    return None


def extract_image_from_response(resp: Dict[str, Any]) -> Optional[ImagePayload]:
    """Pull the first image out of a chat-completions response.

    Only the ``images`` array (OpenRouter extension) and the message content
    are searched. Links elsewhere in the message (citations, annotations) are
    never treated as images.
    """
    choices = resp.get("choices") or []
    if not choices:
        return None
    msg = choices[0].get("message") or {}
    url = _find_image_url(msg.get("images"))
    if not url:
        url = _find_image_url(msg.get("content"))
    if not url:
        return None
    if url.startswith("http://") or url.startswith("https://"):
        return _fetch_remote_image(url)
    try:
        payload = data_url_to_payload(url)
    except ValueError:
        return None
    text = message_text(resp) or None
    return ImagePayload(data=payload.data, mime_type=payload.mime_type, text=text)


def _synthesize(
    cfg: ModelConfig,
    messages: List[dict],
    *,
    client: Optional[OpenAI],
    resolution: Optional[str],
    on_log: Optional[Callable[[str], None]],
) -> ImagePayload:
    cfg.require_key("Images")
    resp = chat_completion(
        cfg,
        messages,
        client=client,
        extra_body=_image_extra_body(resolution),
        on_log=on_log,
        label="Images",
    )
    image = extract_image_from_response(resp)
    if image is None:
        # Safety blocks and refusals come back as text only
        reason = (message_text(resp) or "").strip()
        choices = resp.get("choices") or [{}]
        finish = choices[0].get("finish_reason") if choices else None
        raise SynthesisError(
            "No image returned by provider",
            {"finish_reason": finish, "text": reason[:300]} if (finish or reason) else None,
        )
    if on_log:
        on_log(f"Images: received {image.mime_type} ({len(image.data)} bytes)")
    return image


def generate_image(
    prompt: str,
    cfg: ModelConfig,
    *,
    client: Optional[OpenAI] = None,
    resolution: Optional[str] = None,
    on_log: Optional[Callable[[str], None]] = None,
) -> ImagePayload:
    return _synthesize(cfg, build_image_messages(prompt), client=client, resolution=resolution, on_log=on_log)


def edit_image(
    instruction: str,
    base: ImagePayload,
    cfg: ModelConfig,
    *,
    reference: Optional[ImagePayload] = None,
    client: Optional[OpenAI] = None,
    resolution: Optional[str] = None,
    on_log: Optional[Callable[[str], None]] = None,
) -> ImagePayload:
    images = [base]
    if reference is not None:
        instruction = build_reference_instruction(instruction)
        # Reference only contributes attributes; a downsized JPEG is enough
        images.append(data_url_to_payload(compress_to_jpeg_data_url(reference)))
    messages = build_image_messages(instruction, images, system=EDIT_SYSTEM_PROMPT)
    return _synthesize(cfg, messages, client=client, resolution=resolution, on_log=on_log)


def annotation_edit_image(
    annotated: ImagePayload,
    cfg: ModelConfig,
    *,
    note: str = "",
    resolution: Optional[str] = None,
    client: Optional[OpenAI] = None,
    on_log: Optional[Callable[[str], None]] = None,
) -> ImagePayload:
    prompt = ANNOTATION_PROMPT
    if note.strip():
        prompt = f"{prompt}\n\nAdditional notes: {note.strip()}"
    messages = build_image_messages(prompt, [annotated], system=EDIT_SYSTEM_PROMPT)
    return _synthesize(cfg, messages, client=client, resolution=resolution, on_log=on_log)


def upscale_image(
    image: ImagePayload,
    cfg: ModelConfig,
    *,
    resolution: str = "4K",
    client: Optional[OpenAI] = None,
    on_log: Optional[Callable[[str], None]] = None,
) -> ImagePayload:
    messages = build_image_messages(UPSCALE_PROMPT, [image], system=EDIT_SYSTEM_PROMPT)
    return _synthesize(cfg, messages, client=client, resolution=resolution, on_log=on_log)
