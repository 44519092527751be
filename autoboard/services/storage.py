import base64
import io
import re
from typing import Tuple

from PIL import Image

from autoboard.types import ImagePayload


_DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)


def bytes_to_data_url(data: bytes, mime: str = "image/png") -> str:
    b64 = base64.b64encode(data).decode("ascii")
    return f"data:{mime};base64,{b64}"


def payload_to_data_url(image: ImagePayload) -> str:
    return bytes_to_data_url(image.data, mime=image.mime_type)


def data_url_to_bytes_and_mime(data_url: str) -> Tuple[bytes, str]:
    """
    Convert a data URL (data:<mime>;base64,...) to raw bytes and mime type.
    """
    if not isinstance(data_url, str) or "," not in data_url:
        raise ValueError("Invalid data URL")
    m = _DATA_URL_RE.match(data_url.strip())
    if not m:
        raise ValueError("Invalid data URL")
    return base64.b64decode(m.group(2)), m.group(1)


def data_url_to_payload(data_url: str) -> ImagePayload:
    data, mime = data_url_to_bytes_and_mime(data_url)
    return ImagePayload(data=data, mime_type=mime)


def compress_to_jpeg_data_url(image: ImagePayload, *, max_width: int = 1024, quality: int = 85) -> str:
    """
    Convert an image to a reasonably sized JPEG data URL for vision prompts.

    - Ensures RGB colorspace
    - Resizes to max_width while preserving aspect ratio
    - Uses JPEG quality and optimization for smaller payloads
    """
    img = Image.open(io.BytesIO(image.data))
    if img.mode in ("RGBA", "P", "LA"):
        img = img.convert("RGB")
    if img.width > max_width:
        new_height = int(img.height * (max_width / img.width))
        img = img.resize((max_width, new_height), Image.LANCZOS)
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality, optimize=True)
    return bytes_to_data_url(buffer.getvalue(), mime="image/jpeg")


def composite_annotation(base: ImagePayload, overlay: ImagePayload) -> ImagePayload:
    """Flatten a transparent annotation layer onto its base image (PNG out)."""
    base_img = Image.open(io.BytesIO(base.data)).convert("RGBA")
    mark_img = Image.open(io.BytesIO(overlay.data)).convert("RGBA")
    if mark_img.size != base_img.size:
        mark_img = mark_img.resize(base_img.size, Image.LANCZOS)
    merged = Image.alpha_composite(base_img, mark_img)
    buffer = io.BytesIO()
    merged.save(buffer, format="PNG")
    return ImagePayload(data=buffer.getvalue(), mime_type="image/png")


def image_size(image: ImagePayload) -> Tuple[int, int]:
    with Image.open(io.BytesIO(image.data)) as img:
        return img.width, img.height
