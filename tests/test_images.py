from __future__ import annotations

import base64

import pytest

from conftest import FakeClient, chat_response, make_png

from autoboard.config import ModelConfig
from autoboard.errors import ConfigurationError, SynthesisError
from autoboard.services.images import (
    REFERENCE_GUIDANCE,
    annotation_edit_image,
    edit_image,
    extract_image_from_response,
    generate_image,
    upscale_image,
)
from autoboard.types import ImagePayload


def test_generate_image_returns_bytes_and_mime(model_cfg, png_bytes):
    client = FakeClient(chat_response("here you go", images=[png_bytes]))
    image = generate_image("wide shot, rain", model_cfg, client=client)
    assert image.data == png_bytes
    assert image.mime_type == "image/png"
    assert image.text == "here you go"
    call = client.calls[0]
    assert call["extra_body"]["modalities"] == ["image", "text"]
    assert "wide shot, rain" in call["messages"][0]["content"][0]["text"]


def test_generate_image_passes_resolution(model_cfg, png_bytes):
    client = FakeClient(chat_response("", images=[png_bytes]))
    generate_image("p", model_cfg, client=client, resolution="2K")
    assert client.calls[0]["extra_body"]["image_config"] == {"image_size": "2K"}


def test_text_only_response_is_synthesis_error(model_cfg):
    client = FakeClient(chat_response("I can't draw that.", finish_reason="content_filter"))
    with pytest.raises(SynthesisError) as info:
        generate_image("p", model_cfg, client=client)
    assert info.value.details["finish_reason"] == "content_filter"


def test_missing_key_is_configuration_error():
    cfg = ModelConfig(api_key="", base_url="http://models.invalid/v1", model="m")
    client = FakeClient()
    with pytest.raises(ConfigurationError):
        generate_image("p", cfg, client=client)
    assert client.calls == []


def test_extract_image_from_content_parts(png_bytes):
    b64 = base64.b64encode(png_bytes).decode("ascii")
    resp = chat_response([
        {"type": "text", "text": "done"},
        {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{b64}"}},
    ])
    image = extract_image_from_response(resp)
    assert image is not None
    assert image.mime_type == "image/jpeg"
    assert image.data == png_bytes


def test_extract_image_ignores_plain_text():
    assert extract_image_from_response(chat_response("just words")) is None
    assert extract_image_from_response({"choices": []}) is None


def test_edit_image_sends_base_image(model_cfg, png_image, png_bytes):
    client = FakeClient(chat_response("", images=[png_bytes]))
    edit_image("make it night", png_image, model_cfg, client=client)
    content = client.calls[0]["messages"][0]["content"]
    assert len(content) == 2
    assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert REFERENCE_GUIDANCE not in content[0]["text"]


def test_edit_image_with_reference_adds_guidance(model_cfg, png_image, png_bytes):
    reference = ImagePayload(data=make_png(color=(10, 10, 200), size=(2048, 1024)))
    client = FakeClient(chat_response("", images=[png_bytes]))
    edit_image("use her face", png_image, model_cfg, reference=reference, client=client)
    content = client.calls[0]["messages"][0]["content"]
    assert len(content) == 3
    assert "use her face" in content[0]["text"]
    assert REFERENCE_GUIDANCE in content[0]["text"]
    assert content[2]["image_url"]["url"].startswith("data:image/jpeg;base64,")


def test_annotation_edit_includes_note(model_cfg, png_image, png_bytes):
    client = FakeClient(chat_response("", images=[png_bytes]))
    annotation_edit_image(png_image, model_cfg, note="remove the umbrella", client=client)
    assert "remove the umbrella" in client.calls[0]["messages"][0]["content"][0]["text"]


def test_upscale_requests_4k(model_cfg, png_image, png_bytes):
    client = FakeClient(chat_response("", images=[png_bytes]))
    upscale_image(png_image, model_cfg, client=client)
    assert client.calls[0]["extra_body"]["image_config"] == {"image_size": "4K"}


class _Download:
    def __init__(self, content, content_type):
        self.content = content
        self.headers = {"content-type": content_type}

    def raise_for_status(self):
        pass


def test_citation_links_are_not_images(model_cfg, monkeypatch):
    def no_download(*args, **kwargs):
        raise AssertionError("citation URL must not be downloaded")

    monkeypatch.setattr("autoboard.services.images.requests.get", no_download)
    resp = chat_response("Sorry, I can't create that image.")
    resp["choices"][0]["message"]["annotations"] = [
        {"type": "url_citation", "url_citation": {"url": "https://example.com/policy"}}
    ]
    assert extract_image_from_response(resp) is None
    with pytest.raises(SynthesisError):
        generate_image("p", model_cfg, client=FakeClient(resp))


def test_remote_image_url_is_downloaded(png_bytes, monkeypatch):
    monkeypatch.setattr(
        "autoboard.services.images.requests.get",
        lambda url, timeout: _Download(png_bytes, "image/png; charset=binary"),
    )
    resp = chat_response([{"type": "image_url", "image_url": {"url": "https://cdn.example.com/out.png"}}])
    image = extract_image_from_response(resp)
    assert image.data == png_bytes
    assert image.mime_type == "image/png"


def test_remote_url_returning_html_is_synthesis_error(model_cfg, monkeypatch):
    monkeypatch.setattr(
        "autoboard.services.images.requests.get",
        lambda url, timeout: _Download(b"<html>login</html>", "text/html"),
    )
    resp = chat_response([{"type": "image_url", "image_url": {"url": "https://cdn.example.com/out.png"}}])
    with pytest.raises(SynthesisError):
        generate_image("p", model_cfg, client=FakeClient(resp))
