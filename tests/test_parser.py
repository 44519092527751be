from __future__ import annotations

import httpx
import openai
import pytest

from conftest import FakeClient, chat_response

from autoboard.config import ModelConfig
from autoboard.errors import ConfigurationError, ParseError, TransportError, UpstreamError, ValidationError
from autoboard.services.parser import parse_shot_description, parse_shot_output, strip_code_fences

SHOTS_JSON = (
    '[{"shotName": "Wide", "description": "A girl runs through the rain.", "nanoPrompt": "wide shot, girl running, rain"},'
    ' {"shotName": "Close", "description": "Her face, soaked.", "nanoPrompt": "close-up, wet face, rain"}]'
)


def test_strip_code_fences():
    assert strip_code_fences("```json\n[1, 2]\n```") == "[1, 2]"
    assert strip_code_fences("```\n{}\n```") == "{}"
    assert strip_code_fences("  [3]  ") == "[3]"


def test_parse_shot_output_keeps_model_order():
    shots = parse_shot_output(f"```json\n{SHOTS_JSON}\n```")
    assert [s.shot_name for s in shots] == ["Wide", "Close"]
    assert shots[0].nano_prompt == "wide shot, girl running, rain"


def test_parse_shot_output_accepts_wrapped_object():
    shots = parse_shot_output('{"shots": ' + SHOTS_JSON + "}")
    assert len(shots) == 2


def test_parse_shot_output_empty_array():
    assert parse_shot_output("[]") == []


@pytest.mark.parametrize(
    "text",
    [
        "Sure! Here are your shots.",
        '{"shot": "one"}',
        '[{"shotName": "A", "description": "B"}]',
        "",
    ],
)
def test_parse_shot_output_rejects_unusable_text(text):
    with pytest.raises(ParseError):
        parse_shot_output(text)


def test_parse_shot_description_calls_model(model_cfg):
    client = FakeClient(chat_response(SHOTS_JSON))
    logs = []
    shots = parse_shot_description("A girl runs in the rain", model_cfg, client=client, on_log=logs.append)
    assert len(shots) == 2
    call = client.calls[0]
    assert call["model"] == "test/model"
    assert call["messages"][0]["role"] == "system"
    assert call["messages"][1]["content"] == "A girl runs in the rain"
    assert any("2 shots" in line for line in logs)


def test_parse_shot_description_rejects_blank(model_cfg):
    client = FakeClient()
    with pytest.raises(ValidationError):
        parse_shot_description("   ", model_cfg, client=client)
    assert client.calls == []


def test_parse_shot_description_requires_key():
    cfg = ModelConfig(api_key="", base_url="http://models.invalid/v1", model="m")
    with pytest.raises(ConfigurationError):
        parse_shot_description("A scene", cfg, client=FakeClient())


def test_parse_shot_description_maps_transport_failure(model_cfg):
    request = httpx.Request("POST", "http://models.invalid/v1/chat/completions")
    client = FakeClient(openai.APIConnectionError(request=request))
    with pytest.raises(TransportError):
        parse_shot_description("A scene", model_cfg, client=client)


def test_parse_shot_description_maps_status_failure(model_cfg):
    request = httpx.Request("POST", "http://models.invalid/v1/chat/completions")
    response = httpx.Response(502, request=request, text="bad gateway " * 100)
    client = FakeClient(openai.APIStatusError("bad gateway", response=response, body=None))
    with pytest.raises(UpstreamError) as info:
        parse_shot_description("A scene", model_cfg, client=client)
    assert info.value.status_code == 502
    assert len(info.value.body) <= 500


def test_transport_retries_are_opt_in(model_cfg, monkeypatch):
    monkeypatch.setattr("autoboard.services.time.sleep", lambda _s: None)
    request = httpx.Request("POST", "http://models.invalid/v1/chat/completions")
    cfg = ModelConfig(api_key="k", base_url=model_cfg.base_url, model="m", retries=1)
    client = FakeClient(openai.APIConnectionError(request=request), chat_response(SHOTS_JSON))
    assert len(parse_shot_description("A scene", cfg, client=client)) == 2
    assert len(client.calls) == 2


@pytest.mark.parametrize(
    "item",
    [
        '{"shotName": "Wide", "nanoPrompt": "wide shot, rain"}',
        '{"shotName": "Wide", "description": "  ", "nanoPrompt": "wide shot, rain"}',
        '{"shotName": "Wide", "description": null, "nanoPrompt": "wide shot, rain"}',
    ],
)
def test_parse_shot_output_description_is_optional(item):
    shots = parse_shot_output(f"[{item}]")
    assert len(shots) == 1
    assert shots[0].shot_name == "Wide"
    assert shots[0].nano_prompt == "wide shot, rain"
    assert shots[0].description == ""


def test_parse_shot_description_maps_invalid_response(model_cfg):
    request = httpx.Request("POST", "http://models.invalid/v1/chat/completions")
    response = httpx.Response(200, request=request)
    client = FakeClient(openai.APIResponseValidationError(response=response, body=None))
    with pytest.raises(UpstreamError) as info:
        parse_shot_description("A scene", model_cfg, client=client)
    assert info.value.status_code == 200
