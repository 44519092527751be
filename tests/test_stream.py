from __future__ import annotations

import json

import pytest

from conftest import make_png

from autoboard import pipeline as pipeline_module
from autoboard import refine
from autoboard.errors import ValidationError
from autoboard.pipeline import Pipeline
from autoboard.state import RunState
from autoboard.stream import CONTENT_TYPE, STREAM_HEADERS, AutoModeRequest, encode_event, stream_auto_mode
from autoboard.types import CritiqueResult, ImagePayload, ParsedShot, ProgressEvent


def _payload(**overrides):
    payload = {
        "sceneId": "scene-1",
        "description": "A girl runs in the rain",
        "llmApiKey": "llm-key",
        "llmBaseUrl": "http://llm.invalid/v1",
        "llmModel": "llm/model",
        "geminiApiKey": "img-key",
        "geminiBaseUrl": "",
        "geminiModel": "img/model",
        "maxLoops": 3,
    }
    payload.update(overrides)
    return payload


def test_request_builds_model_configs():
    request = AutoModeRequest.from_dict(_payload())
    assert request.llm.api_key == "llm-key"
    assert request.llm.base_url == "http://llm.invalid/v1"
    assert request.image.model == "img/model"
    assert request.image.base_url == "https://openrouter.ai/api/v1"
    assert request.max_loops == 3


@pytest.mark.parametrize(
    "overrides",
    [{"llmApiKey": ""}, {"geminiApiKey": None}, {"description": "  "}, {"sceneId": ""}, {"description": 5}],
)
def test_request_rejects_bad_input(overrides):
    with pytest.raises(ValidationError):
        AutoModeRequest.from_dict(_payload(**overrides))


def test_encode_event_is_one_sse_frame():
    event = ProgressEvent(
        type="regenerate",
        message="Found 1 issues, regenerating...",
        shot_id="s1",
        shot_name="Wide",
        iteration=2,
        analysis=CritiqueResult(True, ["dark"], ["brighten"], "too dark"),
    )
    frame = encode_event(event)
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    body = json.loads(frame[len("data: "):])
    assert body == {
        "type": "regenerate",
        "shotId": "s1",
        "shotName": "Wide",
        "iteration": 2,
        "message": "Found 1 issues, regenerating...",
        "analysis": {"hasIssues": True, "issues": ["dark"], "suggestions": ["brighten"], "summary": "too dark"},
    }
    assert json.loads(encode_event(ProgressEvent(type="done", message="ok"))[6:]) == {"type": "done", "message": "ok"}


def test_stream_headers():
    assert STREAM_HEADERS["Content-Type"] == CONTENT_TYPE == "text/event-stream"


def test_stream_rejects_before_opening(app_cfg, store):
    pipe = Pipeline(app_cfg, store=store)
    with pytest.raises(ValidationError):
        stream_auto_mode(_payload(description=""), pipe)
    with pytest.raises(ValidationError):
        stream_auto_mode(_payload(maxLoops="many"), pipe)


def test_stream_runs_scene_with_request_configs(app_cfg, store, scene, monkeypatch):
    seen = {}

    def parse(description, cfg, **kwargs):
        seen["llm"] = cfg
        return [ParsedShot("Wide", "girl running", "wide shot")]

    def generate(prompt, cfg, **kwargs):
        seen["image"] = cfg
        return ImagePayload(make_png())

    monkeypatch.setattr(pipeline_module, "parse_shot_description", parse)
    monkeypatch.setattr(refine, "generate_image", generate)
    monkeypatch.setattr(refine, "analyze_image", lambda *a, **kw: CritiqueResult(False, [], [], "ok"))

    run = RunState()
    frames = list(stream_auto_mode(_payload(sceneId=scene.id), Pipeline(app_cfg, store=store), run))
    types = [json.loads(f[6:])["type"] for f in frames]
    assert types == ["parse", "parse", "generate", "analyze", "done", "done"]
    assert seen["llm"].api_key == "llm-key"
    assert seen["image"].model == "img/model"
    assert run.events[-1].is_terminal
    assert not run.cancelled
    assert len(run.logs) == len(frames)


def test_disconnect_cancels_run(app_cfg, store, scene, monkeypatch):
    monkeypatch.setattr(
        pipeline_module,
        "parse_shot_description",
        lambda description, cfg, **kw: [ParsedShot("A", "a", "a"), ParsedShot("B", "b", "b")],
    )
    generated = []
    monkeypatch.setattr(refine, "generate_image", lambda prompt, cfg, **kw: generated.append(prompt) or ImagePayload(make_png()))
    monkeypatch.setattr(refine, "analyze_image", lambda *a, **kw: CritiqueResult(False, [], [], "ok"))

    run = RunState()
    frames = stream_auto_mode(_payload(sceneId=scene.id), Pipeline(app_cfg, store=store), run)
    for frame in frames:
        if '"analyze"' in frame:
            break
    frames.close()
    assert run.cancelled
    assert generated == ["a"]
