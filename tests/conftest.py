from __future__ import annotations

import io
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Union

import pytest
from PIL import Image as PILImage

from autoboard.config import AppConfig, ModelConfig
from autoboard.services.storage import bytes_to_data_url
from autoboard.store import VersionStore
from autoboard.types import ImagePayload


def make_png(color=(200, 40, 40), size=(32, 24)) -> bytes:
    buffer = io.BytesIO()
    PILImage.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def chat_response(content: Any = "", images: Optional[List[bytes]] = None, finish_reason: str = "stop") -> Dict[str, Any]:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if images:
        message["images"] = [
            {"type": "image_url", "image_url": {"url": bytes_to_data_url(data)}} for data in images
        ]
    return {"choices": [{"index": 0, "message": message, "finish_reason": finish_reason}]}


class FakeCompletions:
    def __init__(self, responses: List[Union[Dict[str, Any], Exception]]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(kwargs)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeClient:
    def __init__(self, *responses: Union[Dict[str, Any], Exception]) -> None:
        self.completions = FakeCompletions(list(responses))
        self.chat = SimpleNamespace(completions=self.completions)

    @property
    def calls(self) -> List[Dict[str, Any]]:
        return self.completions.calls


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def png_image(png_bytes: bytes) -> ImagePayload:
    return ImagePayload(data=png_bytes, mime_type="image/png")


@pytest.fixture
def model_cfg() -> ModelConfig:
    return ModelConfig(api_key="test-key", base_url="http://models.invalid/v1", model="test/model", timeout_sec=5)


@pytest.fixture
def app_cfg(model_cfg: ModelConfig) -> AppConfig:
    return AppConfig(llm=model_cfg, image=model_cfg, database_url="sqlite://")


@pytest.fixture
def store() -> VersionStore:
    return VersionStore.from_url("sqlite://")


@pytest.fixture
def scene(store: VersionStore):
    project = store.create_project("Rain study")
    return store.create_scene(project.id, "Opening")
