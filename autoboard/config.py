import os
from dataclasses import dataclass
from typing import Dict, Optional

from openai import OpenAI

from autoboard.errors import ConfigurationError, ValidationError


DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


def _get_env(key: str, default: str = "") -> str:
    return str(os.getenv(key, default))


@dataclass(frozen=True)
class ModelConfig:
    api_key: str
    base_url: str
    model: str
    timeout_sec: int = 120
    # Transport retries are an operator opt-in; model calls are not retried by default
    retries: int = 0

    def require_key(self, what: str) -> None:
        if not self.api_key:
            raise ConfigurationError(f"{what}: API key is not configured", {"model": self.model})


@dataclass(frozen=True)
class AppConfig:
    llm: ModelConfig
    image: ModelConfig
    database_url: str = "sqlite:///autoboard.db"
    default_max_loops: int = 5
    min_loops: int = 1
    max_loops: int = 10


def load_config() -> AppConfig:
    # Accept the generic provider names as fallbacks for the AUTOBOARD_* ones
    llm_key = _get_env("AUTOBOARD_LLM_API_KEY") or _get_env("OPENROUTER_API_KEY", "")
    image_key = (
        _get_env("AUTOBOARD_IMAGE_API_KEY")
        or _get_env("GEMINI_API_KEY")
        or _get_env("OPENROUTER_API_KEY", "")
    )
    timeout_sec = int(_get_env("AUTOBOARD_REQUEST_TIMEOUT_SEC", "120"))
    retries = int(_get_env("AUTOBOARD_TRANSPORT_RETRIES", "0"))

    return AppConfig(
        llm=ModelConfig(
            api_key=llm_key,
            base_url=_get_env("AUTOBOARD_LLM_BASE_URL", DEFAULT_BASE_URL),
            model=_get_env("AUTOBOARD_LLM_MODEL", "openai/gpt-4o-mini"),
            timeout_sec=timeout_sec,
            retries=retries,
        ),
        image=ModelConfig(
            api_key=image_key,
            base_url=_get_env("AUTOBOARD_IMAGE_BASE_URL", DEFAULT_BASE_URL),
            model=_get_env("AUTOBOARD_IMAGE_MODEL", "google/gemini-2.5-flash-image-preview"),
            timeout_sec=timeout_sec,
            retries=retries,
        ),
        database_url=_get_env("AUTOBOARD_DATABASE_URL", "sqlite:///autoboard.db"),
        default_max_loops=int(_get_env("AUTOBOARD_MAX_LOOPS", "5")),
    )


def clamp_loops(value: Optional[object], cfg: AppConfig) -> int:
    """Bound a caller-supplied loop budget to the configured range.

    ``None`` selects the default. Booleans and non-integral values are rejected.
    """
    if value is None:
        value = cfg.default_max_loops
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError("maxLoops must be an integer", {"maxLoops": value})
    try:
        loops = int(value)
    except ValueError:
        raise ValidationError("maxLoops must be an integer", {"maxLoops": value}) from None
    return max(cfg.min_loops, min(cfg.max_loops, loops))


def create_client(cfg: ModelConfig, headers: Optional[Dict[str, str]] = None) -> OpenAI:
    # OpenRouter recommends sending HTTP-Referer and X-Title
    default_headers: Dict[str, str] = {
        "HTTP-Referer": _get_env("AUTOBOARD_HTTP_REFERER", "http://localhost"),
        "X-Title": _get_env("AUTOBOARD_APP_TITLE", "Autoboard"),
    }
    if headers:
        default_headers.update(headers)
    return OpenAI(
        api_key=cfg.api_key,
        base_url=cfg.base_url or DEFAULT_BASE_URL,
        default_headers=default_headers,
        timeout=cfg.timeout_sec,
        max_retries=0,
    )
