import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

import openai
import requests
from openai import OpenAI

from autoboard.config import ModelConfig, create_client
from autoboard.errors import TransportError, UpstreamError


def connectivity_probe(url: str = "https://openrouter.ai/api/v1", timeout_sec: int = 5) -> Tuple[bool, str]:
    try:
        resp = requests.get(url, timeout=timeout_sec)
        return (resp.ok, f"HTTP {resp.status_code}")
    except requests.RequestException as e:
        return (False, str(e))


def models_probe(cfg: ModelConfig, timeout_sec: int = 8) -> Tuple[bool, str]:
    try:
        resp = requests.get(
            f"{cfg.base_url.rstrip('/')}/models",
            headers={"Authorization": f"Bearer {cfg.api_key}"},
            timeout=timeout_sec,
        )
        if resp.ok:
            return True, f"HTTP {resp.status_code}, {len(resp.json().get('data', []))} models"
        return False, f"HTTP {resp.status_code}: {resp.text[:200]}"
    except (requests.RequestException, ValueError) as e:
        return False, str(e)


def with_backoff(
    func: Callable[[], Any],
    *,
    retries: int = 2,
    base_delay: float = 0.8,
    retry_on: Tuple[Type[BaseException], ...] = (TransportError,),
    on_log: Optional[Callable[[str], None]] = None,
):
    last_exc: Optional[BaseException] = None
    for attempt in range(retries + 1):
        try:
            return func()
        except retry_on as e:
            last_exc = e
            if attempt == retries:
                break
            delay = base_delay * (2 ** attempt)
            if on_log:
                on_log(f"Retrying after error: {e} (sleep {delay:.1f}s)…")
            time.sleep(delay)
    if last_exc:
        raise last_exc
    raise RuntimeError("with_backoff: exhausted retries")


def response_to_dict(resp: Any) -> Dict[str, Any]:
    """Normalize an OpenAI SDK response object (or an already-decoded dict) to a dict."""
    if isinstance(resp, dict):
        return resp
    if hasattr(resp, "model_dump"):
        return resp.model_dump()  # type: ignore[attr-defined]
    return {}


def message_text(resp: Dict[str, Any]) -> str:
    choices = resp.get("choices") or []
    if not choices:
        return ""
    content = (choices[0].get("message") or {}).get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [item.get("text", "") for item in content if isinstance(item, dict) and item.get("type") == "text"]
        return "\n".join(p for p in parts if p)
    return ""


def chat_completion(
    cfg: ModelConfig,
    messages: List[dict],
    *,
    client: Optional[OpenAI] = None,
    extra_body: Optional[Dict[str, Any]] = None,
    temperature: Optional[float] = None,
    on_log: Optional[Callable[[str], None]] = None,
    label: str = "Model",
) -> Dict[str, Any]:
    """Call an OpenAI-compatible /chat/completions endpoint and return the decoded response.

    Network failures raise ``TransportError``; non-2xx answers raise ``UpstreamError``
    carrying the status and a truncated body. Only transport failures are retried,
    and only ``cfg.retries`` times.
    """
    client = client or create_client(cfg)
    kwargs: Dict[str, Any] = {"model": cfg.model, "messages": messages, "timeout": cfg.timeout_sec}
    if extra_body:
        kwargs["extra_body"] = extra_body
    if temperature is not None:
        kwargs["temperature"] = temperature

    def call() -> Dict[str, Any]:
        try:
            return response_to_dict(client.chat.completions.create(**kwargs))
        except openai.APIConnectionError as e:
            raise TransportError(f"{label}: cannot reach {cfg.base_url}: {e}") from e
        except openai.APIStatusError as e:
            try:
                detail = e.response.text[:500]
            except Exception:  # noqa: BLE001
                detail = "<no body>"
            raise UpstreamError(f"{label}: API error {e.status_code} - {detail}", e.status_code, detail) from e
        except openai.APIError as e:
            # Malformed or unparseable responses from an otherwise reachable provider
            status = getattr(e, "status_code", None)
            raise UpstreamError(f"{label}: invalid API response - {e}", status) from e

    if on_log:
        on_log(f"{label}: calling {cfg.model} (timeout {cfg.timeout_sec}s)…")
    return with_backoff(call, retries=cfg.retries, on_log=on_log)
