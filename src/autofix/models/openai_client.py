"""OpenAI Responses API client used by the diff-generating agent."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from ..utils.retry import is_transient_status, looks_transient
from .llm_client import LLMClient, LLMResponseFormatError, LLMTransportError

__all__ = ["OpenAIResponsesClient", "extract_output_text"]

LOGGER = logging.getLogger(__name__)

RESPONSES_URL = "https://api.openai.com/v1/responses"

Transport = Callable[[Dict[str, Any]], str]


def _post_responses(url: str, api_key: str, payload: Dict[str, Any], timeout: float) -> str:
    import urllib.error
    import urllib.request

    request = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.read().decode("utf-8")
    except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
        detail = error.read().decode("utf-8", errors="ignore")
        raise LLMTransportError(
            f"HTTP {error.code}: {detail[:500]}",
            transient=is_transient_status(error.code) or looks_transient(detail),
            status=error.code,
        ) from error
    except TimeoutError as error:  # pragma: no cover - network-dependent
        raise LLMTransportError("Responses API request timed out.", transient=True) from error
    except urllib.error.URLError as error:  # pragma: no cover - network-dependent
        raise LLMTransportError(f"Failed to reach Responses API: {error.reason}", transient=True) from error


def _text_fragments(items: Iterable[Any]) -> Iterable[str]:
    for item in items:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        message = item.get("message")
        if isinstance(content, list):
            yield from (part["text"] for part in content if isinstance(part, dict) and isinstance(part.get("text"), str))
        elif isinstance(message, dict) and isinstance(message.get("content"), str):
            yield message["content"]
        elif isinstance(item.get("text"), str):
            yield item["text"]


def extract_output_text(raw_response: str) -> Optional[str]:
    """Concatenated assistant text from a Responses payload.

    Non-JSON bodies are returned unchanged; chat-completions ``choices`` are
    accepted as a fallback shape.
    """
    if not raw_response:
        return None
    try:
        data = json.loads(raw_response)
    except json.JSONDecodeError:
        return raw_response
    if not isinstance(data, dict):
        return raw_response

    direct = data.get("output_text")
    if isinstance(direct, str) and direct.strip():
        return direct
    for key in ("output", "choices"):
        items = data.get(key)
        if isinstance(items, dict):
            items = [items]
        if isinstance(items, list):
            text = "".join(_text_fragments(items))
            if text.strip():
                return text
    return None


class OpenAIResponsesClient(LLMClient):
    """LLM client posting to the Responses endpoint (or an injected transport)."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = RESPONSES_URL,
        model: str = "gpt-5.1-codex-max",
        transport: Optional[Transport] = None,
        timeout: float = 300.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(model=model, **kwargs)
        key = (api_key or "").strip()
        if transport is None and not key:
            raise ValueError("An API key is required when using the default transport.")
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport or self._http_transport(key)

    def _http_transport(self, api_key: str) -> Transport:
        def post(payload: Dict[str, Any]) -> str:
            LOGGER.debug("POST %s model=%s", self._base_url, payload.get("model"))
            return _post_responses(self._base_url, api_key, payload, self._timeout)

        return post

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except OSError as error:  # pragma: no cover - transport-specific failures
            raise LLMTransportError(f"Transport failed: {error}", transient=looks_transient(str(error))) from error

        text = extract_output_text(raw_response)
        if text is None:
            raise LLMResponseFormatError("Responses API payload did not contain output text.")
        return text
