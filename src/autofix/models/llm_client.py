"""Typed client base class shared by language-model integrations.

Subclasses implement :meth:`LLMClient._raw_invoke` (one transport round trip
returning output text). The base class adds transient-error retries and, for
structured requests, JSON extraction plus validation against a
``response_model`` through pydantic.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Iterator, Optional, Type, TypeVar

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

from ..utils.retry import retry_transient

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "parse_json_output",
]


T = TypeVar("T")

METADATA_VALUE_LIMIT = 512

_JSON_FENCE = re.compile(r"```(?:json)?[ \t]*\n(.*?)```", re.IGNORECASE | re.DOTALL)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_SMART_QUOTES = str.maketrans({"\u201c": "\"", "\u201d": "\"", "\u2018": "'", "\u2019": "'", "\u00a0": " ", "\ufeff": ""})


class LLMClientError(RuntimeError):
    """Base error raised for language-model client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the transport fails; ``transient`` marks retryable failures."""

    def __init__(self, message: str, *, transient: bool = False, status: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.status = status


class LLMResponseFormatError(LLMClientError):
    """Raised when the model returns an empty or unparseable payload."""


class LLMRetryError(LLMClientError):
    """Raised when structured output does not match the requested schema."""


@dataclass(slots=True)
class LLMRequest(Generic[T]):
    """One model call: prompt, optional system instructions and output schema."""

    prompt: str
    instructions: Optional[str] = None
    response_model: Optional[Type[T]] = None
    model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    temperature: Optional[float] = 0.0

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model or default_model, "input": self.prompt}
        if self.instructions:
            payload["instructions"] = self.instructions
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.metadata:
            payload["metadata"] = {str(key): _metadata_value(value) for key, value in self.metadata.items()}
        return payload


def _metadata_value(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"), sort_keys=True)
    if len(text) > METADATA_VALUE_LIMIT:
        text = text[: METADATA_VALUE_LIMIT - 3] + "..."
    return text


class LLMClient:
    """High-level helper with transient retry and optional schema validation."""

    def __init__(
        self,
        model: str,
        *,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        max_retry_delay: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._model = model
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._max_retry_delay = max_retry_delay
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self._model

    def generate_text(self, request: LLMRequest[Any]) -> str:
        """Return the raw output text for ``request``."""
        payload = request.to_payload(self._model)
        text = retry_transient(
            lambda: self._raw_invoke(payload),
            is_transient=lambda error: isinstance(error, LLMTransportError) and error.transient,
            max_attempts=self._max_attempts,
            base_delay=self._retry_delay,
            max_delay=self._max_retry_delay,
            sleep=self._sleep,
            label=f"Model request ({payload['model']})",
        )
        if not text or not text.strip():
            raise LLMResponseFormatError("Model returned no output text.")
        return text

    def invoke(self, request: LLMRequest[T]) -> T:
        """Call the model and validate its JSON output against ``response_model``."""
        if request.response_model is None:
            raise LLMClientError("invoke() requires a response_model; use generate_text() for plain text.")
        data = parse_json_output(self.generate_text(request))
        try:
            return TypeAdapter(request.response_model).validate_python(data)
        except ValidationError as error:
            name = getattr(request.response_model, "__name__", "schema")
            raise LLMRetryError(f"Model output did not match {name}: {error}") from error

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform one transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")


# ---------------------------------------------------------------------- JSON output


def _balanced_slice(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` or ``[...]`` span in ``text``."""
    start: Optional[int] = None
    closers: list[str] = []
    for index, char in enumerate(text):
        if char in "{[":
            if start is None:
                start = index
            closers.append("}" if char == "{" else "]")
        elif closers and char == closers[-1]:
            closers.pop()
            if not closers and start is not None:
                return text[start : index + 1]
    return None


def _json_candidates(text: str) -> Iterator[str]:
    yield text
    for match in _JSON_FENCE.finditer(text):
        yield match.group(1).strip()
    span = _balanced_slice(text)
    if span is not None:
        yield span


def parse_json_output(raw: str) -> Any:
    """Decode the JSON value in a model reply.

    Tries the whole reply, then fenced blocks, then the first balanced
    object or array. Smart quotes and trailing commas are repaired first.
    """
    text = raw.strip().translate(_SMART_QUOTES)
    if not text:
        raise LLMResponseFormatError("Model returned an empty response.")
    for candidate in _json_candidates(text):
        try:
            return json.loads(_TRAILING_COMMA.sub(r"\1", candidate))
        except json.JSONDecodeError:
            continue
    raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")
