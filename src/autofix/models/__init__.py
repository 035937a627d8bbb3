"""Convenience exports for language-model client implementations."""

from .llm_client import (
    LLMClient,
    LLMClientError,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
    parse_json_output,
)
from .openai_client import OpenAIResponsesClient, extract_output_text

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "OpenAIResponsesClient",
    "extract_output_text",
    "parse_json_output",
]
