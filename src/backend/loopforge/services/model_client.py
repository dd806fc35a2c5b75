# [Service: Model Transport]
"""
Model Client — handles all communication with the generative text model.

The loop only depends on the ModelClient protocol. The default
implementation talks to any OpenAI-compatible chat completions endpoint
(OpenAI, Gemini's OpenAI-compatible endpoint, vLLM/TGI, ...) and asks for a
JSON answer constrained by a response schema.

Transport failures are classified into the error kinds the caller needs to
tell apart (bad credentials, rate limit/quota, schema rejection, anything
else). No retries happen here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import openai
from openai import AsyncOpenAI

from loopforge.agent.errors import (
    TransportAuthError,
    TransportError,
    TransportRateLimitedError,
    TransportSchemaRejectedError,
)
from loopforge.config import settings
from loopforge.models.schemas import ContentPart

logger = logging.getLogger(__name__)


@dataclass
class UsageMetadata:
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


@dataclass
class ModelResponse:
    text: str
    usage: UsageMetadata = field(default_factory=UsageMetadata)


class ModelClient(Protocol):
    async def generate(
        self,
        model_name: str,
        content_parts: Sequence[ContentPart],
        *,
        system_instruction: str,
        response_schema: Dict[str, Any],
    ) -> ModelResponse:
        ...


# ──────────────────────────────────────────────
# Error classification
# ──────────────────────────────────────────────

_AUTH_MARKERS = ("api_key_invalid", "api key not valid", "invalid api key", "incorrect api key")
_RATE_MARKERS = ("429", "quota", "resource_exhausted", "rate limit")
_SCHEMA_MARKERS = ("schema", "invalid response")


def classify_error(error: Exception) -> TransportError:
    """Map an SDK exception onto one of the transport error kinds."""
    text = str(error).lower()

    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)) or any(
        m in text for m in _AUTH_MARKERS
    ):
        return TransportAuthError(
            "Model API key is invalid or not authorized. "
            "Please check your API key configuration."
        )
    if isinstance(error, openai.RateLimitError) or any(m in text for m in _RATE_MARKERS):
        return TransportRateLimitedError(
            "Model API quota exceeded or rate limit hit. Please try again later."
        )
    if isinstance(error, (openai.BadRequestError, openai.UnprocessableEntityError)) and any(
        m in text for m in _SCHEMA_MARKERS
    ):
        return TransportSchemaRejectedError(
            f"Model API rejected the response schema. Details: {error}"
        )
    return TransportError(f"Model API error: {error or type(error).__name__}")


# ──────────────────────────────────────────────
# OpenAI-compatible implementation
# ──────────────────────────────────────────────

def to_message_content(parts: Sequence[ContentPart]) -> List[Dict[str, Any]]:
    """Convert ordered content parts into chat-completions content items."""
    content: List[Dict[str, Any]] = []
    for part in parts:
        if part.text is not None:
            content.append({"type": "text", "text": part.text})
            continue
        blob = part.inline_data
        data_url = f"data:{blob.mime_type};base64,{blob.data}"
        if blob.mime_type.startswith("image/"):
            content.append({"type": "image_url", "image_url": {"url": data_url}})
        else:
            content.append({
                "type": "file",
                "file": {"filename": part.name or "attachment", "file_data": data_url},
            })
    return content


class OpenAICompatibleModelClient:
    """
    ModelClient backed by the openai SDK.

    Usage:
        client = OpenAICompatibleModelClient()
        response = await client.generate(
            "gemini-2.5-flash", parts,
            system_instruction=WRITER_SYSTEM, response_schema=WRITER_SCHEMA,
        )
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        """Lazy-initialize the API client."""
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=settings.llm_api_key or "not-needed",
                base_url=settings.llm_base_url or None,
                timeout=settings.llm_timeout_seconds,
                max_retries=settings.llm_max_retries,
            )
        return self._client

    async def generate(
        self,
        model_name: str,
        content_parts: Sequence[ContentPart],
        *,
        system_instruction: str,
        response_schema: Dict[str, Any],
    ) -> ModelResponse:
        """
        Send one request and return the raw text plus usage metadata.

        Raises:
            TransportError (or a subclass) on any API failure.
        """
        client = self._get_client()
        messages = [
            {"role": "system", "content": system_instruction},
            {"role": "user", "content": to_message_content(content_parts)},
        ]
        response_format = {
            "type": "json_schema",
            "json_schema": {
                "name": response_schema.get("title", "response"),
                "schema": response_schema,
            },
        }

        try:
            completion = await client.chat.completions.create(
                model=model_name,
                messages=messages,
                response_format=response_format,
            )
        except openai.OpenAIError as e:
            logger.error(f"Model API error ({model_name}): {e}")
            raise classify_error(e) from e

        if not completion.choices or completion.choices[0].message.content is None:
            raise TransportError("No text found in model response.")

        usage = UsageMetadata()
        if completion.usage is not None:
            usage = UsageMetadata(
                input_tokens=completion.usage.prompt_tokens,
                output_tokens=completion.usage.completion_tokens,
                total_tokens=completion.usage.total_tokens,
            )
        return ModelResponse(text=completion.choices[0].message.content, usage=usage)
