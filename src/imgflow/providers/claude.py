"""Claude text and vision providers over the Anthropic SDK."""

import base64
import json
import logging
import re
from typing import Any

import anthropic

from imgflow.core.artifacts import DataResult, ImageArtifact
from imgflow.core.errors import ConfigurationError, FlowError, NetworkError, ProviderError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_MAX_TOKENS = 4096
VISION_MIME_TYPES = ("image/png", "image/jpeg", "image/gif", "image/webp")

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_json_text(text: str) -> Any:
    """Decode a JSON reply, tolerating a surrounding markdown code fence."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        stripped = match.group(1)
    return json.loads(stripped)


def map_anthropic_error(error: Exception, operation: str) -> FlowError:
    """Translate SDK exceptions into the imgflow error taxonomy."""
    kwargs: dict[str, Any] = {"provider": "claude", "operation": operation, "cause": error}
    if isinstance(error, anthropic.AuthenticationError | anthropic.PermissionDeniedError):
        return ConfigurationError(f"Anthropic credentials rejected: {error}", code="AUTH_ERROR", **kwargs)
    if isinstance(error, anthropic.RateLimitError):
        return ProviderError(f"Anthropic rate limit: {error}", code="RATE_LIMITED", retryable=True, **kwargs)
    if isinstance(error, anthropic.APITimeoutError):
        return ProviderError(f"Anthropic request timed out: {error}", code="TIMEOUT", retryable=True, **kwargs)
    if isinstance(error, anthropic.APIConnectionError):
        return NetworkError(f"Could not reach Anthropic: {error}", **kwargs)
    if isinstance(error, anthropic.APIStatusError):
        return ProviderError(
            f"Anthropic API error {error.status_code}: {error.message}",
            retryable=error.status_code >= 500,
            **kwargs,
        )
    return ProviderError(str(error), **kwargs)


class _ClaudeProvider:
    """Shared client handling: ``AsyncAnthropic`` created on first use."""

    def __init__(
        self,
        *,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._client = client
        self._owns_client = False

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic()
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.close()
            self._client = None
            self._owns_client = False

    async def _complete(self, content: list[dict[str, Any]], params: dict[str, Any], operation: str) -> DataResult:
        kwargs: dict[str, Any] = {
            "model": params.get("model", self.model),
            "max_tokens": params.get("maxTokens", self.max_tokens),
            "messages": [{"role": "user", "content": content}],
        }
        if params.get("systemPrompt"):
            kwargs["system"] = params["systemPrompt"]
        if "temperature" in params:
            kwargs["temperature"] = params["temperature"]

        try:
            response = await self._get_client().messages.create(**kwargs)
        except anthropic.AnthropicError as e:
            raise map_anthropic_error(e, operation) from e

        text = "".join(block.text for block in response.content if block.type == "text")
        metadata = {
            "model": response.model,
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
        }
        if params.get("outputFormat") == "json":
            try:
                parsed = parse_json_text(text)
            except json.JSONDecodeError as e:
                raise ProviderError(
                    f"Expected a JSON reply from Claude: {e}",
                    code="INVALID_RESPONSE",
                    provider="claude",
                    operation=operation,
                    cause=e,
                ) from e
            return DataResult(type="json", content=text, parsed=parsed, metadata=metadata)
        return DataResult(type="text", content=text, metadata=metadata)


def _json_instruction(params: dict[str, Any]) -> str:
    if params.get("outputFormat") != "json":
        return ""
    schema = params.get("outputSchema")
    if schema:
        return f"\n\nRespond with JSON only, matching this schema:\n{json.dumps(schema)}"
    return "\n\nRespond with JSON only."


class ClaudeTextProvider(_ClaudeProvider):
    """Text generation. ``params``: ``prompt``, ``context``, ``systemPrompt``, ``outputFormat``."""

    async def generate(self, input: Any, params: dict[str, Any]) -> DataResult:
        prompt = params.get("prompt")
        if not prompt:
            raise ValidationError("Text generation requires a prompt", provider="claude", operation="text")
        text = str(prompt)
        context = params.get("context")
        if context:
            context_text = context if isinstance(context, str) else json.dumps(context)
            text = f"Context:\n{context_text}\n\n{text}"
        text += _json_instruction(params)
        return await self._complete([{"type": "text", "text": text}], params, "text")


def _image_block(artifact: ImageArtifact) -> dict[str, Any]:
    if artifact.mime not in VISION_MIME_TYPES:
        raise ValidationError(
            f"Claude vision does not accept {artifact.mime} images",
            provider="claude",
            operation="vision",
        )
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": artifact.mime,
            "data": base64.b64encode(artifact.bytes).decode("ascii"),
        },
    }


class ClaudeVisionProvider(_ClaudeProvider):
    """Image analysis.

    A collected list is sent as numbered images (``Image 0``, ``Image 1``, ...)
    so an index in the reply refers to the same position in the list. Empty
    slots are announced as missing rather than dropped.
    """

    async def analyze(self, input: ImageArtifact | list[Any], params: dict[str, Any]) -> DataResult:
        prompt = params.get("prompt") or "Describe this image."
        content: list[dict[str, Any]] = []
        if isinstance(input, list):
            for i, item in enumerate(input):
                if isinstance(item, ImageArtifact):
                    content.append({"type": "text", "text": f"Image {i}:"})
                    content.append(_image_block(item))
                else:
                    content.append({"type": "text", "text": f"Image {i}: (missing)"})
        else:
            content.append(_image_block(input))

        context = params.get("context")
        if context:
            context_text = context if isinstance(context, str) else json.dumps(context)
            prompt = f"Context:\n{context_text}\n\n{prompt}"
        content.append({"type": "text", "text": prompt + _json_instruction(params)})
        logger.debug("Claude vision request with %d content blocks", len(content))
        return await self._complete(content, params, "vision")
