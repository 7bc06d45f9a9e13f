"""Multi-LLM Provider Factory for the card enrichment pipeline.

Supports Anthropic (Claude) and OpenAI (GPT) providers with a unified
async interface. Both providers can analyze images, which the AI metadata
generator uses for image cards.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import anthropic
import openai

from card_enrichment.core.exceptions import ConfigurationError, ExtractionError

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Standardized response from any LLM provider."""

    content: str
    model: str
    usage: Optional[dict[str, Any]] = None
    images_processed: int = 0


def _split_data_url(image: str) -> tuple[str, str]:
    """Split "data:<mime>;base64,<data>" into (data, mime)."""
    header, _, data = image.partition(",")
    media_type = header[len("data:"):].split(";")[0] or "image/png"
    return data, media_type


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    All providers implement async generate() and generate_with_vision();
    structured extraction is built on top of both.
    """

    provider_name: str = ""

    @property
    @abstractmethod
    def model(self) -> str:
        """Model identifier used for requests."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        *,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Generate a text response from the LLM.

        Args:
            prompt: User prompt text
            system_prompt: Optional system instructions
            max_tokens: Optional max output tokens override

        Returns:
            LLMResponse with content and metadata
        """

    @abstractmethod
    async def generate_with_vision(
        self,
        prompt: str,
        images: list[str],
        system_prompt: Optional[str] = None,
    ) -> LLMResponse:
        """Generate a response about one or more images.

        Args:
            prompt: Text prompt
            images: Image URLs or base64 data URLs
            system_prompt: Optional system instructions
        """

    async def extract_structured(
        self,
        content: str,
        system_prompt: str,
        *,
        max_tokens: Optional[int] = None,
    ) -> dict[str, Any]:
        """Extract structured JSON data from content.

        Args:
            content: The text content to analyze
            system_prompt: Instructions requesting JSON output
            max_tokens: Optional max output tokens override

        Returns:
            Parsed JSON dict from LLM response

        Raises:
            ExtractionError: If LLM call fails or response is not valid JSON
        """
        response = await self.generate(
            content, system_prompt, max_tokens=max_tokens
        )
        return _parse_json_response(response.content)

    async def extract_structured_from_images(
        self,
        prompt: str,
        images: list[str],
        system_prompt: str,
    ) -> dict[str, Any]:
        """Vision variant of extract_structured."""
        response = await self.generate_with_vision(prompt, images, system_prompt)
        return _parse_json_response(response.content)


class AnthropicProvider(LLMProvider):
    """Anthropic Claude provider with vision support."""

    provider_name = "anthropic"
    DEFAULT_MODEL = "claude-3-haiku-20240307"
    DEFAULT_MAX_TOKENS = 1024

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self._api_key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        if not self._api_key:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY is required for Anthropic provider"
            )

        self._model = model or self.DEFAULT_MODEL
        self._max_tokens = max_tokens
        self._client = anthropic.AsyncAnthropic(api_key=self._api_key)

    @property
    def model(self) -> str:
        return self._model

    async def _create(self, system: str, content: Any, max_tokens: int) -> Any:
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APIConnectionError as e:
            raise ExtractionError(f"Failed to connect to Anthropic API: {e}")
        except anthropic.RateLimitError as e:
            raise ExtractionError(f"Anthropic API rate limit exceeded: {e}")
        except anthropic.APIStatusError as e:
            raise ExtractionError(
                f"Anthropic API error: {e.status_code} - {e.message}",
                retryable=e.status_code >= 500,
            )

        if not response.content:
            raise ExtractionError("LLM returned empty response")
        return response

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        *,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        response = await self._create(
            system_prompt or "You are a helpful assistant.",
            prompt,
            max_tokens or self._max_tokens,
        )
        return LLMResponse(
            content=response.content[0].text,
            model=self._model,
            usage={
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
        )

    async def generate_with_vision(
        self,
        prompt: str,
        images: list[str],
        system_prompt: Optional[str] = None,
    ) -> LLMResponse:
        content: list[dict[str, Any]] = []
        images_processed = 0

        for image in images[:20]:  # Claude limit: 20 images
            if image.startswith(("http://", "https://")):
                source: dict[str, Any] = {"type": "url", "url": image}
            elif image.startswith("data:"):
                data, media_type = _split_data_url(image)
                source = {"type": "base64", "media_type": media_type, "data": data}
            else:
                logger.warning("Skipping unsupported image reference %s", image[:80])
                continue
            content.append({"type": "image", "source": source})
            images_processed += 1

        content.append({"type": "text", "text": prompt})

        response = await self._create(
            system_prompt or "You are a helpful assistant that analyzes images.",
            content,
            self._max_tokens,
        )
        return LLMResponse(
            content=response.content[0].text,
            model=self._model,
            usage={
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
            images_processed=images_processed,
        )


class OpenAIProvider(LLMProvider):
    """OpenAI GPT provider with vision support."""

    provider_name = "openai"
    DEFAULT_MODEL = "gpt-5-nano"
    DEFAULT_MAX_TOKENS = 1024

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        if not self._api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY is required for OpenAI provider"
            )

        self._model = model or self.DEFAULT_MODEL
        self._max_tokens = max_tokens
        self._client = openai.AsyncOpenAI(api_key=self._api_key)

    @property
    def model(self) -> str:
        return self._model

    def _is_reasoning_model(self) -> bool:
        """Check if model uses max_completion_tokens (o1/o3/gpt-5.x)."""
        return self._model.startswith(("o1", "o3", "gpt-5"))

    async def _complete(
        self, messages: list[dict[str, Any]], max_tokens: int, timeout: float
    ) -> Any:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "response_format": {"type": "json_object"},
            "timeout": timeout,
        }
        if self._is_reasoning_model():
            kwargs["max_completion_tokens"] = max_tokens
        else:
            kwargs["max_tokens"] = max_tokens
            kwargs["temperature"] = 0.3

        try:
            return await self._client.chat.completions.create(**kwargs)
        except openai.AuthenticationError as e:
            raise ConfigurationError(f"OpenAI API key error: {e}")
        except openai.APIStatusError as e:
            raise ExtractionError(
                f"OpenAI API error: {e.status_code} - {e.message}",
                retryable=e.status_code == 429 or e.status_code >= 500,
            )
        except openai.OpenAIError as e:
            raise ExtractionError(f"OpenAI API error: {e}")

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        *,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        tokens = max_tokens or self._max_tokens
        timeout = 120.0 if self._is_reasoning_model() else 60.0
        response = await self._complete(messages, tokens, timeout)
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=self._model,
            usage=response.usage.model_dump() if response.usage else None,
        )

    async def generate_with_vision(
        self,
        prompt: str,
        images: list[str],
        system_prompt: Optional[str] = None,
    ) -> LLMResponse:
        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        images_processed = 0

        for image in images:
            if not image.startswith(("http://", "https://", "data:")):
                logger.warning("Skipping unsupported image reference %s", image[:80])
                continue
            content.append({"type": "image_url", "image_url": {"url": image}})
            images_processed += 1

        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": content})

        response = await self._complete(messages, 4096, 180.0)
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=self._model,
            usage=response.usage.model_dump() if response.usage else None,
            images_processed=images_processed,
        )


class LLMFactory:
    """Factory for creating LLM provider instances."""

    _PROVIDERS: dict[str, type[LLMProvider]] = {
        "anthropic": AnthropicProvider,
        "openai": OpenAIProvider,
    }

    @staticmethod
    def create(
        provider: str,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        **kwargs: Any,
    ) -> LLMProvider:
        """Create an LLM provider instance.

        Args:
            provider: One of 'anthropic', 'openai'
            api_key: API key (optional if set in environment)
            model: Model name (optional, uses provider defaults)
            **kwargs: Additional provider-specific options

        Returns:
            LLMProvider instance

        Raises:
            ConfigurationError: If provider is unknown or API key is missing
        """
        provider_lower = provider.lower()
        if provider_lower not in LLMFactory._PROVIDERS:
            available = ", ".join(sorted(LLMFactory._PROVIDERS.keys()))
            raise ConfigurationError(
                f"Unknown provider: {provider}. Available: {available}"
            )

        return LLMFactory._PROVIDERS[provider_lower](
            api_key=api_key, model=model, **kwargs
        )


def _parse_json_response(response_text: str) -> dict[str, Any]:
    """Parse JSON from LLM response text.

    Handles JSON wrapped in markdown code blocks.

    Args:
        response_text: Raw text response from LLM

    Returns:
        Parsed JSON dict

    Raises:
        ExtractionError: If response is not valid JSON
    """
    text = response_text.strip()

    # Extract from markdown code block
    if text.startswith("```"):
        lines = text.split("\n")
        end_idx = len(lines)
        for i, line in enumerate(lines[1:], 1):
            if line.strip() == "```":
                end_idx = i
                break
        text = "\n".join(lines[1:end_idx])

    try:
        result = json.loads(text)
    except json.JSONDecodeError as e:
        raise ExtractionError(f"LLM response is not valid JSON: {e.msg}")

    if not isinstance(result, dict):
        raise ExtractionError(
            f"LLM response is not a JSON object: {type(result).__name__}"
        )
    return result
