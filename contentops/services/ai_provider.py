"""AI text-generation capability with shared clients and concurrency control."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Literal, Mapping, Optional, Union

import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from contentops.config import AISettings
from contentops.core.errors import CapabilityUnavailable, ConfigError, Timeout, ValidationError, as_core_error

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["system", "user", "assistant"]
    content: str


class AIRequest(BaseModel):
    """A chat-completion request; hints select the provider and model."""

    model_config = ConfigDict(extra="forbid")

    provider_hint: Optional[str] = None
    model_hint: Optional[str] = None
    messages: List[ChatMessage] = Field(min_length=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, gt=0)

    @classmethod
    def coerce(cls, request: Union["AIRequest", Mapping[str, Any]]) -> "AIRequest":
        if isinstance(request, cls):
            return request
        try:
            return cls.model_validate(request)
        except PydanticValidationError as exc:
            raise as_core_error(exc) from exc


def translate_openai_error(exc: openai.OpenAIError) -> Exception:
    """Map SDK failures onto transient or permanent core errors."""
    if isinstance(exc, openai.APITimeoutError):
        return Timeout(f"AI provider timed out: {exc}")
    if isinstance(exc, (openai.RateLimitError, openai.APIConnectionError, openai.InternalServerError)):
        return CapabilityUnavailable(f"AI provider unavailable: {exc}")
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ConfigError(f"AI provider rejected credentials: {exc}")
    if isinstance(exc, openai.APIStatusError) and exc.status_code >= 500:
        return CapabilityUnavailable(f"AI provider error {exc.status_code}: {exc}")
    return ValidationError(f"AI provider rejected the request: {exc}")


class OpenAIProvider:
    """AI capability over the OpenAI SDK (OpenAI or Azure OpenAI endpoints)."""

    PROVIDERS = ("openai", "azure")

    def __init__(self, settings: AISettings) -> None:
        self._settings = settings
        self._clients: Dict[str, Any] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}
        self._closed = False

    @asynccontextmanager
    async def acquire(self, provider: str) -> AsyncIterator[Any]:
        """Acquire a provider client within its concurrency limit."""
        if provider not in self.PROVIDERS:
            raise ValidationError(f"unknown AI provider {provider!r}")
        if self._closed:
            raise CapabilityUnavailable("AI provider is closed")
        semaphore = self._semaphores.setdefault(provider, asyncio.Semaphore(self._settings.max_concurrent))
        async with semaphore:
            # Lazy initialization on first use
            if provider not in self._clients:
                self._clients[provider] = self._create_client(provider)
            yield self._clients[provider]

    async def generate(self, request: Union[AIRequest, Mapping[str, Any]]) -> str:
        request = AIRequest.coerce(request)
        provider = request.provider_hint or self._settings.provider
        model = request.model_hint or self._settings.default_model
        async with self.acquire(provider) as client:
            try:
                response = await client.chat.completions.create(
                    model=model,
                    messages=[message.model_dump() for message in request.messages],
                    temperature=request.temperature,
                    max_tokens=request.max_tokens,
                )
            except openai.OpenAIError as exc:
                error = translate_openai_error(exc)
                logger.warning("AI call to %s/%s failed: %s", provider, model, error)
                raise error from exc
        return response.choices[0].message.content or ""

    def healthy(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True
        clients, self._clients = self._clients, {}
        for client in clients.values():
            await client.close()

    def _create_client(self, provider: str) -> Any:
        settings = self._settings
        if not settings.api_key:
            raise ConfigError(f"no API key configured for AI provider {provider!r}")
        if provider == "azure":
            if not settings.endpoint:
                raise ConfigError("azure provider requires an endpoint")
            return AsyncAzureOpenAI(
                api_key=settings.api_key,
                api_version=settings.api_version,
                azure_endpoint=settings.endpoint,
                timeout=settings.timeout_s,
                max_retries=0,
            )
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.endpoint,
            timeout=settings.timeout_s,
            max_retries=0,
        )


class StaticProvider:
    """Offline provider returning canned text, for demos and local runs."""

    def __init__(self, settings: AISettings) -> None:
        self._settings = settings

    async def generate(self, request: Union[AIRequest, Mapping[str, Any]]) -> str:
        request = AIRequest.coerce(request)
        model = request.model_hint or self._settings.default_model
        prompt = next((m.content for m in reversed(request.messages) if m.role == "user"), "")
        return f"[{model}] {prompt[:200]}"

    def healthy(self) -> bool:
        return True


def create_ai_provider(settings: AISettings) -> Union[OpenAIProvider, StaticProvider]:
    if settings.provider == "static":
        return StaticProvider(settings)
    return OpenAIProvider(settings)
