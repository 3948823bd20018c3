from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol, Sequence

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from ..core.config import ModelRoutingSettings, Settings
from ..core.errors import ProviderError, QuotaExceededError
from ..core.logging import get_logger

logger = get_logger(name=__name__)

QUOTA_ERROR_PATTERNS: tuple[str, ...] = (
    "429",
    "quota",
    "resource_exhausted",
    "resource exhausted",
    "rate limit",
    "ratelimit",
    "too many requests",
)


@dataclass(slots=True)
class GenerationOptions:
    temperature: float | None = None
    json_mode: bool = False
    max_tokens: int | None = None
    system_prompt: str | None = None


@dataclass(slots=True)
class GenerationResult:
    text: str
    usage: dict[str, Any] = field(default_factory=dict)


class TextGenerator(Protocol):
    async def generate(self, model: str, prompt: str, options: GenerationOptions) -> GenerationResult:
        ...


def is_quota_error(error: BaseException | str) -> bool:
    if isinstance(error, QuotaExceededError):
        return True
    message = str(error).lower()
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status == 429:
        return True
    return any(pattern in message for pattern in QUOTA_ERROR_PATTERNS)


def resolve_model(kind: str, routing: ModelRoutingSettings) -> str:
    """Model for a node kind; unset overrides fall back to the default model."""
    override = getattr(routing, kind, None)
    return override or routing.default


def _build_base_url(host: str, port: int) -> str:
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host.rstrip("/")
    return f"{host.rstrip('/')}:{port}"


def _messages_from_text(prompt: str, system_prompt: str | None = None) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


def _content_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "".join(parts)
    return str(content)


@dataclass
class LLMService:
    """LangChain chat-model adapter implementing ``TextGenerator`` against Ollama."""

    settings: Settings
    default_system_prompt: str = (
        "You are one agent inside a self-refining task graph. Follow the output format exactly."
    )
    _client_cache: ClassVar[dict[tuple[str, str, float | None, bool], Any]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMService":
        return cls(settings=settings)

    def _client(self, model: str, options: GenerationOptions) -> Any:
        base_url = _build_base_url(self.settings.ollama.host, self.settings.ollama.port)
        key = (base_url, model, options.temperature, options.json_mode)
        cached = self._client_cache.get(key)
        if cached is None:
            kwargs: dict[str, Any] = {"model": model, "base_url": base_url}
            if options.temperature is not None:
                kwargs["temperature"] = options.temperature
            if options.json_mode:
                kwargs["format"] = "json"
            cached = ChatOllama(**kwargs)
            self._client_cache[key] = cached
        return cached

    async def generate(self, model: str, prompt: str, options: GenerationOptions) -> GenerationResult:
        client = self._client(model, options)
        if options.max_tokens is not None:
            client = client.bind(num_predict=options.max_tokens)
        messages = _messages_from_text(prompt, options.system_prompt or self.default_system_prompt)
        timeout = self.settings.ollama.request_timeout_seconds
        try:
            response = await asyncio.wait_for(client.ainvoke(messages), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("llm_generation_timeout", model=model, timeout=timeout)
            raise ProviderError(f"LLM request timed out after {timeout:.0f} seconds") from exc
        except Exception as exc:
            if is_quota_error(exc):
                logger.warning("llm_quota_exceeded", model=model, error=str(exc))
                raise QuotaExceededError(str(exc)) from exc
            logger.warning("llm_generation_failed", model=model, error=str(exc))
            raise ProviderError(str(exc)) from exc
        usage = dict(getattr(response, "usage_metadata", None) or {})
        return GenerationResult(text=_content_to_text(getattr(response, "content", response)), usage=usage)


__all__ = [
    "GenerationOptions",
    "GenerationResult",
    "LLMService",
    "QUOTA_ERROR_PATTERNS",
    "TextGenerator",
    "is_quota_error",
    "resolve_model",
]
