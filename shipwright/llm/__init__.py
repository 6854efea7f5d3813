"""Chat providers: streaming chat-completion over HTTP."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, AsyncIterator, Protocol

import httpx

from shipwright.exceptions import LLMAPIError, LLMError
from shipwright.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"
OPENAI_BASE_URL = "https://api.openai.com/v1"

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL_RESULT = "tool_result"
ROLES = (ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL_RESULT)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool_result"
    content: str
    payload: dict[str, Any] | None = None
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            role=str(data.get("role", ROLE_USER)),
            content=str(data.get("content", "")),
            payload=data.get("payload"),
            timestamp=str(data.get("timestamp") or _utcnow_iso()),
        )


class TokenEstimator(Protocol):
    """Anything that can estimate a token count for text."""

    def estimate(self, text: str) -> int: ...


class LengthTokenEstimator:
    """Rough estimate: ~1 token per 4 characters."""

    def estimate(self, text: str) -> int:
        return len(text or "") // 4


class LLMProvider(ABC):
    """Abstract base class for chat providers."""

    @abstractmethod
    def complete_streaming(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        pass

    async def complete(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Collect a streamed completion into one string."""
        parts: list[str] = []
        async for chunk in self.complete_streaming(
            messages, temperature=temperature, max_tokens=max_tokens
        ):
            parts.append(chunk)
        return "".join(parts)

    def count_tokens(self, text: str) -> int:
        return LengthTokenEstimator().estimate(text)

    async def close(self) -> None:
        return None


def _convert_messages(messages: list[Message], tool_role: str) -> list[dict[str, Any]]:
    """Convert history messages to chat API dicts."""
    result = []
    for msg in messages:
        if msg.role == ROLE_TOOL_RESULT:
            if tool_role == "tool":
                result.append({"role": "tool", "content": msg.content or ""})
            else:
                result.append({"role": "user", "content": f"Tool result:\n{msg.content or ''}"})
        elif msg.role in (ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT):
            result.append({"role": msg.role, "content": msg.content or ""})
    return result


class OpenAICompatibleProvider(LLMProvider):
    """Provider for OpenAI-style `chat/completions` endpoints (SSE streaming)."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        base_url: str = OPENAI_BASE_URL,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        api_key: str | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete_streaming(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion."""
        url = f"{self.base_url}/chat/completions"
        body: dict[str, Any] = {
            "model": self.model,
            "messages": _convert_messages(messages, tool_role="user"),
            "stream": True,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
        }
        try:
            log.debug("Calling chat completions", model=self.model, url=url, msg_count=len(messages))
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Chat API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    for choice in chunk.get("choices") or []:
                        delta = (choice.get("delta") or {}).get("content")
                        if delta:
                            yield delta
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Chat streaming error: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider (NDJSON streaming)."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        api_key: str | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def complete_streaming(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream a completion."""
        url = f"{self.base_url}/api/chat"
        body: dict[str, Any] = {
            "model": self.model,
            "messages": _convert_messages(messages, tool_role="tool"),
            "stream": True,
            "options": {
                "temperature": self.temperature if temperature is None else temperature,
                "num_predict": max_tokens or self.max_tokens,
            },
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with self.client.stream("POST", url, json=body, headers=headers) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    content = (chunk.get("message") or {}).get("content")
                    if content:
                        yield content
                    if chunk.get("done"):
                        break
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "openai",
    model: str = "gpt-4o-mini",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.2,
    max_tokens: int = 4096,
    timeout: float = 120.0,
) -> LLMProvider:
    """Create a chat provider.

    Args:
        provider: Provider name (openai, openai-compatible, ollama)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        timeout: Per-request timeout in seconds

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    if name == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            timeout=timeout,
        )
    if name in {"openai", "openai-compatible", "copilot", "chatgpt"}:
        return OpenAICompatibleProvider(
            model=model,
            base_url=base_url or OPENAI_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'openai' or 'ollama'.")


def provider_from_config() -> LLMProvider:
    """Build a provider from the global configuration."""
    from shipwright.config import get_config

    cfg = get_config()
    return create_provider(
        provider=cfg.model.provider,
        model=cfg.model.model,
        api_key=cfg.model.api_key or None,
        base_url=cfg.model.base_url or None,
        temperature=cfg.model.temperature,
        max_tokens=cfg.model.max_tokens,
        timeout=cfg.model.timeout,
    )
