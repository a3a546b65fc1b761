"""AI provider clients behind one capability: ``call(operation, request, timeout)``.

Every client raises :class:`TransientProviderError` for failures worth another
attempt (timeouts, connection errors, rate limits, 5xx) and
:class:`PermanentProviderError` for everything retrying cannot fix (bad
credentials, rejected requests).  The request coordinator only looks at that
distinction and never at the concrete client type.
"""
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import httpx

import core.env
from core.errors import (
    ChannelUnavailable,
    PermanentProviderError,
    RemoteError,
    Timeout,
    TransientProviderError,
    UnsupportedAction,
)
from core.logging import logger


class MessageRole(str, Enum):
    """Message roles for chat completion."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """Chat message."""
    role: MessageRole
    content: str


SYSTEM_PROMPTS: Dict[str, str] = {
    "generateCode": "You write code for the developer's editor. Reply with code only unless asked otherwise.",
    "explainCode": "You explain code to a developer clearly and concisely.",
    "reviewCode": "You review code and point out bugs, risks and improvements.",
}


def build_messages(operation: str, request: Mapping[str, Any]) -> List[Message]:
    """Turn an opaque request mapping into chat messages.

    Recognised keys: ``system``, ``prompt``, ``context`` (mapping rendered as
    ``key: value`` lines) and ``history`` (list of ``{role, content}``).
    """
    messages: List[Message] = []
    system = request.get("system") or SYSTEM_PROMPTS.get(operation)
    if system:
        messages.append(Message(role=MessageRole.SYSTEM, content=str(system)))
    for item in request.get("history") or []:
        messages.append(Message(role=MessageRole(item["role"]), content=str(item["content"])))

    prompt = str(request.get("prompt", ""))
    context = request.get("context") or {}
    if context:
        rendered = "\n".join(f"{key}: {value}" for key, value in context.items())
        prompt = f"{prompt}\n\nContext:\n{rendered}" if prompt else f"Context:\n{rendered}"
    messages.append(Message(role=MessageRole.USER, content=prompt))
    return messages


class BaseProvider(ABC):
    """Base class for AI providers."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def call(self, operation: str, request: Mapping[str, Any], timeout: float) -> Any:
        """Run one operation. ``timeout`` is the attempt deadline in seconds."""
        pass


# ---------------------------------------------------------------------------
# HTTP providers
# ---------------------------------------------------------------------------


class HttpProvider(BaseProvider):
    """Shared request/response handling for JSON-over-HTTP model APIs."""

    default_model = ""

    def __init__(
        self,
        name: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(name)
        self.api_key = api_key
        self.base_url = (base_url or "").rstrip("/")
        self.model = model or self.default_model
        self._client = client

    @abstractmethod
    def _endpoint(self) -> str:
        pass

    @abstractmethod
    def _headers(self) -> Dict[str, str]:
        pass

    @abstractmethod
    def _payload(self, operation: str, request: Mapping[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def _parse(self, data: Dict[str, Any]) -> str:
        pass

    async def call(self, operation: str, request: Mapping[str, Any], timeout: float) -> Any:
        payload = self._payload(operation, request)
        url = f"{self.base_url}{self._endpoint()}"
        try:
            if self._client is not None:
                response = await self._client.post(url, headers=self._headers(), json=payload, timeout=timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, headers=self._headers(), json=payload, timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransientProviderError(self.name, f"timed out after {timeout:.1f}s") from e
        except httpx.TransportError as e:
            raise TransientProviderError(self.name, f"transport error: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(self.name, f"HTTP {response.status_code}")
        if response.status_code >= 400:
            logger.error(f"{self.name} rejected request: HTTP {response.status_code} {response.text[:200]}")
            raise PermanentProviderError(self.name, f"HTTP {response.status_code}")

        try:
            return self._parse(response.json())
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise PermanentProviderError(self.name, f"unexpected response shape: {e}") from e


class OpenAIProvider(HttpProvider):
    """OpenAI-compatible chat completions API."""

    default_model = "gpt-4o-mini"

    def __init__(self, name: str = "openai", api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        api_key = api_key or core.env.OPENAI_API_KEY
        base_url = base_url or core.env.OPENAI_BASE_URL
        super().__init__(name, api_key, base_url, **kwargs)

    def _endpoint(self) -> str:
        return "/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, operation: str, request: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "model": request.get("model") or self.model,
            "messages": [{"role": m.role.value, "content": m.content} for m in build_messages(operation, request)],
            "temperature": request.get("temperature", 0.2),
        }

    def _parse(self, data: Dict[str, Any]) -> str:
        return data["choices"][0]["message"]["content"]


class AnthropicProvider(HttpProvider):
    """Anthropic messages API."""

    default_model = "claude-3-5-sonnet-latest"

    def __init__(self, name: str = "anthropic", api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        api_key = api_key or core.env.ANTHROPIC_API_KEY
        base_url = base_url or core.env.ANTHROPIC_BASE_URL
        super().__init__(name, api_key, base_url, **kwargs)

    def _endpoint(self) -> str:
        return "/messages"

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": core.env.ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def _payload(self, operation: str, request: Mapping[str, Any]) -> Dict[str, Any]:
        system_prompt = ""
        messages = []
        for msg in build_messages(operation, request):
            if msg.role == MessageRole.SYSTEM:
                system_prompt = msg.content
            else:
                messages.append({"role": msg.role.value, "content": msg.content})
        payload = {
            "model": request.get("model") or self.model,
            "messages": messages,
            "max_tokens": request.get("max_tokens", 4096),
            "temperature": request.get("temperature", 0.2),
        }
        if system_prompt:
            payload["system"] = system_prompt
        return payload

    def _parse(self, data: Dict[str, Any]) -> str:
        return "".join(block.get("text", "") for block in data["content"] if block.get("type", "text") == "text")


class OllamaProvider(HttpProvider):
    """Ollama local model provider."""

    default_model = "llama3:latest"

    def __init__(self, name: str = "ollama", api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        # Ollama doesn't need API key
        base_url = base_url or core.env.OLLAMA_HOST
        super().__init__(name, None, base_url, **kwargs)

    def _endpoint(self) -> str:
        return "/api/chat"

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _payload(self, operation: str, request: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "model": request.get("model") or self.model,
            "messages": [{"role": m.role.value, "content": m.content} for m in build_messages(operation, request)],
            "stream": False,
            "options": {"temperature": request.get("temperature", 0.2)},
        }

    def _parse(self, data: Dict[str, Any]) -> str:
        return data["message"]["content"]


# ---------------------------------------------------------------------------
# Provider on the other side of the bridge
# ---------------------------------------------------------------------------


class BridgeProvider(BaseProvider):
    """Local provider reached through the message bridge.

    The peer is expected to answer ``action`` requests carrying
    ``{"operation": ..., "request": ...}`` with the generated value.
    """

    def __init__(self, name: str, bridge, action: str = "ai.call"):
        super().__init__(name)
        self.bridge = bridge
        self.action = action

    async def call(self, operation: str, request: Mapping[str, Any], timeout: float) -> Any:
        try:
            return await self.bridge.send(
                self.action,
                {"operation": operation, "request": dict(request)},
                timeout=timeout,
            )
        except (ChannelUnavailable, Timeout) as e:
            raise TransientProviderError(self.name, str(e)) from e
        except UnsupportedAction as e:
            raise PermanentProviderError(self.name, str(e)) from e
        except RemoteError as e:
            if e.transient:
                raise TransientProviderError(self.name, str(e)) from e
            raise PermanentProviderError(self.name, str(e)) from e


# Provider factory
def create_provider(provider_type: str, name: Optional[str] = None, bridge=None, **kwargs) -> BaseProvider:
    """Create a provider instance by type."""
    provider_type = provider_type.lower()
    if provider_type == "bridge":
        if bridge is None:
            raise ValueError("bridge providers need a MessageBridge")
        return BridgeProvider(name or "bridge", bridge, action=kwargs.get("action", "ai.call"))

    providers = {
        "openai": OpenAIProvider,
        "anthropic": AnthropicProvider,
        "ollama": OllamaProvider
    }

    provider_class = providers.get(provider_type)
    if not provider_class:
        raise ValueError(f"Unknown provider type: {provider_type}")

    api_key_env = kwargs.pop("api_key_env", None)
    if api_key_env and not kwargs.get("api_key"):
        kwargs["api_key"] = os.environ.get(api_key_env)
    kwargs.pop("action", None)
    return provider_class(name=name or provider_type, **kwargs)
