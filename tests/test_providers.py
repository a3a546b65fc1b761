"""Tests for provider clients and their transient/permanent error mapping."""
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from ai.adapters.providers import (
    AnthropicProvider,
    BridgeProvider,
    MessageRole,
    OllamaProvider,
    OpenAIProvider,
    build_messages,
    create_provider,
)
from core.errors import (
    ChannelUnavailable,
    PermanentProviderError,
    RemoteError,
    Timeout,
    TransientProviderError,
    UnsupportedAction,
)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def json_response(status: int, body) -> callable:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=body)
    return handler


# --- Message building ---

def test_build_messages_uses_operation_system_prompt_and_context():
    messages = build_messages("reviewCode", {"prompt": "check this", "context": {"language": "python"}})

    assert messages[0].role is MessageRole.SYSTEM
    assert "review" in messages[0].content
    assert messages[-1].role is MessageRole.USER
    assert messages[-1].content == "check this\n\nContext:\nlanguage: python"


def test_build_messages_keeps_history():
    messages = build_messages("chat", {
        "prompt": "and now?",
        "history": [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
    })
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.USER]


# --- OpenAI-compatible ---

@pytest.mark.asyncio
async def test_openai_success_and_request_shape():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "def f(): pass"}}]})

    provider = OpenAIProvider(api_key="sk-test", base_url="https://llm.test/v1", client=mock_client(handler))
    result = await provider.call("generateCode", {"prompt": "write f"}, timeout=5)

    assert result == "def f(): pass"
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "gpt-4o-mini"
    assert seen["body"]["messages"][-1] == {"role": "user", "content": "write f"}


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_retryable_statuses_are_transient(status):
    provider = OpenAIProvider(api_key="k", base_url="https://llm.test", client=mock_client(json_response(status, {})))
    with pytest.raises(TransientProviderError):
        await provider.call("chat", {"prompt": "hi"}, timeout=5)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401, 404])
async def test_client_errors_are_permanent(status):
    provider = OpenAIProvider(api_key="k", base_url="https://llm.test", client=mock_client(json_response(status, {})))
    with pytest.raises(PermanentProviderError):
        await provider.call("chat", {"prompt": "hi"}, timeout=5)


@pytest.mark.asyncio
async def test_unexpected_body_is_permanent():
    provider = OpenAIProvider(api_key="k", base_url="https://llm.test", client=mock_client(json_response(200, {"nope": 1})))
    with pytest.raises(PermanentProviderError):
        await provider.call("chat", {"prompt": "hi"}, timeout=5)


@pytest.mark.asyncio
async def test_connection_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    provider = OllamaProvider(base_url="http://ollama.test", client=mock_client(handler))
    with pytest.raises(TransientProviderError) as exc_info:
        await provider.call("chat", {"prompt": "hi"}, timeout=5)
    assert exc_info.value.provider == "ollama"


@pytest.mark.asyncio
async def test_timeouts_are_transient():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    provider = OllamaProvider(base_url="http://ollama.test", client=mock_client(handler))
    with pytest.raises(TransientProviderError):
        await provider.call("chat", {"prompt": "hi"}, timeout=5)


# --- Anthropic / Ollama ---

@pytest.mark.asyncio
async def test_anthropic_splits_system_prompt_and_joins_text_blocks():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["headers"] = request.headers
        return httpx.Response(200, json={"content": [
            {"type": "text", "text": "part one, "},
            {"type": "tool_use", "id": "x"},
            {"type": "text", "text": "part two"},
        ]})

    provider = AnthropicProvider(api_key="ak", base_url="https://anthropic.test/v1", client=mock_client(handler))
    result = await provider.call("explainCode", {"prompt": "explain", "system": "Be brief."}, timeout=5)

    assert result == "part one, part two"
    assert seen["body"]["system"] == "Be brief."
    assert all(m["role"] != "system" for m in seen["body"]["messages"])
    assert seen["headers"]["x-api-key"] == "ak"


@pytest.mark.asyncio
async def test_ollama_disables_streaming():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"message": {"role": "assistant", "content": "local answer"}})

    provider = OllamaProvider(base_url="http://ollama.test", model="codellama", client=mock_client(handler))
    assert await provider.call("chat", {"prompt": "hi"}, timeout=5) == "local answer"
    assert seen["url"] == "http://ollama.test/api/chat"
    assert seen["body"]["stream"] is False
    assert seen["body"]["model"] == "codellama"


# --- Bridge provider ---

@pytest.mark.asyncio
async def test_bridge_provider_forwards_operation_and_request():
    bridge = AsyncMock()
    bridge.send.return_value = "from the peer"
    provider = BridgeProvider("peer", bridge, action="ai.call")

    assert await provider.call("generateCode", {"prompt": "x"}, timeout=3) == "from the peer"
    bridge.send.assert_awaited_once_with("ai.call", {"operation": "generateCode", "request": {"prompt": "x"}}, timeout=3)


@pytest.mark.asyncio
@pytest.mark.parametrize("error, expected", [
    (ChannelUnavailable("down"), TransientProviderError),
    (Timeout("slow"), TransientProviderError),
    (UnsupportedAction("ai.call"), PermanentProviderError),
    (RemoteError("Busy", "later", {"transient": True}), TransientProviderError),
    (RemoteError("BadRequest", "no"), PermanentProviderError),
    (RemoteError("Timeout", "upstream model did not answer"), TransientProviderError),
    (RemoteError("ChannelUnavailable", "peer lost its backend"), TransientProviderError),
])
async def test_bridge_provider_error_mapping(error, expected):
    bridge = AsyncMock()
    bridge.send.side_effect = error
    provider = BridgeProvider("peer", bridge)

    with pytest.raises(expected):
        await provider.call("chat", {}, timeout=1)


# --- Factory ---

def test_create_provider_reads_api_key_env(monkeypatch):
    monkeypatch.setenv("CODEBRIDGE_TEST_KEY", "secret")
    provider = create_provider("openai", name="cloud", api_key_env="CODEBRIDGE_TEST_KEY", model="gpt-test", action="ai.call")

    assert isinstance(provider, OpenAIProvider)
    assert provider.name == "cloud"
    assert provider.api_key == "secret"
    assert provider.model == "gpt-test"


def test_create_provider_rejects_unknown_kinds_and_missing_bridge():
    with pytest.raises(ValueError):
        create_provider("mystery")
    with pytest.raises(ValueError):
        create_provider("bridge")
    assert isinstance(create_provider("bridge", name="peer", bridge=object()), BridgeProvider)
