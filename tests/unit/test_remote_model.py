"""
Unit tests for the remote model tier.
"""

import json

import httpx
import pytest

from router_fakes import FakeRemoteClient

from slm_router.config import RemoteModelConfig
from slm_router.remote_model import (
    NO_RESPONSE,
    AnthropicRemoteClient,
    OpenAIProxyClient,
    Provider,
    RemoteModelAdapter,
    create_remote_client,
)


def _completion(content):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "claude-sonnet",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 12, "completion_tokens": 5, "total_tokens": 17},
    }


def _proxy(handler, **overrides):
    config = RemoteModelConfig(max_retries=0, **overrides)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIProxyClient(config, http_client=http_client)


class TestOpenAIProxyClient:
    """Tests for the OpenAI-compatible proxy client."""

    @pytest.mark.asyncio
    async def test_complete_request(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_completion("Use the expressway."))

        client = _proxy(handler, base_url="http://proxy:4444/")
        response = await client.complete(
            messages=[{"role": "user", "content": "Best route?"}],
            system="Be brief.",
            model="claude-sonnet",
            max_tokens=1024,
        )

        assert seen["url"] == "http://proxy:4444/v1/chat/completions"
        assert seen["body"]["model"] == "claude-sonnet"
        assert seen["body"]["max_tokens"] == 1024
        assert seen["body"]["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Best route?"},
        ]
        assert response.content == "Use the expressway."
        assert response.input_tokens == 12
        assert response.output_tokens == 5
        assert response.stop_reason == "stop"
        assert response.provider == Provider.OPENAI

    @pytest.mark.asyncio
    async def test_ping_health(self):
        def handler(request):
            assert request.url.path == "/health"
            return httpx.Response(200, json={"status": "ok"})

        assert await _proxy(handler).ping() is True

    @pytest.mark.asyncio
    async def test_ping_falls_back_to_models(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.path == "/health":
                return httpx.Response(404)
            return httpx.Response(200, json={"object": "list", "data": []})

        assert await _proxy(handler).ping() is True
        assert paths == ["/health", "/v1/models"]

    @pytest.mark.asyncio
    async def test_ping_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await _proxy(handler).ping() is False


class TestRemoteModelAdapter:
    """Tests for answer(), which never raises."""

    @pytest.mark.asyncio
    async def test_answer(self):
        def handler(request):
            return httpx.Response(200, json=_completion("Detailed answer"))

        adapter = RemoteModelAdapter(RemoteModelConfig(max_retries=0), _proxy(handler))
        assert await adapter.answer("Explain e-way bills") == "Detailed answer"

    @pytest.mark.asyncio
    async def test_system_prompt_sent(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=_completion("ok"))

        adapter = RemoteModelAdapter(RemoteModelConfig(max_retries=0), _proxy(handler))
        await adapter.answer("hello")

        assert bodies[0]["messages"][0] == {
            "role": "system",
            "content": "You are an AI assistant for ANKR, an Indian logistics and compliance platform.",
        }

    @pytest.mark.asyncio
    async def test_empty_content(self):
        def handler(request):
            return httpx.Response(200, json=_completion(None))

        adapter = RemoteModelAdapter(RemoteModelConfig(max_retries=0), _proxy(handler))
        assert await adapter.answer("hello") == NO_RESPONSE
        assert adapter.get_statistics()["empty"] == 1

    @pytest.mark.asyncio
    async def test_server_error_becomes_text(self):
        def handler(request):
            return httpx.Response(500, json={"error": {"message": "upstream down"}})

        adapter = RemoteModelAdapter(RemoteModelConfig(max_retries=0), _proxy(handler))
        answer = await adapter.answer("hello")

        assert answer.startswith("LLM error: ")
        assert adapter.get_statistics()["errors"] == 1

    @pytest.mark.asyncio
    async def test_client_exception_becomes_text(self):
        adapter = RemoteModelAdapter(client=FakeRemoteClient(error=RuntimeError("boom")))
        assert await adapter.answer("hello") == "LLM error: boom"

    @pytest.mark.asyncio
    async def test_timeout_becomes_text(self):
        adapter = RemoteModelAdapter(
            RemoteModelConfig(timeout_seconds=0.05), FakeRemoteClient(delay=5)
        )
        assert (await adapter.answer("hello")).startswith("LLM error:")

    @pytest.mark.asyncio
    async def test_health(self):
        assert await RemoteModelAdapter(client=FakeRemoteClient(available=True)).health() is True
        assert await RemoteModelAdapter(client=FakeRemoteClient(available=False)).health() is False

    @pytest.mark.asyncio
    async def test_aclose(self):
        client = FakeRemoteClient()
        await RemoteModelAdapter(client=client).aclose()
        assert client.closed

    def test_statistics(self):
        stats = RemoteModelAdapter(client=FakeRemoteClient()).get_statistics()
        assert stats == {
            "calls": 0,
            "errors": 0,
            "empty": 0,
            "provider": "openai",
            "model": "claude-sonnet",
        }


class TestProviderSelection:
    """Tests for create_remote_client."""

    def test_openai_default(self):
        assert isinstance(create_remote_client(RemoteModelConfig()), OpenAIProxyClient)

    def test_anthropic(self):
        client = create_remote_client(RemoteModelConfig(provider="anthropic"))
        assert isinstance(client, AnthropicRemoteClient)
        assert client.provider == Provider.ANTHROPIC

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_remote_client(RemoteModelConfig(provider="bard"))

    @pytest.mark.asyncio
    async def test_anthropic_without_key_answers_error(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        adapter = RemoteModelAdapter(RemoteModelConfig(provider="anthropic"))

        answer = await adapter.answer("hello")

        assert answer.startswith("LLM error: Anthropic API key required")
