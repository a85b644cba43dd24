from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from gonogo.errors import ProviderError
from gonogo.llm import LLMClient

BASE_URL = "https://llm.test/v1"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("LLM_PROVIDER", "LLM_MODEL", "LLM_TIMEOUT", "LLM_MAX_RETRIES", "LLM_BACKOFF"):
        monkeypatch.delenv(var, raising=False)


def _completion(text: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": text}}]}


def _deepseek(handler, **kwargs) -> LLMClient:
    kwargs.setdefault("max_retries", 0)
    return LLMClient(
        provider="deepseek", api_key="sk-test", base_url=BASE_URL,
        backoff=0, timeout=5, transport=httpx.MockTransport(handler), **kwargs,
    )


class TestDeepSeek:
    @pytest.mark.asyncio
    async def test_success(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_completion("1. Resources (4)"))

        client = _deepseek(handler)
        assert await client.complete("sys", "prompt") == "1. Resources (4)"
        request = seen[0]
        assert request.url == httpx.URL(f"{BASE_URL}/chat/completions")
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["model"] == "deepseek-chat"
        assert body["messages"][0] == {"role": "system", "content": "sys"}
        assert body["messages"][1] == {"role": "user", "content": "prompt"}

    @pytest.mark.asyncio
    async def test_retries_server_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503, json={"error": {"message": "busy"}})
            return httpx.Response(200, json=_completion("ok"))

        client = _deepseek(handler, max_retries=2)
        assert await client.complete("sys", "prompt") == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": {"message": "bad key"}})

        client = _deepseek(handler, max_retries=3)
        with pytest.raises(ProviderError, match="bad key") as exc_info:
            await client.complete("sys", "prompt")
        assert exc_info.value.status == 401
        assert exc_info.value.retryable is False
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_unreachable_exhausts_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client = _deepseek(handler, max_retries=1)
        with pytest.raises(ProviderError, match="unreachable") as exc_info:
            await client.complete("sys", "prompt")
        assert exc_info.value.retryable is True
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retries_logged_with_attempt(self, caplog):
        def handler(request):
            return httpx.Response(502, json={"error": {"message": "bad gateway"}})

        client = _deepseek(handler, max_retries=2)
        with caplog.at_level("WARNING", logger="gonogo.llm"):
            with pytest.raises(ProviderError, match="bad gateway"):
                await client.complete("sys", "prompt")
        retries = [r.getMessage() for r in caplog.records if "retry" in r.getMessage()]
        assert len(retries) == 2
        assert "retry 1/2" in retries[0]
        assert "retry 2/2" in retries[1]

    @pytest.mark.asyncio
    async def test_unexpected_shape(self):
        client = _deepseek(lambda request: httpx.Response(200, json={"result": "?"}))
        with pytest.raises(ProviderError, match="shape"):
            await client.complete("sys", "prompt")

    @pytest.mark.asyncio
    async def test_timeout(self):
        client = _deepseek(lambda request: httpx.Response(200, json=_completion("late")))
        client.timeout = 0.01

        async def slow(system, prompt):
            await asyncio.sleep(1)
            return "late"

        client._complete_once = slow
        with pytest.raises(ProviderError, match="timed out") as exc_info:
            await client.complete("sys", "prompt")
        assert exc_info.value.retryable is True


class TestSdkProviders:
    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown LLM provider"):
            LLMClient(provider="mystery")

    def test_default_model(self):
        assert LLMClient(provider="openai", api_key="sk-test").model == "gpt-4-turbo"
        assert LLMClient(provider="openai", api_key="sk-test", model="gpt-4o").model == "gpt-4o"

    def test_provider_from_env(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "anthropic")
        monkeypatch.setenv("LLM_MODEL", "claude-test")
        client = LLMClient(api_key="sk-test")
        assert client.provider == "anthropic"
        assert client.model == "claude-test"

    @pytest.mark.asyncio
    async def test_anthropic(self):
        client = LLMClient(provider="anthropic", api_key="sk-test")
        client._client = MagicMock()
        client._client.messages.create = AsyncMock(return_value=MagicMock(content=[MagicMock(text="hello")]))
        assert await client.complete("sys", "prompt") == "hello"
        kwargs = client._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "sys"
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]

    @pytest.mark.asyncio
    async def test_openai_rate_limit_retried(self):
        class RateLimited(Exception):
            status_code = 429

        response = MagicMock()
        response.choices = [MagicMock(message=MagicMock(content="fine"))]
        client = LLMClient(provider="openai", api_key="sk-test", max_retries=1, backoff=0)
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(side_effect=[RateLimited("slow down"), response])
        assert await client.complete("sys", "prompt") == "fine"
        assert client._client.chat.completions.create.await_count == 2

    @pytest.mark.asyncio
    async def test_openai_bad_request_not_retried(self):
        class BadRequest(Exception):
            status_code = 400

        client = LLMClient(provider="openai", api_key="sk-test", max_retries=3, backoff=0)
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(side_effect=BadRequest("nope"))
        with pytest.raises(ProviderError) as exc_info:
            await client.complete("sys", "prompt")
        assert exc_info.value.status == 400
        assert client._client.chat.completions.create.await_count == 1

    @pytest.mark.asyncio
    async def test_empty_completion(self):
        response = MagicMock()
        response.choices = [MagicMock(message=MagicMock(content=""))]
        client = LLMClient(provider="openai", api_key="sk-test", max_retries=0)
        client._client = MagicMock()
        client._client.chat.completions.create = AsyncMock(return_value=response)
        with pytest.raises(ProviderError, match="No response content"):
            await client.complete("sys", "prompt")
