"""
Unit tests for LLM provider factory and the chat completions provider.

WHAT: Test provider selection, ping, generation, retries and error mapping
WHY: Ensure the agent's only network dependency fails in predictable ways
HOW: Mock HTTP with respx, adjust settings with monkeypatch
"""

import httpx
import pytest
import respx

from haggle.core.config import settings
from haggle.llm.chat_completions import (
    ChatCompletionsProvider,
    build_lm_studio_provider,
    build_openrouter_provider,
)
from haggle.llm.provider_factory import get_provider
from haggle.llm.types import (
    ProviderDisabledError,
    ProviderResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)

BASE_URL = "http://llm.test/v1"

MESSAGES = [{"role": "user", "content": "Hello"}]

COMPLETION = {
    "choices": [{"message": {"role": "assistant", "content": "Hi there"}}],
    "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
    "model": "served-model",
}


@pytest.mark.unit
@pytest.mark.agent
class TestProviderFactory:
    """Test provider factory selection logic."""

    def test_factory_returns_lm_studio(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_PROVIDER", "lm_studio")
        provider = get_provider()
        assert isinstance(provider, ChatCompletionsProvider)
        assert provider.name == "LM Studio"

    def test_factory_returns_openrouter(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_PROVIDER", "openrouter")
        monkeypatch.setattr(settings, "LLM_ENABLE_OPENROUTER", True)
        monkeypatch.setattr(settings, "OPENROUTER_API_KEY", "test-key")

        provider = get_provider()
        assert provider.name == "OpenRouter"
        assert provider.client.headers["Authorization"] == "Bearer test-key"

    def test_factory_raises_on_unknown_provider(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_PROVIDER", "unknown_provider")
        with pytest.raises(ValueError, match="Unknown LLM provider"):
            get_provider()

    def test_factory_returns_singleton(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_PROVIDER", "lm_studio")
        assert get_provider() is get_provider()

    def test_openrouter_enabled_without_key(self, monkeypatch):
        monkeypatch.setattr(settings, "LLM_ENABLE_OPENROUTER", True)
        monkeypatch.setattr(settings, "OPENROUTER_API_KEY", "  ")
        with pytest.raises(ProviderDisabledError):
            build_openrouter_provider()

    def test_lm_studio_uses_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "LM_STUDIO_BASE_URL", "http://studio.test/v1/")
        monkeypatch.setattr(settings, "LM_STUDIO_DEFAULT_MODEL", "tiny-model")
        provider = build_lm_studio_provider()
        assert provider.base_url == "http://studio.test/v1"
        assert provider.default_model == "tiny-model"


@pytest.mark.unit
@pytest.mark.agent
class TestChatCompletionsProvider:
    """Test the OpenAI-compatible provider."""

    @pytest.fixture
    def provider(self):
        return ChatCompletionsProvider(
            name="Test",
            base_url=BASE_URL,
            default_model="test-model",
            timeout=5,
            max_retries=3,
            retry_delay=0,
        )

    @pytest.mark.asyncio
    @respx.mock
    async def test_ping_success(self, provider):
        respx.get(f"{BASE_URL}/models").mock(
            return_value=httpx.Response(200, json={"data": [{"id": "model-1"}, {"id": "model-2"}]})
        )
        status = await provider.ping()
        assert status.available is True
        assert status.models == ["model-1", "model-2"]
        assert status.error is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_ping_connection_refused(self, provider):
        respx.get(f"{BASE_URL}/models").mock(side_effect=httpx.ConnectError("refused"))
        status = await provider.ping()
        assert status.available is False
        assert status.error == "Connection refused"

    @pytest.mark.asyncio
    async def test_ping_disabled(self):
        provider = ChatCompletionsProvider("Off", BASE_URL, "m", timeout=5, enabled=False)
        status = await provider.ping()
        assert status.available is False
        assert status.error == "Provider disabled"

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_success(self, provider):
        route = respx.post(f"{BASE_URL}/chat/completions").mock(
            return_value=httpx.Response(200, json=COMPLETION)
        )
        result = await provider.generate(MESSAGES, temperature=0.2, max_tokens=64)

        assert result.text == "Hi there"
        assert result.model == "served-model"
        assert result.usage["total_tokens"] == 5
        sent = route.calls.last.request
        assert b'"model":"test-model"' in sent.content.replace(b" ", b"")
        assert b'"stream":false' in sent.content.replace(b" ", b"")

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_retries_server_errors(self, provider):
        route = respx.post(f"{BASE_URL}/chat/completions").mock(side_effect=[
            httpx.Response(503),
            httpx.Response(200, json=COMPLETION),
        ])
        result = await provider.generate(MESSAGES, temperature=0.2, max_tokens=64)
        assert result.text == "Hi there"
        assert route.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_client_error_not_retried(self, provider):
        route = respx.post(f"{BASE_URL}/chat/completions").mock(
            return_value=httpx.Response(400, json={"error": "bad request"})
        )
        with pytest.raises(ProviderResponseError, match="HTTP 400"):
            await provider.generate(MESSAGES, temperature=0.2, max_tokens=64)
        assert route.call_count == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_timeout_after_retries(self, provider):
        route = respx.post(f"{BASE_URL}/chat/completions").mock(side_effect=httpx.ReadTimeout("slow"))
        with pytest.raises(ProviderTimeoutError):
            await provider.generate(MESSAGES, temperature=0.2, max_tokens=64)
        assert route.call_count == 3

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_unreachable(self, provider):
        respx.post(f"{BASE_URL}/chat/completions").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(ProviderUnavailableError):
            await provider.generate(MESSAGES, temperature=0.2, max_tokens=64)

    @pytest.mark.asyncio
    @respx.mock
    async def test_generate_malformed_body(self, provider):
        respx.post(f"{BASE_URL}/chat/completions").mock(
            return_value=httpx.Response(200, json={"choices": []})
        )
        with pytest.raises(ProviderResponseError, match="Invalid response format"):
            await provider.generate(MESSAGES, temperature=0.2, max_tokens=64)

    @pytest.mark.asyncio
    async def test_generate_disabled(self):
        provider = ChatCompletionsProvider("Off", BASE_URL, "m", timeout=5, enabled=False)
        with pytest.raises(ProviderDisabledError):
            await provider.generate(MESSAGES, temperature=0.2, max_tokens=64)
