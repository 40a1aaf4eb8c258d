"""
OpenAI-compatible chat completions provider.

WHAT: Non-streaming chat completions against LM Studio or OpenRouter
WHY: Both backends speak the same wire format; only URL, model and headers differ
HOW: httpx async client, retries with exponential backoff on timeouts,
     connection errors and 5xx responses; 4xx fail immediately
"""

import asyncio
import json
from typing import Optional

import httpx

from .types import (
    ChatMessage,
    LLMResult,
    ProviderStatus,
    ProviderDisabledError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ProviderResponseError,
)
from ..core.config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ChatCompletionsProvider:
    """LLM provider for any `/chat/completions` endpoint."""

    def __init__(
        self,
        name: str,
        base_url: str,
        default_model: str,
        timeout: float,
        headers: Optional[dict] = None,
        enabled: bool = True,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.timeout = timeout
        self.enabled = enabled
        self.max_retries = max(1, settings.LLM_MAX_RETRIES if max_retries is None else max_retries)
        self.retry_delay = settings.LLM_RETRY_DELAY if retry_delay is None else retry_delay

        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(5.0, read=timeout),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            headers=headers or {},
        )
        logger.info(f"{name} provider initialized (enabled={enabled}, model={default_model})")

    def _check_enabled(self):
        """Raise exception if provider is disabled."""
        if not self.enabled:
            raise ProviderDisabledError(f"{self.name} provider is disabled")

    async def ping(self) -> ProviderStatus:
        """
        Check availability by fetching the models list.

        Never raises; failures are reported in the returned status.
        """
        if not self.enabled:
            return ProviderStatus(available=False, base_url=self.base_url, error="Provider disabled")

        try:
            response = await self.client.get(f"{self.base_url}/models", timeout=10.0)
            response.raise_for_status()
            data = response.json()
            models = [model.get("id") for model in data.get("data", [])]
            logger.info(f"{self.name} ping success ({len(models)} models available)")
            return ProviderStatus(
                available=True,
                base_url=self.base_url,
                models=models[:10] if models else None,
                error=None
            )
        except httpx.TimeoutException:
            logger.warning(f"{self.name} ping timeout")
            return ProviderStatus(available=False, base_url=self.base_url, error="Request timed out")
        except httpx.ConnectError:
            logger.warning(f"{self.name} not reachable")
            return ProviderStatus(available=False, base_url=self.base_url, error="Connection refused")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{self.name} ping failed: {e}")
            return ProviderStatus(available=False, base_url=self.base_url, error=str(e))

    async def generate(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
        stop: list[str] | None = None,
        model: str | None = None
    ) -> LLMResult:
        """
        Generate a complete response.

        Raises:
            ProviderDisabledError: Provider switched off in configuration
            ProviderTimeoutError: Request timed out on every attempt
            ProviderUnavailableError: Backend not reachable
            ProviderResponseError: Error status or malformed body
        """
        self._check_enabled()

        model_to_use = model or self.default_model
        payload = {
            "model": model_to_use,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": False
        }
        if stop:
            payload["stop"] = stop

        for attempt in range(self.max_retries):
            is_last = attempt == self.max_retries - 1
            try:
                response = await self.client.post(f"{self.base_url}/chat/completions", json=payload)
                response.raise_for_status()
                data = response.json()

                text = data["choices"][0]["message"]["content"]
                usage = data.get("usage") or {}
                response_model = data.get("model", model_to_use)

                logger.info(
                    f"{self.name} generate success "
                    f"(model: {response_model}, tokens: {usage.get('total_tokens', 'unknown')})"
                )
                return LLMResult(text=text or "", usage=usage, model=response_model)

            except httpx.TimeoutException as e:
                logger.warning(f"{self.name} timeout (attempt {attempt + 1}/{self.max_retries})")
                if is_last:
                    raise ProviderTimeoutError(f"Request timed out after {self.max_retries} attempts") from e

            except httpx.ConnectError as e:
                logger.error(f"{self.name} connection refused (attempt {attempt + 1}/{self.max_retries})")
                if is_last:
                    raise ProviderUnavailableError(f"{self.name} is not reachable") from e

            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise ProviderResponseError(f"HTTP {e.response.status_code}: {e.response.text}") from e
                logger.error(
                    f"{self.name} server error {e.response.status_code} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                if is_last:
                    raise ProviderResponseError(f"Server error: {e.response.status_code}") from e

            except (KeyError, IndexError, TypeError, json.JSONDecodeError) as e:
                logger.error(f"Invalid response from {self.name}: {e}")
                raise ProviderResponseError(f"Invalid response format: {e}") from e

            await asyncio.sleep(self.retry_delay * (2 ** attempt))

        raise ProviderResponseError("No attempts were made")

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def build_lm_studio_provider() -> ChatCompletionsProvider:
    """Local inference through LM Studio."""
    return ChatCompletionsProvider(
        name="LM Studio",
        base_url=settings.LM_STUDIO_BASE_URL,
        default_model=settings.LM_STUDIO_DEFAULT_MODEL,
        timeout=settings.LM_STUDIO_TIMEOUT,
    )


def build_openrouter_provider() -> ChatCompletionsProvider:
    """
    Cloud inference through OpenRouter.

    Raises ProviderDisabledError when enabled without an API key.
    """
    enabled = settings.LLM_ENABLE_OPENROUTER
    api_key = settings.OPENROUTER_API_KEY
    if enabled and not api_key.strip():
        logger.error("OpenRouter enabled but OPENROUTER_API_KEY is not set or empty!")
        raise ProviderDisabledError("OpenRouter is enabled but OPENROUTER_API_KEY is not set or empty")

    headers = {
        "HTTP-Referer": settings.APP_NAME,
        "X-Title": settings.APP_NAME,
    }
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    return ChatCompletionsProvider(
        name="OpenRouter",
        base_url=settings.OPENROUTER_BASE_URL,
        default_model=settings.OPENROUTER_DEFAULT_MODEL,
        timeout=settings.OPENROUTER_TIMEOUT,
        headers=headers,
        enabled=enabled,
    )
