"""AI invocation client: send a prompt to a chat-completion endpoint, return raw text."""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from gonogo.errors import ProviderError

log = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "deepseek": "deepseek-chat",
    "openai": "gpt-4-turbo",
    "openai_compatible": "gpt-4-turbo",
    "anthropic": "claude-haiku-4-5-20251001",
}
DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"
RETRYABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}


def _is_retryable(status: int | None) -> bool:
    return status is None or status in RETRYABLE_STATUSES


def _should_retry(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


class LLMClient:
    """Unified async LLM client supporting DeepSeek, OpenAI, and Anthropic.

    ``complete`` is bounded by ``timeout`` per attempt and retries retryable
    failures (connection errors, timeouts, 408/429/5xx) up to ``max_retries``
    times with exponential backoff.
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff: float | None = None,
        temperature: float = 0.2,
        max_tokens: int = 1000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "deepseek")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.timeout = timeout if timeout is not None else float(os.environ.get("LLM_TIMEOUT", "30"))
        self.max_retries = max_retries if max_retries is not None else int(os.environ.get("LLM_MAX_RETRIES", "2"))
        self.backoff = backoff if backoff is not None else float(os.environ.get("LLM_BACKOFF", "1.0"))
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._transport = transport
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider not in DEFAULT_MODELS:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        self.model = self.model or DEFAULT_MODELS[self.provider]
        if self.provider == "anthropic":
            import anthropic
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY"),
                max_retries=0,
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            kwargs: dict[str, Any] = {"max_retries": 0}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            self._base_url = (
                self._base_url or os.environ.get("DEEPSEEK_BASE_URL") or DEEPSEEK_BASE_URL
            ).rstrip("/")
            self._api_key = self._api_key or os.environ.get("DEEPSEEK_API_KEY", "")

    async def complete(self, system: str, prompt: str) -> str:
        """Return the model's raw text completion, raising ``ProviderError`` on failure."""
        retrying = AsyncRetrying(
            retry=retry_if_exception(_should_retry),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff, min=0),
            reraise=True,
            before_sleep=lambda rs: log.warning(
                "LLM call failed (%s), retry %d/%d in %.1fs",
                rs.outcome.exception(), rs.attempt_number, self.max_retries, rs.next_action.sleep,
            ),
        )
        async for attempt in retrying:
            with attempt:
                return await self._complete_bounded(system, prompt)

    async def _complete_bounded(self, system: str, prompt: str) -> str:
        try:
            return await asyncio.wait_for(self._complete_once(system, prompt), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"LLM call timed out after {self.timeout:.0f}s", retryable=True) from exc

    async def _complete_once(self, system: str, prompt: str) -> str:
        if self.provider == "deepseek":
            return await self._complete_http(system, prompt)
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    system=system,
                    messages=[{"role": "user", "content": prompt}],
                )
                text = response.content[0].text if response.content else ""
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": prompt},
                    ],
                )
                text = response.choices[0].message.content if response.choices else ""
        except ProviderError:
            raise
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            raise ProviderError(
                f"LLM API call failed: {exc}", status=status, retryable=_is_retryable(status),
            ) from exc
        if not text:
            raise ProviderError("No response content from LLM", retryable=False)
        return text

    async def _complete_http(self, system: str, prompt: str) -> str:
        """DeepSeek exposes an OpenAI-shaped REST endpoint; call it directly."""
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": 0.95,
        }
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
                resp = await http.post(f"{self._base_url}/chat/completions", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderError(f"LLM endpoint unreachable: {exc}", retryable=True) from exc

        if resp.status_code >= 400:
            message = resp.reason_phrase
            try:
                message = resp.json().get("error", {}).get("message") or message
            except (ValueError, AttributeError):
                pass
            raise ProviderError(
                f"LLM request failed ({resp.status_code}): {message}",
                status=resp.status_code, retryable=_is_retryable(resp.status_code),
            )
        try:
            text = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"Unexpected LLM response shape: {resp.text[:200]}") from exc
        if not text:
            raise ProviderError("No response content from LLM")
        return text
