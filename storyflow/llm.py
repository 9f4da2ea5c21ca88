"""Text generation client — HTTP connection to a chat-completion backend.

Narrative flows receive a TextGenerator matching the protocol:

    async def generate(self, messages, *, model=None, max_tokens=1000,
                       temperature=0.7) -> str: ...
    async def generate_with_history(self, history, new_user_message, *,
                                    system_prompt=None, ...) -> str: ...

Two implementations are provided:

    HttpTextClient  — OpenAI-compatible /chat/completions over httpx, with
                      bounded retry on transient failures.
    EchoTextClient  — returns the last user message unchanged. Useful for
                      smoke-testing flow wiring without a running model.

Production code builds an HttpTextClient from Settings at startup and injects
it into the narrative flows. Tests use StubText (tests/helpers.py) instead.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import httpx

from storyflow.errors import ConfigError, ProviderFailure, ProviderTimeout
from storyflow.models import ChatMessage
from storyflow.retry import retry

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "deepseek-r1-distill-llama-8b"
DEFAULT_BASE_URL = "https://api.openai.com/v1"


# ---------------------------------------------------------------------------
# Protocol — every text generator must match these signatures
# ---------------------------------------------------------------------------

class TextGenerator(Protocol):
    async def generate(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str: ...

    async def generate_with_history(
        self,
        history: Sequence[ChatMessage],
        new_user_message: str,
        *,
        system_prompt: str | None = None,
        model: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str: ...


def build_messages(
    history: Sequence[ChatMessage],
    new_user_message: str,
    system_prompt: str | None = None,
) -> list[ChatMessage]:
    """[system prompt] + history + one new user message, in that order."""
    messages: list[ChatMessage] = []
    if system_prompt:
        messages.append(ChatMessage(role="system", content=system_prompt))
    messages.extend(history)
    messages.append(ChatMessage(role="user", content=new_user_message))
    return messages


class BaseTextClient:
    """Supplies generate_with_history on top of a subclass's generate()."""

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str:
        raise NotImplementedError

    async def generate_with_history(
        self,
        history: Sequence[ChatMessage],
        new_user_message: str,
        *,
        system_prompt: str | None = None,
        model: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str:
        return await self.generate(
            build_messages(history, new_user_message, system_prompt),
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
        )


# ---------------------------------------------------------------------------
# HttpTextClient — connects to a real backend
# ---------------------------------------------------------------------------

class HttpTextClient(BaseTextClient):
    """Async client for OpenAI-compatible chat-completion backends.

    POST {base_url}/chat/completions
        {"model": ..., "messages": [...], "max_tokens": ..., "temperature": ...}
    Response: {"choices": [{"message": {"content": "..."}}]}

    Args:
        api_key:     Bearer token. Required, but only checked on first use.
        base_url:    API root, e.g. "https://api.openai.com/v1" or a
                     self-hosted compatible endpoint.
        model:       Default model identifier.
        timeout_ms:  Per-request timeout in milliseconds. Defaults to 120000.
        retries:     Attempts per generation, including the first one.
        retry_delay: Base backoff in seconds between attempts.
    """

    def __init__(
        self,
        api_key: str = "",
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout_ms: int = 120_000,
        retries: int = 3,
        retry_delay: float = 2.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._model = model
        self._timeout = timeout_ms / 1000
        self._retries = retries
        self._retry_delay = retry_delay

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ConfigError("OPENAI_API_KEY is required for text generation")
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    def _parse_response(self, resp: httpx.Response) -> str:
        """Extract the completion text; a malformed body counts as empty text."""
        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            logger.warning("Unexpected response format from text backend, treating as empty")
            return ""
        return content if isinstance(content, str) else ""

    async def _post(self, url: str, body: dict, headers: dict[str, str]) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Text backend timed out after {self._timeout}s") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ProviderFailure(
                f"Text backend returned HTTP {status}",
                transient=status >= 500 or status == 429,
            ) from e
        except httpx.TransportError as e:
            raise ProviderFailure(
                f"Cannot connect to text backend at {self._base_url}", transient=True,
            ) from e
        return resp

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str:
        headers = self._headers()
        url = f"{self._base_url}/chat/completions"
        body = {
            "model": model or self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        logger.debug(
            "text generate model=%s messages=%d max_tokens=%d",
            body["model"], len(messages), max_tokens,
        )
        resp = await retry(
            lambda: self._post(url, body, headers),
            attempts=self._retries,
            delay=self._retry_delay,
            label="text generation",
        )
        text = self._parse_response(resp)
        logger.debug("text response len=%d", len(text))
        return text


# ---------------------------------------------------------------------------
# EchoTextClient — no network; useful for wiring smoke tests
# ---------------------------------------------------------------------------

class EchoTextClient(BaseTextClient):
    """Returns the last user message as-is. No network calls.

    The output won't be valid JSON for the structured flows, so every
    narrative flow will answer with its fallback payload.
    """

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str:
        for message in reversed(messages):
            if message.role == "user":
                return message.content
        return ""
