"""Test doubles for the generation clients."""

from __future__ import annotations

from collections.abc import Sequence

from storyflow.images import ImageRequest
from storyflow.llm import BaseTextClient
from storyflow.models import ChatMessage


class StubText(BaseTextClient):
    """Return canned responses in order and record every call.

    An Exception in the response list is raised instead of returned. Calls
    past the end of the list get "".
    """

    def __init__(self, responses: Sequence[str | Exception] = ()) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str:
        self.calls.append({
            "messages": list(messages),
            "model": model,
            "max_tokens": max_tokens,
        })
        idx = len(self.calls) - 1
        if idx >= len(self.responses):
            return ""
        response = self.responses[idx]
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def prompt(self, index: int) -> str:
        """The new user message sent in call number index."""
        return self.calls[index]["messages"][-1].content


class StubImages:
    def __init__(self, result: str | Exception = "") -> None:
        self.result = result
        self.requests: list[ImageRequest] = []

    async def generate_image(self, request: ImageRequest) -> str:
        self.requests.append(request)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result
