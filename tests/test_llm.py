"""Tests for storyflow.llm: HttpTextClient and EchoTextClient."""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from storyflow.errors import ConfigError, ProviderFailure, ProviderTimeout
from storyflow.llm import EchoTextClient, HttpTextClient, build_messages
from storyflow.models import ChatMessage


def _msgs(*pairs: tuple[str, str]) -> list[ChatMessage]:
    return [ChatMessage(role=role, content=content) for role, content in pairs]


def _mock_response(body, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


def _completion(text: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": text}}]}


@pytest.fixture(autouse=True)
def no_backoff():
    with patch("storyflow.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


# ---------------------------------------------------------------------------
# build_messages
# ---------------------------------------------------------------------------

class TestBuildMessages:
    def test_order_system_history_user(self) -> None:
        history = _msgs(("user", "hi"), ("assistant", "hello"))
        messages = build_messages(history, "next", system_prompt="be brief")
        assert [(m.role, m.content) for m in messages] == [
            ("system", "be brief"),
            ("user", "hi"),
            ("assistant", "hello"),
            ("user", "next"),
        ]

    def test_no_system_prompt(self) -> None:
        messages = build_messages([], "only")
        assert [(m.role, m.content) for m in messages] == [("user", "only")]


# ---------------------------------------------------------------------------
# EchoTextClient
# ---------------------------------------------------------------------------

class TestEchoTextClient:
    async def test_returns_last_user_message(self) -> None:
        llm = EchoTextClient()
        result = await llm.generate(_msgs(("user", "first"), ("assistant", "x"), ("user", "second")))
        assert result == "second"

    async def test_generate_with_history(self) -> None:
        llm = EchoTextClient()
        assert await llm.generate_with_history(_msgs(("user", "old")), "new") == "new"

    async def test_no_user_message(self) -> None:
        assert await EchoTextClient().generate(_msgs(("system", "x"))) == ""


# ---------------------------------------------------------------------------
# HttpTextClient
# ---------------------------------------------------------------------------

class TestHttpTextClient:
    @pytest.fixture
    def llm(self) -> HttpTextClient:
        return HttpTextClient(
            api_key="secret",
            base_url="http://localhost:8080/v1",
            model="mistral-7b",
            retries=3,
        )

    async def test_happy_path(self, llm: HttpTextClient) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_completion("The gate creaks.")))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm.generate(_msgs(("user", "Describe the gate.")))
        assert result == "The gate creaks."

    async def test_posts_to_chat_completions(self, llm: HttpTextClient) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_completion("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.generate(_msgs(("user", "prompt")))
        url = mock_post.call_args[0][0]
        assert url == "http://localhost:8080/v1/chat/completions"

    async def test_sends_messages_and_sampling(self, llm: HttpTextClient) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_completion("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.generate(
                _msgs(("system", "sys"), ("user", "hi")),
                max_tokens=2048,
                temperature=0.3,
            )
        body = mock_post.call_args.kwargs["json"]
        assert body["model"] == "mistral-7b"
        assert body["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ]
        assert body["max_tokens"] == 2048
        assert body["temperature"] == 0.3

    async def test_model_override(self, llm: HttpTextClient) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_completion("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.generate(_msgs(("user", "x")), model="other")
        assert mock_post.call_args.kwargs["json"]["model"] == "other"

    async def test_bearer_token_sent(self, llm: HttpTextClient) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_completion("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.generate(_msgs(("user", "x")))
        headers = mock_post.call_args.kwargs["headers"]
        assert headers.get("Authorization") == "Bearer secret"

    async def test_trailing_slash_stripped_from_url(self) -> None:
        llm = HttpTextClient(api_key="k", base_url="http://localhost:8080/v1/")
        mock_post = AsyncMock(return_value=_mock_response(_completion("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.generate(_msgs(("user", "x")))
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/chat/completions"

    async def test_generate_with_history_appends_user_message(self, llm: HttpTextClient) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_completion("ok")))
        history = _msgs(("system", "narrator"), ("user", "a"), ("assistant", "b"))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.generate_with_history(history, "c", system_prompt="extra")
        sent = mock_post.call_args.kwargs["json"]["messages"]
        assert [m["content"] for m in sent] == ["extra", "narrator", "a", "b", "c"]

    async def test_missing_api_key_raises_on_first_use(self) -> None:
        llm = HttpTextClient(api_key="")
        mock_post = AsyncMock()
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
                await llm.generate(_msgs(("user", "x")))
        mock_post.assert_not_called()

    async def test_connect_error_retried_then_raised(self, llm: HttpTextClient, no_backoff) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ProviderFailure, match="Cannot connect"):
                await llm.generate(_msgs(("user", "x")))
        assert mock_post.await_count == 3
        assert no_backoff.await_count == 2

    async def test_timeout_raises_provider_timeout(self, llm: HttpTextClient) -> None:
        mock_post = AsyncMock(side_effect=httpx.TimeoutException("timeout"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ProviderTimeout, match="timed out"):
                await llm.generate(_msgs(("user", "x")))
        assert mock_post.await_count == 3

    async def test_server_error_retried_until_success(self, llm: HttpTextClient) -> None:
        mock_post = AsyncMock(side_effect=[
            _mock_response({}, status=503),
            _mock_response(_completion("recovered")),
        ])
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm.generate(_msgs(("user", "x")))
        assert result == "recovered"
        assert mock_post.await_count == 2

    async def test_client_error_not_retried(self, llm: HttpTextClient) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=401))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ProviderFailure, match="HTTP 401"):
                await llm.generate(_msgs(("user", "x")))
        assert mock_post.await_count == 1

    async def test_rate_limit_is_retried(self, llm: HttpTextClient) -> None:
        mock_post = AsyncMock(side_effect=[
            _mock_response({}, status=429),
            _mock_response(_completion("ok")),
        ])
        with patch("httpx.AsyncClient.post", mock_post):
            assert await llm.generate(_msgs(("user", "x"))) == "ok"

    @pytest.mark.parametrize("body", [
        {"unexpected": "format"},
        {"choices": []},
        {"choices": [{"message": {}}]},
        {"choices": [{"message": {"content": None}}]},
        ["not", "a", "dict"],
    ])
    async def test_malformed_response_is_empty_text(self, llm: HttpTextClient, body) -> None:
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            result = await llm.generate(_msgs(("user", "x")))
        assert result == ""
        assert mock_post.await_count == 1

    async def test_non_json_body_is_empty_text(self, llm: HttpTextClient) -> None:
        resp = _mock_response(None)
        resp.json.side_effect = ValueError("not json")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            assert await llm.generate(_msgs(("user", "x"))) == ""
