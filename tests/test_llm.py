"""Tests for sosheiq.llm: HttpLLM and the shared transport helpers."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from sosheiq.errors import RateLimited, ServiceTimeout, ServiceUnavailable, Unauthorized
from sosheiq.llm import HttpLLM, auth_headers, post_json


def _reply(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    return resp


def _post(*args, **kwargs) -> AsyncMock:
    return AsyncMock(*args, **kwargs)


class TestTransport:
    def test_auth_headers(self) -> None:
        assert "Authorization" not in auth_headers("")
        assert auth_headers("secret")["Authorization"] == "Bearer secret"

    async def test_connect_error(self) -> None:
        with patch("httpx.AsyncClient.post", _post(side_effect=httpx.ConnectError("refused"))):
            with pytest.raises(ServiceUnavailable, match="Cannot connect to Test backend"):
                await post_json("http://x/y", {}, backend="Test backend")

    async def test_timeout(self) -> None:
        with patch("httpx.AsyncClient.post", _post(side_effect=httpx.ReadTimeout("slow"))):
            with pytest.raises(ServiceTimeout, match="timed out after 5"):
                await post_json("http://x/y", {}, backend="Test backend", timeout=5)

    async def test_other_transport_error(self) -> None:
        with patch("httpx.AsyncClient.post", _post(side_effect=httpx.RemoteProtocolError("eof"))):
            with pytest.raises(ServiceUnavailable, match="transport error"):
                await post_json("http://x/y", {}, backend="Test backend")

    @pytest.mark.parametrize("status,error", [
        (429, RateLimited),
        (401, Unauthorized),
        (403, Unauthorized),
        (500, ServiceUnavailable),
        (503, ServiceUnavailable),
    ])
    async def test_status_classified(self, status: int, error: type) -> None:
        with patch("httpx.AsyncClient.post", _post(return_value=_reply({}, status=status))):
            with pytest.raises(error, match=f"HTTP {status}"):
                await post_json("http://x/y", {}, backend="Test backend")

    async def test_non_json_body(self) -> None:
        resp = _reply({})
        resp.json.side_effect = ValueError("not json")
        with patch("httpx.AsyncClient.post", _post(return_value=resp)):
            with pytest.raises(ServiceUnavailable, match="non-JSON"):
                await post_json("http://x/y", {}, backend="Test backend")


class TestKoboldCpp:
    async def test_returns_first_completion(self) -> None:
        llm = HttpLLM("http://localhost:5001/")
        mock_post = _post(return_value=_reply({"results": [{"text": '{"aiBodyLanguage": "Smiles."}'}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            text = await llm("turn", "my prompt")
        assert text == '{"aiBodyLanguage": "Smiles."}'
        assert mock_post.call_args[0][0] == "http://localhost:5001/api/v1/generate"
        assert mock_post.call_args.kwargs["json"] == {"prompt": "my prompt"}
        assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    async def test_generation_parameters(self) -> None:
        llm = HttpLLM("http://localhost:5001", api_key="secret", max_tokens=800, temperature=0.7)
        assert llm.payload("p") == {"prompt": "p", "max_length": 800, "temperature": 0.7}
        mock_post = _post(return_value=_reply({"results": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm("start", "p")
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer secret"

    async def test_unexpected_body(self) -> None:
        with patch("httpx.AsyncClient.post", _post(return_value=_reply({"unexpected": "format"}))):
            with pytest.raises(ServiceUnavailable, match="Unexpected response format from KoboldCpp"):
                await HttpLLM("http://localhost:5001")("turn", "prompt")


class TestOpenAI:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM("http://localhost:8080", provider_format="openai", model="mistral-7b", max_tokens=512)

    async def test_posts_to_completions_with_model(self, llm: HttpLLM) -> None:
        mock_post = _post(return_value=_reply({"choices": [{"text": "ok"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            assert await llm("analysis", "prompt") == "ok"
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/completions"
        assert mock_post.call_args.kwargs["json"] == {"prompt": "prompt", "model": "mistral-7b", "max_tokens": 512}

    async def test_kobold_shaped_body_rejected(self, llm: HttpLLM) -> None:
        body = {"results": [{"text": "kobold format accidentally"}]}
        with patch("httpx.AsyncClient.post", _post(return_value=_reply(body))):
            with pytest.raises(ServiceUnavailable, match="Unexpected response format"):
                await llm("turn", "prompt")


def test_unknown_format_rejected() -> None:
    with pytest.raises(ValueError):
        HttpLLM("http://localhost", provider_format="gemini")
