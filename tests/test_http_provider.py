"""Tests for the HTTP answer provider."""

import asyncio
import json

import httpx
import pytest

from repochat.backends import get_answer_provider
from repochat.backends.http import HttpAnswerProvider
from repochat.provider import AnswerRequest, CancelToken, ProviderError

BODY = b'event: delta\ndata: {"delta": "hi"}\n\nevent: done\ndata: {}\n\n'


def _provider(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpAnswerProvider(url="http://provider.test/generate", client=client)


async def _read(provider, request, cancel=None):
    return [chunk async for chunk in provider.stream(request, cancel or CancelToken())]


class TestHttpAnswerProvider:
    @pytest.mark.asyncio
    async def test_streams_body_and_sends_payload(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["payload"] = json.loads(request.content)
            seen["accept"] = request.headers.get("accept")
            return httpx.Response(200, content=BODY, headers={"content-type": "text/event-stream"})

        provider = _provider(handler)
        request = AnswerRequest(
            question="what is widget?",
            repo="acme/widget",
            history=[{"role": "user", "content": "hi"}],
            visitor_id="v1",
        )
        chunks = await _read(provider, request)

        assert b"".join(chunks) == BODY
        assert seen["accept"] == "text/event-stream"
        assert seen["payload"] == {
            "question": "what is widget?",
            "repo": "acme/widget",
            "history": [{"role": "user", "content": "hi"}],
            "visitorId": "v1",
            "sessionId": None,
            "stream": True,
        }

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        provider = _provider(lambda request: httpx.Response(502, content=b"bad gateway"))
        with pytest.raises(ProviderError, match="502"):
            await _read(provider, AnswerRequest(question="q"))

    @pytest.mark.asyncio
    async def test_connection_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = _provider(handler)
        with pytest.raises(ProviderError):
            await _read(provider, AnswerRequest(question="q"))

    @pytest.mark.asyncio
    async def test_cancelled_before_read_yields_nothing(self):
        provider = _provider(lambda request: httpx.Response(200, content=BODY))
        cancel = CancelToken()
        cancel.cancel()
        assert await _read(provider, AnswerRequest(question="q"), cancel) == []

    @pytest.mark.asyncio
    async def test_cancel_aborts_stalled_read(self):
        closed = asyncio.Event()

        async def body():
            try:
                yield b'event: delta\ndata: {"delta": "hi"}\n\n'
                await asyncio.sleep(30)
                yield b"event: done\ndata: {}\n\n"
            finally:
                closed.set()

        provider = _provider(lambda request: httpx.Response(200, content=body()))
        cancel = CancelToken()
        asyncio.get_running_loop().call_later(0.1, cancel.cancel)

        chunks = await asyncio.wait_for(_read(provider, AnswerRequest(question="q"), cancel), timeout=2)

        assert chunks == [b'event: delta\ndata: {"delta": "hi"}\n\n']
        assert closed.is_set()

    def test_requires_url(self, monkeypatch):
        monkeypatch.delenv("REPOCHAT_PROVIDER_URL", raising=False)
        with pytest.raises(ValueError):
            HttpAnswerProvider()


class TestGetAnswerProvider:
    def test_unconfigured(self, monkeypatch):
        monkeypatch.delenv("REPOCHAT_PROVIDER_URL", raising=False)
        assert get_answer_provider() is None

    def test_configured(self, monkeypatch):
        monkeypatch.setenv("REPOCHAT_PROVIDER_URL", "http://provider.test/generate")
        monkeypatch.setenv("REPOCHAT_PROVIDER_TIMEOUT", "5")
        provider = get_answer_provider()
        assert isinstance(provider, HttpAnswerProvider)
        assert provider.url == "http://provider.test/generate"
        assert provider.timeout == 5.0
