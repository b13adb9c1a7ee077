import json

import httpx
import pytest

from llmgate.catalog import DEFAULT_CATALOG, ModelId
from llmgate.errors import ProviderError
from llmgate.messages import ChatMessage
from llmgate.providers.gamma import GammaProvider

GAMMA = DEFAULT_CATALOG.get(ModelId.GAMMA)


def _provider(handler, api_key="gamma-test"):
    return GammaProvider(
        {"name": "gamma", "endpoint": "https://api.gamma.test/v1", "api_key": api_key},
        transport=httpx.MockTransport(handler),
    )


async def _collect(gen):
    return [chunk async for chunk in gen]


@pytest.mark.asyncio
async def test_content_is_rechunked():
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        captured["path"] = request.url.path
        return httpx.Response(200, json={"content": "Your deck is ready: https://gamma.app/d/x"})

    provider = _provider(handler)
    msgs = [ChatMessage("user", "old"), ChatMessage("assistant", "?"), ChatMessage("user", "Q3 slides")]
    chunks = await _collect(provider.stream(GAMMA, msgs))

    text_chunks = [c.content for c in chunks if not c.done]
    assert all(len(t) <= 10 for t in text_chunks)
    assert "".join(text_chunks) == "Your deck is ready: https://gamma.app/d/x"
    assert chunks[-1].done and chunks[-1].usage is None
    assert captured["body"] == {"prompt": "Q3 slides", "type": "presentation"}
    assert captured["path"] == "/v1/generate"


@pytest.mark.asyncio
async def test_missing_content_uses_fallback_text():
    provider = _provider(lambda r: httpx.Response(200, json={}))
    chunks = await _collect(provider.stream(GAMMA, [ChatMessage("user", "slides")]))
    assert "presentation" in "".join(c.content for c in chunks)


@pytest.mark.asyncio
async def test_http_error_raises_instead_of_error_text():
    provider = _provider(lambda r: httpx.Response(500))
    with pytest.raises(ProviderError, match="500"):
        await _collect(provider.stream(GAMMA, [ChatMessage("user", "slides")]))


@pytest.mark.asyncio
async def test_requires_a_user_message():
    provider = _provider(lambda r: httpx.Response(200, json={}))
    with pytest.raises(ProviderError, match="no user message"):
        await _collect(provider.stream(GAMMA, [ChatMessage("system", "x")]))


def test_unavailable_without_key():
    assert not _provider(lambda r: httpx.Response(200), api_key=None).is_available()
