from __future__ import annotations

import httpx
import pytest

from taskcoda.core.config import get_settings
from taskcoda.core.errors import LLMConfigError, LLMProviderError
from taskcoda.providers.llm.factory import get_llm_provider
from taskcoda.providers.llm.fake import FakeLLMProvider
from taskcoda.providers.llm.openai_chat import OpenAIChatProvider


async def _collect(provider, messages=None) -> tuple[str, int | None]:
    text = []
    total = None
    async for chunk in provider.stream(messages or [{"role": "user", "content": "hi"}]):
        text.append(chunk.text)
        if chunk.total_tokens is not None:
            total = chunk.total_tokens
    return "".join(text), total


async def test_fake_provider_streams_words_then_usage() -> None:
    text, total = await _collect(FakeLLMProvider("one two three"))
    assert text == "one two three"
    assert total == 3


def test_factory_selects_fake_provider() -> None:
    assert isinstance(get_llm_provider(), FakeLLMProvider)


@pytest.fixture
def openai_key(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    get_settings.cache_clear()


async def test_openai_stream_parses_sse_deltas(openai_key) -> None:
    body = (
        'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
        'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n'
        'data: {"choices":[],"usage":{"total_tokens":12}}\n\n'
        "data: [DONE]\n\n"
    )
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})

    provider = OpenAIChatProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    text, total = await _collect(provider)
    assert text == "Hello"
    assert total == 12
    assert seen[0].url.path.endswith("/chat/completions")
    assert seen[0].headers["Authorization"] == "Bearer sk-test"


async def test_openai_auth_failure_is_config_error(openai_key) -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(401)))
    with pytest.raises(LLMConfigError):
        await _collect(OpenAIChatProvider(client=client))


async def test_openai_server_error_is_provider_error(openai_key) -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    with pytest.raises(LLMProviderError):
        await _collect(OpenAIChatProvider(client=client))


async def test_openai_requires_api_key() -> None:
    with pytest.raises(LLMConfigError):
        await _collect(OpenAIChatProvider())
