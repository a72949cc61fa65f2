from __future__ import annotations

from typing import AsyncIterator

from taskcoda.providers.llm.base import LLMChunk


class FakeLLMProvider:
    model = "fake"

    def __init__(self, response: str = "This is a fake response.") -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response

    async def stream(self, messages: list[dict]) -> AsyncIterator[LLMChunk]:
        # Ignore messages to avoid variability; yield word tokens for streaming tests.
        _ = messages
        words = self._response.split()
        for index, token in enumerate(words):
            yield LLMChunk(text=token if index == len(words) - 1 else f"{token} ")
        yield LLMChunk(total_tokens=len(words))
