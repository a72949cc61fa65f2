from __future__ import annotations

from taskcoda.core.config import get_settings
from taskcoda.providers.llm.base import LLMProvider
from taskcoda.providers.llm.fake import FakeLLMProvider
from taskcoda.providers.llm.openai_chat import OpenAIChatProvider


def get_llm_provider(request_id: str | None = None) -> LLMProvider:
    settings = get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeLLMProvider()
    return OpenAIChatProvider(request_id=request_id)
