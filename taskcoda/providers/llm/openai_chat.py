from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from taskcoda.core.config import get_settings
from taskcoda.core.errors import LLMConfigError, LLMProviderError
from taskcoda.providers.llm.base import LLMChunk

logger = logging.getLogger(__name__)

_DONE = "[DONE]"
_ALLOWED_ROLES = {"system", "user", "assistant"}


class OpenAIChatProvider:
    def __init__(self, request_id: str | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._request_id = request_id
        self._client = client
        self.model = self._settings.openai_chat_model

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Streams can outlive the read timeout of a single request.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_s, read=None))
        return self._client

    def _format_messages(self, messages: list[dict]) -> list[dict[str, str]]:
        # Forward only role/content; unknown roles are sent as user turns.
        formatted = []
        for msg in messages:
            role = msg.get("role", "user")
            formatted.append(
                {
                    "role": role if role in _ALLOWED_ROLES else "user",
                    "content": str(msg.get("content", "")),
                }
            )
        return formatted

    async def stream(self, messages: list[dict]) -> AsyncIterator[LLMChunk]:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise LLMConfigError("OPENAI_API_KEY is required for OpenAI chat")

        payload = {
            "model": self.model,
            "messages": self._format_messages(messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"

        logger.info("openai_stream_start request_id=%s model=%s", self._request_id, self.model)
        try:
            async with self._get_client().stream("POST", url, json=payload, headers=headers) as response:
                if response.status_code in {401, 403}:
                    raise LLMConfigError("OpenAI auth error: check OPENAI_API_KEY.")
                if response.status_code >= 400:
                    logger.warning(
                        "openai_stream_error request_id=%s status=%s", self._request_id, response.status_code
                    )
                    raise LLMProviderError(f"OpenAI chat error: {response.status_code}")

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == _DONE:
                        break
                    try:
                        event = json.loads(data)
                    except ValueError:
                        logger.warning("openai_stream_bad_event request_id=%s", self._request_id)
                        continue

                    for choice in event.get("choices") or []:
                        delta = (choice.get("delta") or {}).get("content")
                        if delta:
                            # Yield token deltas immediately to preserve streaming behavior.
                            yield LLMChunk(text=delta)
                    usage = event.get("usage")
                    if usage:
                        yield LLMChunk(total_tokens=int(usage.get("total_tokens") or 0))
        except httpx.HTTPError as exc:
            logger.warning("openai_stream_failed request_id=%s error=%s", self._request_id, type(exc).__name__)
            raise LLMProviderError("OpenAI chat request failed.") from exc
