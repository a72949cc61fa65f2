from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Protocol


@dataclass(frozen=True)
class LLMChunk:
    # Text deltas stream first; the final chunk may carry token usage only.
    text: str = ""
    total_tokens: int | None = None


class LLMProvider(Protocol):
    model: str

    def stream(self, messages: list[dict]) -> AsyncIterator[LLMChunk]:
        ...
