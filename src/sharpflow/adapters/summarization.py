"""Summarization capability: ordered messages -> condensed narrative."""

from typing import Protocol

from sharpflow.adapters.anthropic_base import AnthropicAdapter
from sharpflow.errors import TerminalPipelineFault

SUMMARIZATION_SYSTEM = """Summarize this conversation between a user and an AI sales assistant.
Keep: decisions made, search criteria, people and companies mentioned, open tasks.
Drop: greetings, repetition, formatting.
Write at most 150 words of plain prose."""


class SummarizationAdapter(Protocol):
    async def summarize(self, messages: list[dict[str, str]]) -> str: ...


class AnthropicSummarizationAdapter(AnthropicAdapter):
    async def summarize(self, messages: list[dict[str, str]]) -> str:
        transcript = "\n".join(f"{m['role']}: {m['content']}" for m in messages)
        summary = await self._complete(
            transcript,
            system=SUMMARIZATION_SYSTEM,
            max_tokens=500,
            operation="summarization",
        )
        if not summary:
            raise TerminalPipelineFault("Summarizer returned an empty answer")
        return summary
