"""Classification capability: utterance + short context -> intent JSON."""

from typing import Any, Protocol

from sharpflow.adapters.anthropic_base import AnthropicAdapter
from sharpflow.adapters.base import parse_json_object

CLASSIFICATION_SYSTEM = """You route requests for a sales prospecting assistant.
Classify the user's request into exactly one intent:
- lead_generation: find or generate new leads.
  parameters: locations, businesses, jobTitles (lists of strings)
- profile_research: research a person or LinkedIn profile. parameters: linkedinUrl
- message_campaign: send outreach messages. parameters: campaignId, leadIds
- inbox_monitoring: check or triage an inbox. parameters: mailbox
- general_query: anything else. parameters: {}

Reply with ONLY a JSON object: {"type": "...", "confidence": 0.0-1.0, "parameters": {...}}
Leave out parameters you cannot find in the request or conversation."""


class ClassificationAdapter(Protocol):
    async def classify(self, utterance: str, context: list[dict[str, str]]) -> dict[str, Any]: ...


class AnthropicClassificationAdapter(AnthropicAdapter):
    """Asks a small model for a structured intent.

    Returns the parsed JSON object as-is; shape validation belongs to the
    router, which falls back to keyword extraction on anything unusable.
    """

    async def classify(self, utterance: str, context: list[dict[str, str]]) -> dict[str, Any]:
        parts = []
        if context:
            transcript = "\n".join(f"{m['role']}: {m['content'][:300]}" for m in context)
            parts.append(f"Recent conversation:\n{transcript}")
        parts.append(f"Request: {utterance}")

        text = await self._complete(
            "\n\n".join(parts),
            system=CLASSIFICATION_SYSTEM,
            max_tokens=400,
            operation="classification",
        )
        return parse_json_object(text)
