"""The two intent classifiers behind the router.

``AdapterClassifier`` asks the external classification capability and
validates what comes back; ``KeywordClassifier`` is deterministic and never
fails. Both satisfy ``Classifier`` so either can be tested or swapped alone.
"""

from typing import Any, Protocol

from sharpflow.adapters.classification import ClassificationAdapter
from sharpflow.errors import ClassifierUnavailable
from sharpflow.jobs.schemas import PAYLOAD_SCHEMAS
from sharpflow.routing import keywords
from sharpflow.routing.intents import (
    AMBIGUOUS_CONFIDENCE,
    FALLBACK_CONFIDENCE,
    IntentResult,
    IntentSource,
    IntentType,
)


class Classifier(Protocol):
    async def classify(self, utterance: str, context: list[dict[str, str]]) -> IntentResult: ...


class KeywordClassifier:
    """Dictionary and pattern based classification.

    Worker keyword sets are checked in the fixed order discovery, research,
    messaging; the first match wins. When more than one set matched the
    result carries AMBIGUOUS_CONFIDENCE instead of FALLBACK_CONFIDENCE.
    """

    async def classify(self, utterance: str, context: list[dict[str, str]]) -> IntentResult:
        return self.extract(utterance)

    def extract(self, utterance: str) -> IntentResult:
        text = utterance.strip()
        if not text:
            return IntentResult(
                type=IntentType.GENERAL_QUERY, confidence=0.0, source=IntentSource.EMPTY
            )

        matched: list[str] = []
        if keywords.contains_any(text, keywords.DISCOVERY_TRIGGERS):
            matched.append("discovery")
        if keywords.contains_any(text, keywords.RESEARCH_TRIGGERS):
            matched.append("research")
        if keywords.contains_any(text, keywords.MESSAGING_TRIGGERS):
            matched.append("messaging")

        if not matched:
            return IntentResult(
                type=IntentType.GENERAL_QUERY,
                confidence=FALLBACK_CONFIDENCE,
                source=IntentSource.FALLBACK,
            )

        worker = matched[0]
        if worker == "discovery":
            intent = IntentType.LEAD_GENERATION
        elif worker == "research":
            intent = IntentType.PROFILE_RESEARCH
        elif keywords.contains_any(text, keywords.INBOX_TRIGGERS) or (
            keywords.extract_mailbox(text) and not keywords.extract_campaign_id(text)
        ):
            intent = IntentType.INBOX_MONITORING
        else:
            intent = IntentType.MESSAGE_CAMPAIGN

        return IntentResult(
            type=intent,
            confidence=AMBIGUOUS_CONFIDENCE if len(matched) > 1 else FALLBACK_CONFIDENCE,
            parameters=self._parameters(intent, text),
            source=IntentSource.FALLBACK,
            matched_workers=matched,
        )

    def _parameters(self, intent: IntentType, text: str) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if intent is IntentType.LEAD_GENERATION:
            for key, values in (
                ("locations", keywords.extract_locations(text)),
                ("businesses", keywords.extract_businesses(text)),
                ("jobTitles", keywords.extract_job_titles(text)),
            ):
                if values:
                    params[key] = values
        elif intent is IntentType.PROFILE_RESEARCH:
            url = keywords.extract_linkedin_url(text)
            if url:
                params["linkedinUrl"] = url
            lead_ids = keywords.extract_lead_ids(text)
            if lead_ids:
                params["leadId"] = lead_ids[0]
        elif intent is IntentType.MESSAGE_CAMPAIGN:
            campaign_id = keywords.extract_campaign_id(text)
            if campaign_id:
                params["campaignId"] = campaign_id
            lead_ids = keywords.extract_lead_ids(text)
            if lead_ids:
                params["leadIds"] = lead_ids
        elif intent is IntentType.INBOX_MONITORING:
            mailbox = keywords.extract_mailbox(text)
            if mailbox:
                params["mailbox"] = mailbox
        return params


# Names a model may use for an intent
_INTENT_ALIASES = {
    "lead_research": IntentType.PROFILE_RESEARCH,
    "research": IntentType.PROFILE_RESEARCH,
    "leadgen": IntentType.LEAD_GENERATION,
    "email_campaign": IntentType.MESSAGE_CAMPAIGN,
    "email_monitoring": IntentType.INBOX_MONITORING,
}


class AdapterClassifier:
    """Classification through the external capability.

    Raises ClassifierUnavailable for anything that cannot be trusted: adapter
    errors, timeouts, unknown intent names, confidences outside [0, 1] or a
    non-object parameter block.
    """

    def __init__(self, adapter: ClassificationAdapter) -> None:
        self.adapter = adapter

    async def classify(self, utterance: str, context: list[dict[str, str]]) -> IntentResult:
        try:
            raw = await self.adapter.classify(utterance, context)
        except Exception as e:
            raise ClassifierUnavailable(
                f"Classification failed: {e}", details={"error_type": type(e).__name__}
            ) from e
        return self.validate(raw)

    def validate(self, raw: Any) -> IntentResult:
        if not isinstance(raw, dict):
            raise ClassifierUnavailable("Classification result is not an object")

        name = str(raw.get("type") or raw.get("intent") or "").strip().lower()
        try:
            intent = _INTENT_ALIASES.get(name) or IntentType(name)
        except ValueError:
            message = f"Unknown intent '{name}'"
            raise ClassifierUnavailable(message, details={"intent": name}) from None

        confidence = raw.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise ClassifierUnavailable("Classification confidence missing or not a number")
        if not 0.0 <= float(confidence) <= 1.0:
            raise ClassifierUnavailable(
                "Classification confidence out of range", details={"confidence": confidence}
            )

        parameters = raw.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise ClassifierUnavailable("Classification parameters are not an object")

        return IntentResult(
            type=intent,
            confidence=float(confidence),
            parameters=normalize_parameters(intent, parameters),
            source=IntentSource.PRIMARY,
        )


def normalize_parameters(intent: IntentType, parameters: dict[str, Any]) -> dict[str, Any]:
    """Rename snake_case keys to wire names and wrap scalars meant to be lists."""
    task_type = intent.task_type
    if task_type is None:
        return {}
    schema = PAYLOAD_SCHEMAS[task_type]
    normalized: dict[str, Any] = {}
    for name, field in schema.model_fields.items():
        wire = field.alias or name
        value = parameters.get(wire, parameters.get(name))
        if value is None or value == "" or value == []:
            continue
        if field.annotation == list[str] and isinstance(value, str):
            value = [value]
        normalized[wire] = value
    return normalized
