"""Tests for the intent router and the adapter-backed classifier."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from sharpflow.errors import ClassifierUnavailable
from sharpflow.routing.classifiers import AdapterClassifier
from sharpflow.routing.intents import IntentResult, IntentSource, IntentType
from sharpflow.routing.router import ROUTER_AGENT_ID, IntentRouter

OWNER = "owner-a"


def _primary(result: IntentResult | None = None, error: Exception | None = None) -> MagicMock:
    primary = MagicMock()
    primary.classify = AsyncMock(return_value=result, side_effect=error)
    return primary


class TestIntentRouter:
    """Primary first, keyword fallback on low confidence or failure."""

    @pytest.mark.asyncio
    async def test_confident_primary_result_is_used(self, settings) -> None:
        primary = _primary(
            IntentResult(
                type=IntentType.INBOX_MONITORING,
                confidence=0.92,
                parameters={"mailbox": "sales@acme.io"},
                source=IntentSource.PRIMARY,
            )
        )
        router = IntentRouter(settings, primary=primary)

        result = await router.classify("anything new from customers?", OWNER)

        assert result.type == IntentType.INBOX_MONITORING
        assert result.source == IntentSource.PRIMARY
        assert result.required_worker == "messaging"
        assert result.is_actionable

    @pytest.mark.asyncio
    async def test_low_confidence_falls_back_to_keywords(self, settings) -> None:
        primary = _primary(IntentResult(type=IntentType.PROFILE_RESEARCH, confidence=0.5))
        router = IntentRouter(settings, primary=primary)

        result = await router.classify("Find CEOs of software companies in Austin", OWNER)

        assert result.type == IntentType.LEAD_GENERATION
        assert result.confidence == 0.6
        assert result.source == IntentSource.FALLBACK
        assert result.missing_parameters == []

    @pytest.mark.asyncio
    async def test_primary_failure_falls_back(self, settings) -> None:
        router = IntentRouter(settings, primary=_primary(error=ClassifierUnavailable("down")))

        result = await router.classify("Send campaign CMP-42 to leads L1 and L2", OWNER)

        assert result.type == IntentType.MESSAGE_CAMPAIGN
        assert result.parameters == {"campaignId": "CMP-42", "leadIds": ["L1", "L2"]}

    @pytest.mark.asyncio
    async def test_unexpected_exception_falls_back(self, settings) -> None:
        router = IntentRouter(settings, primary=_primary(error=KeyError("boom")))
        result = await router.classify("check my inbox", OWNER)
        assert result.type == IntentType.INBOX_MONITORING

    @pytest.mark.asyncio
    async def test_empty_utterance_skips_classifiers(self, settings) -> None:
        primary = _primary()
        router = IntentRouter(settings, primary=primary)

        result = await router.classify("  ", OWNER)

        assert result.type == IntentType.GENERAL_QUERY
        assert result.confidence == 0.0
        assert result.required_worker is None
        primary.classify.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_parameters_are_reported_not_filled(self, settings) -> None:
        router = IntentRouter(settings)

        result = await router.classify("find CEOs", OWNER)

        assert result.type == IntentType.LEAD_GENERATION
        assert result.parameters == {"jobTitles": ["CEO"]}
        assert result.missing_parameters == ["locations", "businesses"]
        assert not result.is_actionable

    @pytest.mark.asyncio
    async def test_general_query_has_no_missing_parameters(self, settings) -> None:
        result = await IntentRouter(settings).classify("hello there", OWNER)
        assert result.type == IntentType.GENERAL_QUERY
        assert result.missing_parameters == []


class TestClassificationContext:
    @pytest.mark.asyncio
    async def test_recent_messages_are_passed_to_primary(self, settings, memory) -> None:
        await memory.append_message(OWNER, ROUTER_AGENT_ID, "user", "we sell to dentists")
        primary = _primary(IntentResult(type=IntentType.GENERAL_QUERY, confidence=0.9))
        router = IntentRouter(settings, primary=primary, memory=memory)

        await router.classify("what about Boise?", OWNER)

        _, context = primary.classify.call_args.args
        assert context == [{"role": "user", "content": "we sell to dentists"}]

    @pytest.mark.asyncio
    async def test_memory_failure_gives_empty_context(self, settings) -> None:
        memory = MagicMock()
        memory.get_context = AsyncMock(side_effect=RuntimeError("db down"))
        primary = _primary(IntentResult(type=IntentType.GENERAL_QUERY, confidence=0.9))
        router = IntentRouter(settings, primary=primary, memory=memory)

        result = await router.classify("hello", OWNER)

        assert result.confidence == 0.9
        assert primary.classify.call_args.args[1] == []


class TestAdapterClassifier:
    """Anything untrustworthy from the capability raises ClassifierUnavailable."""

    @pytest.fixture
    def classifier(self) -> AdapterClassifier:
        return AdapterClassifier(MagicMock())

    def test_valid_result_is_normalized(self, classifier) -> None:
        result = classifier.validate(
            {
                "type": "lead_generation",
                "confidence": 0.88,
                "parameters": {
                    "locations": "Austin",
                    "businesses": ["software"],
                    "job_titles": ["CEO"],
                    "unrelated": "dropped",
                },
            }
        )

        assert result.type == IntentType.LEAD_GENERATION
        assert result.source == IntentSource.PRIMARY
        assert result.parameters == {
            "locations": ["Austin"],
            "businesses": ["software"],
            "jobTitles": ["CEO"],
        }

    def test_intent_aliases(self, classifier) -> None:
        result = classifier.validate({"intent": "lead_research", "confidence": 1})
        assert result.type == IntentType.PROFILE_RESEARCH

    @pytest.mark.parametrize(
        "raw",
        [
            "lead_generation",
            {"type": "cold_calling", "confidence": 0.9},
            {"type": "lead_generation"},
            {"type": "lead_generation", "confidence": True},
            {"type": "lead_generation", "confidence": 1.5},
            {"type": "lead_generation", "confidence": "high"},
            {"type": "lead_generation", "confidence": 0.9, "parameters": ["Austin"]},
        ],
    )
    def test_untrusted_results_are_rejected(self, classifier, raw) -> None:
        with pytest.raises(ClassifierUnavailable):
            classifier.validate(raw)

    @pytest.mark.asyncio
    async def test_adapter_errors_are_wrapped(self) -> None:
        adapter = MagicMock()
        adapter.classify = AsyncMock(side_effect=TimeoutError())
        classifier = AdapterClassifier(adapter)

        with pytest.raises(ClassifierUnavailable) as exc_info:
            await classifier.classify("find CEOs", [])
        assert exc_info.value.details["error_type"] == "TimeoutError"
