"""Tests for deterministic keyword classification and parameter extraction."""

import pytest

from sharpflow.routing import keywords
from sharpflow.routing.classifiers import KeywordClassifier
from sharpflow.routing.intents import (
    AMBIGUOUS_CONFIDENCE,
    FALLBACK_CONFIDENCE,
    IntentSource,
    IntentType,
)


@pytest.fixture
def classifier() -> KeywordClassifier:
    return KeywordClassifier()


class TestIntentSelection:
    def test_lead_generation(self, classifier) -> None:
        result = classifier.extract("Find CEOs of software companies in Austin")

        assert result.type == IntentType.LEAD_GENERATION
        assert result.confidence == FALLBACK_CONFIDENCE
        assert result.source == IntentSource.FALLBACK
        assert result.required_worker == "discovery"
        assert result.parameters == {
            "locations": ["Austin"],
            "businesses": ["software"],
            "jobTitles": ["CEO"],
        }

    def test_profile_research(self, classifier) -> None:
        result = classifier.extract("Research https://www.linkedin.com/in/adapark/ for lead L7")

        assert result.type == IntentType.PROFILE_RESEARCH
        assert result.required_worker == "research"
        assert result.parameters == {
            "linkedinUrl": "https://www.linkedin.com/in/adapark",
            "leadId": "L7",
        }

    def test_inbox_monitoring(self, classifier) -> None:
        result = classifier.extract("Check my inbox sales@Acme.io for new replies")

        assert result.type == IntentType.INBOX_MONITORING
        assert result.required_worker == "messaging"
        assert result.parameters == {"mailbox": "sales@acme.io"}

    def test_message_campaign(self, classifier) -> None:
        result = classifier.extract("Send campaign CMP-42 to leads L1, L2 and L3")

        assert result.type == IntentType.MESSAGE_CAMPAIGN
        assert result.parameters == {"campaignId": "CMP-42", "leadIds": ["L1", "L2", "L3"]}

    def test_first_matching_worker_wins_with_lower_confidence(self, classifier) -> None:
        result = classifier.extract("find leads and send them an email")

        assert result.type == IntentType.LEAD_GENERATION
        assert result.confidence == AMBIGUOUS_CONFIDENCE
        assert result.matched_workers == ["discovery", "messaging"]

    def test_no_keywords_is_general_query(self, classifier) -> None:
        result = classifier.extract("what's the weather like today?")

        assert result.type == IntentType.GENERAL_QUERY
        assert result.required_worker is None
        assert result.parameters == {}

    def test_empty_utterance(self, classifier) -> None:
        result = classifier.extract("   ")

        assert result.type == IntentType.GENERAL_QUERY
        assert result.confidence == 0.0
        assert result.source == IntentSource.EMPTY

    @pytest.mark.asyncio
    async def test_classify_ignores_context(self, classifier) -> None:
        result = await classifier.classify("find dentists in Boise", [{"role": "user"}])
        assert result.parameters["locations"] == ["Boise"]


class TestExtraction:
    def test_long_title_wins_over_parts(self) -> None:
        assert keywords.extract_job_titles("chief executive officers and founders") == [
            "CEO",
            "Founder",
        ]

    def test_plural_business_terms(self) -> None:
        assert keywords.extract_businesses("bakeries, coffee shops and gyms") == [
            "bakery",
            "coffee shop",
            "gym",
        ]

    def test_several_locations(self) -> None:
        text = "owners of bakeries in Dallas and Fort Worth"
        assert keywords.extract_locations(text) == ["Dallas", "Fort Worth"]

    def test_lowercase_first_location_word(self) -> None:
        assert keywords.extract_locations("restaurants in denver please") == ["Denver"]

    def test_non_place_words_are_skipped(self) -> None:
        assert keywords.extract_locations("companies in the software industry") == []

    def test_linkedin_url_gets_scheme(self) -> None:
        assert (
            keywords.extract_linkedin_url("see linkedin.com/in/sam-ortiz")
            == "https://linkedin.com/in/sam-ortiz"
        )

    def test_campaign_id_requires_a_digit(self) -> None:
        assert keywords.extract_campaign_id("start the campaign now") is None
        assert keywords.extract_campaign_id("campaign #Q3-launch") == "Q3-launch"

    def test_triggers_match_word_prefixes(self) -> None:
        assert keywords.contains_any("Generating leads", keywords.DISCOVERY_TRIGGERS)
        assert not keywords.contains_any("regenerate", keywords.DISCOVERY_TRIGGERS)
