"""Pytest configuration and fixtures.

Everything runs against a per-test SQLite file and the in-memory broker.
External capabilities are in-memory fakes whose failures can be scripted.
"""

from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio
from pydantic import SecretStr

from sharpflow.adapters.execution import Capabilities
from sharpflow.config import RetryPolicyConfig, Settings
from sharpflow.db import Database, TaskType
from sharpflow.jobs.artifacts import ArtifactStore
from sharpflow.jobs.broker import InMemoryBroker
from sharpflow.jobs.store import JobStore
from sharpflow.jobs.submission import JobSubmissionService
from sharpflow.memory import ConversationMemoryManager

# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Monotonic clock for the in-memory broker that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingPublisher:
    """EventPublisher that keeps every event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any], str]] = []

    async def publish(self, event: str, data: dict[str, Any], *, owner_id: str) -> None:
        self.events.append((event, data, owner_id))

    def names(self) -> list[str]:
        return [event for event, _, _ in self.events]

    def progress(self) -> list[int]:
        return [data["progress"] for event, data, _ in self.events if event == "job_progress"]


class _Scripted:
    """Raises queued exceptions first, then answers normally."""

    def __init__(self) -> None:
        self.failures: list[BaseException] = []
        self.calls = 0

    def _next(self) -> None:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)


class FakeLeadSearch(_Scripted):
    def __init__(self) -> None:
        super().__init__()
        self.leads: list[dict[str, Any]] = [
            {
                "name": "Ada Park",
                "company": "Byteworks",
                "linkedinUrl": "https://linkedin.com/in/adapark",
            },
            {"name": "Sam Ortiz", "company": "Loopcraft", "email": "sam@loopcraft.io"},
            # Same person as the first lead, different URL casing
            {
                "name": "Ada Park",
                "company": "Byteworks",
                "linkedinUrl": "https://LinkedIn.com/in/adapark/",
            },
        ]
        self.on_search: Any = None

    async def search(self, criteria: dict[str, Any]) -> list[dict[str, Any]]:
        self._next()
        if self.on_search is not None:
            await self.on_search()
        return list(self.leads)


class FakeProfileFetcher(_Scripted):
    def __init__(self) -> None:
        super().__init__()
        self.profile: dict[str, Any] = {
            "name": "Ada Park",
            "company": "Byteworks",
            "companyWebsite": "https://www.byteworks.dev",
        }

    async def fetch(self, linkedin_url: str) -> dict[str, Any]:
        self._next()
        return dict(self.profile)


class FakeOrganizationResearch(_Scripted):
    async def research(self, company: str | None, website: str | None) -> dict[str, Any]:
        self._next()
        return {"name": company, "website": website, "employees": 42}


class FakeReputationLookup(_Scripted):
    def __init__(self) -> None:
        super().__init__()
        self.domains: list[str | None] = []

    async def lookup(self, domain: str | None) -> dict[str, Any]:
        self._next()
        self.domains.append(domain)
        return {"rating": 4.6, "reviews": []}


class FakeNarrativeSynthesizer(_Scripted):
    async def synthesize(
        self,
        profile: dict[str, Any],
        organization: dict[str, Any],
        reputation: dict[str, Any],
    ) -> dict[str, Any]:
        self._next()
        return {"summary": f"{profile['name']} runs {organization['name']}"}


class FakeMessageDelivery(_Scripted):
    def __init__(self) -> None:
        super().__init__()
        self.delivered: list[str] = []
        self.fail_for: dict[str, BaseException] = {}

    async def deliver(self, campaign_id: str, lead_id: str, channel: str) -> dict[str, Any]:
        self._next()
        if lead_id in self.fail_for:
            raise self.fail_for.pop(lead_id)
        self.delivered.append(lead_id)
        return {"messageId": f"{campaign_id}-{lead_id}"}


class FakeInboxReader(_Scripted):
    def __init__(self) -> None:
        super().__init__()
        self.messages: list[dict[str, Any]] = [
            {"messageId": "m-1", "from": "ada@byteworks.dev", "subject": "Re: intro"},
            {"messageId": "m-2", "from": "sam@loopcraft.io", "subject": "Pricing"},
            {"subject": "no id, skipped"},
        ]

    async def read(
        self, mailbox: str, *, since: str | None, max_messages: int
    ) -> list[dict[str, Any]]:
        self._next()
        return list(self.messages[:max_messages])


class FakeSummarizer:
    def __init__(self, summary: str = "Earlier the user asked for CEOs in Austin.") -> None:
        self.summary = summary
        self.calls: list[list[dict[str, str]]] = []
        self.error: Exception | None = None

    async def summarize(self, messages: list[dict[str, str]]) -> str:
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return self.summary


def make_capabilities() -> Capabilities:
    return Capabilities(
        lead_search=FakeLeadSearch(),
        profile_fetcher=FakeProfileFetcher(),
        organization_research=FakeOrganizationResearch(),
        reputation_lookup=FakeReputationLookup(),
        narrative_synthesizer=FakeNarrativeSynthesizer(),
        message_delivery=FakeMessageDelivery(),
        inbox_reader=FakeInboxReader(),
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path: Any, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Development settings with a throwaway SQLite database."""
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("SHARPFLOW_ANTHROPIC_API_KEY", raising=False)
    return Settings(
        environment="development",
        broker_backend="memory",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'sharpflow.db'}",
        jwt_secret=SecretStr("test-secret-key-that-is-long-enough-for-hs256"),
        disable_auth=True,
        anthropic_api_key=SecretStr(""),
        persistence_pause_seconds=0,
        worker_concurrency=1,
        worker_poll_delay=0.05,
        visibility_timeout_seconds=30,
        retry_policies={
            t.value: RetryPolicyConfig(max_retries=3, backoff_base_seconds=1.0, jitter=0.0)
            for t in TaskType
        },
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncIterator[Database]:
    database = Database.from_settings(settings)
    await database.init_db()
    yield database
    await database.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broker(clock: FakeClock) -> InMemoryBroker:
    return InMemoryBroker(clock=clock)


@pytest.fixture
def store(db: Database) -> JobStore:
    return JobStore(db)


@pytest.fixture
def artifacts(db: Database) -> ArtifactStore:
    return ArtifactStore(db)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def capabilities() -> Capabilities:
    return make_capabilities()


@pytest.fixture
def submission(
    settings: Settings, store: JobStore, broker: InMemoryBroker, publisher: RecordingPublisher
) -> JobSubmissionService:
    return JobSubmissionService(settings, store, broker, publisher=publisher)


@pytest.fixture
def summarizer() -> FakeSummarizer:
    return FakeSummarizer()


@pytest_asyncio.fixture
async def memory(
    settings: Settings, db: Database, summarizer: FakeSummarizer
) -> AsyncIterator[ConversationMemoryManager]:
    manager = ConversationMemoryManager(settings, db, summarizer=summarizer)
    yield manager
    await manager.drain()


@pytest.fixture
def lead_payload() -> dict[str, Any]:
    return {"locations": ["Austin"], "businesses": ["software"], "jobTitles": ["CEO"]}
