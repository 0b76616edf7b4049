"""Process-wide component wiring.

Both the API process and the worker process build their components here
from one ``Settings`` value. Tests pass their own database, broker and
capabilities instead.
"""

from dataclasses import dataclass

import httpx
import structlog

from sharpflow.adapters import (
    AnthropicClassificationAdapter,
    AnthropicSummarizationAdapter,
    Capabilities,
    SummarizationAdapter,
    build_http_capabilities,
    create_http_client,
)
from sharpflow.api.pubsub import EventPublisher
from sharpflow.config import Settings
from sharpflow.db import Database
from sharpflow.jobs import TaskBroker, create_broker
from sharpflow.jobs.artifacts import ArtifactStore
from sharpflow.jobs.store import JobStore
from sharpflow.jobs.submission import JobSubmissionService
from sharpflow.jobs.worker import WorkerPool
from sharpflow.memory import ConversationMemoryManager
from sharpflow.routing import AdapterClassifier, Classifier, IntentRouter

log = structlog.get_logger()


@dataclass
class Runtime:
    """Everything one process needs, built once and closed once."""

    settings: Settings
    db: Database
    broker: TaskBroker
    store: JobStore
    artifacts: ArtifactStore
    memory: ConversationMemoryManager
    router: IntentRouter
    submission: JobSubmissionService
    capabilities: Capabilities | None = None
    http_client: httpx.AsyncClient | None = None
    pool: WorkerPool | None = None

    def start_workers(self, publisher: EventPublisher | None) -> WorkerPool:
        if self.capabilities is None:
            self.http_client = create_http_client(self.settings)
            self.capabilities = build_http_capabilities(self.settings, self.http_client)
        self.pool = WorkerPool(
            self.settings,
            store=self.store,
            artifacts=self.artifacts,
            broker=self.broker,
            publisher=publisher,
            capabilities=self.capabilities,
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.stop()
        await self.memory.drain()
        await self.broker.close()
        if self.http_client is not None:
            await self.http_client.aclose()
        await self.db.close()
        log.info("runtime_closed")


def build_runtime(
    settings: Settings,
    *,
    db: Database | None = None,
    broker: TaskBroker | None = None,
    capabilities: Capabilities | None = None,
    classifier: Classifier | None = None,
    summarizer: SummarizationAdapter | None = None,
    publisher: EventPublisher | None = None,
) -> Runtime:
    """Wire components from settings; any argument overrides the default."""
    db = db or Database.from_settings(settings)
    broker = broker or create_broker(settings)
    api_key = settings.anthropic_api_key.get_secret_value() or None

    if classifier is None and api_key:
        classifier = AdapterClassifier(
            AnthropicClassificationAdapter(
                api_key=api_key,
                model=settings.llm_model,
                timeout=settings.classification_timeout,
            )
        )
    if summarizer is None and api_key:
        summarizer = AnthropicSummarizationAdapter(
            api_key=api_key,
            model=settings.llm_model,
            timeout=settings.summarization_timeout,
        )

    store = JobStore(db)
    memory = ConversationMemoryManager(settings, db, summarizer=summarizer)
    runtime = Runtime(
        settings=settings,
        db=db,
        broker=broker,
        store=store,
        artifacts=ArtifactStore(db),
        memory=memory,
        router=IntentRouter(settings, primary=classifier, memory=memory),
        submission=JobSubmissionService(settings, store, broker, publisher=publisher),
        capabilities=capabilities,
    )
    log.info(
        "runtime_built",
        broker=type(broker).__name__,
        primary_classifier=classifier is not None,
        summarizer=summarizer is not None,
    )
    return runtime
