"""Intent router: free text -> task type, parameters and confidence.

Routing flow:
    empty utterance           -> general_query, confidence 0, no worker
    primary classifier        -> used when it answers with confidence >= threshold
    anything else             -> keyword classifier (never raises)

The router never raises because of what the classification capability
returns; every failure on the primary path degrades to the fallback.
"""

from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from sharpflow.config import Settings
from sharpflow.jobs.schemas import missing_fields
from sharpflow.routing.classifiers import Classifier, KeywordClassifier
from sharpflow.routing.intents import IntentResult, IntentSource, IntentType

if TYPE_CHECKING:
    from sharpflow.memory.service import ConversationMemoryManager

log = structlog.get_logger()

ROUTER_AGENT_ID = "router"


class IntentRouter:
    """Classifies utterances and selects the worker pool for new jobs.

    Usage:
        router = IntentRouter(settings, primary=AdapterClassifier(adapter), memory=memory)
        result = await router.classify("find CEOs in Austin", owner_id)
        if result.is_actionable:
            await submission.submit_from_intent(owner_id, result)
    """

    def __init__(
        self,
        settings: Settings,
        *,
        primary: Classifier | None = None,
        fallback: KeywordClassifier | None = None,
        memory: "ConversationMemoryManager | None" = None,
    ) -> None:
        self.settings = settings
        self.primary = primary
        self.fallback = fallback or KeywordClassifier()
        self.memory = memory

    async def classify(
        self,
        utterance: str,
        owner_id: str,
        session_id: UUID | None = None,
        *,
        agent_id: str = ROUTER_AGENT_ID,
    ) -> IntentResult:
        text = (utterance or "").strip()
        if not text:
            return IntentResult(
                type=IntentType.GENERAL_QUERY, confidence=0.0, source=IntentSource.EMPTY
            )

        result: IntentResult | None = None
        if self.primary is not None:
            context = await self._context_excerpt(owner_id, agent_id, session_id)
            try:
                candidate = await self.primary.classify(text, context)
            except Exception as e:
                log.warning(
                    "intent_primary_failed",
                    owner_id=owner_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            else:
                if candidate.confidence >= self.settings.intent_confidence_threshold:
                    result = candidate
                else:
                    log.info(
                        "intent_primary_low_confidence",
                        owner_id=owner_id,
                        intent=candidate.type,
                        confidence=candidate.confidence,
                    )

        if result is None:
            result = self.fallback.extract(text)

        task_type = result.type.task_type
        if task_type is not None:
            result.missing_parameters = missing_fields(task_type, result.parameters)

        log.info(
            "intent_classified",
            owner_id=owner_id,
            intent=result.type,
            confidence=result.confidence,
            source=result.source,
            worker=result.required_worker,
            missing=result.missing_parameters or None,
        )
        return result

    async def _context_excerpt(
        self, owner_id: str, agent_id: str, session_id: UUID | None
    ) -> list[dict[str, str]]:
        limit = self.settings.intent_context_messages
        if self.memory is None or limit <= 0:
            return []
        try:
            context = await self.memory.get_context(
                owner_id, agent_id, session_id=session_id, limit=limit, summarize=False
            )
        except Exception as e:
            log.warning("intent_context_unavailable", owner_id=owner_id, error=str(e))
            return []
        return [{"role": m.role, "content": m.content} for m in context.messages]
