"""Intent routing result types."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from sharpflow.db.models import TaskType
from sharpflow.jobs.descriptors import TASK_WORKERS

# Reported for keyword-only classification
FALLBACK_CONFIDENCE = 0.6
# Reported when keywords for more than one worker matched
AMBIGUOUS_CONFIDENCE = 0.45


class IntentType(StrEnum):
    """What the caller asked for. Every type except GENERAL_QUERY is a TaskType."""

    LEAD_GENERATION = "lead_generation"
    PROFILE_RESEARCH = "profile_research"
    MESSAGE_CAMPAIGN = "message_campaign"
    INBOX_MONITORING = "inbox_monitoring"
    GENERAL_QUERY = "general_query"

    @property
    def task_type(self) -> TaskType | None:
        if self is IntentType.GENERAL_QUERY:
            return None
        return TaskType(self.value)


class IntentSource(StrEnum):
    """Which classification path produced a result."""

    PRIMARY = "primary"
    FALLBACK = "fallback"
    EMPTY = "empty"


WORKER_FOR_INTENT: dict[IntentType, str | None] = {
    **{IntentType(t.value): worker for t, worker in TASK_WORKERS.items()},
    IntentType.GENERAL_QUERY: None,
}


@dataclass
class IntentResult:
    """Classification of one utterance."""

    type: IntentType
    confidence: float
    parameters: dict[str, Any] = field(default_factory=dict)
    source: IntentSource = IntentSource.FALLBACK
    missing_parameters: list[str] = field(default_factory=list)
    matched_workers: list[str] = field(default_factory=list)

    @property
    def required_worker(self) -> str | None:
        return WORKER_FOR_INTENT[self.type]

    @property
    def is_actionable(self) -> bool:
        """True when the result can be submitted as a job as-is."""
        return self.type.task_type is not None and not self.missing_parameters

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "confidence": round(self.confidence, 3),
            "required_worker": self.required_worker,
            "parameters": self.parameters,
            "source": self.source.value,
            "missing_parameters": self.missing_parameters,
        }
