"""Intent routing: classify utterances into task types and parameters."""

from sharpflow.routing.classifiers import AdapterClassifier, Classifier, KeywordClassifier
from sharpflow.routing.intents import (
    AMBIGUOUS_CONFIDENCE,
    FALLBACK_CONFIDENCE,
    WORKER_FOR_INTENT,
    IntentResult,
    IntentSource,
    IntentType,
)
from sharpflow.routing.router import IntentRouter

__all__ = [
    "AMBIGUOUS_CONFIDENCE",
    "FALLBACK_CONFIDENCE",
    "WORKER_FOR_INTENT",
    "AdapterClassifier",
    "Classifier",
    "IntentResult",
    "IntentRouter",
    "IntentSource",
    "IntentType",
    "KeywordClassifier",
]
