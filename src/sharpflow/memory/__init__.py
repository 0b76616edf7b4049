"""Short-term conversation memory per (owner, agent) pair."""

from sharpflow.memory.preferences import PreferencesUpdate, ResolvedPreferences
from sharpflow.memory.service import (
    ConversationContext,
    ConversationMemoryManager,
    MessageCleanupStats,
)

__all__ = [
    "ConversationContext",
    "ConversationMemoryManager",
    "MessageCleanupStats",
    "PreferencesUpdate",
    "ResolvedPreferences",
]
