"""Context window preferences per (owner, agent)."""

from pydantic import BaseModel, Field

from sharpflow.config import Settings
from sharpflow.db.models import MemoryPreferences


class ResolvedPreferences(BaseModel):
    """Effective preferences: the stored row, or agent defaults when absent."""

    max_context_messages: int
    max_context_tokens: int
    auto_summarize_threshold: int
    retain_system_messages: bool = True
    retain_error_messages: bool = False
    is_default: bool = True

    @classmethod
    def defaults(cls, settings: Settings, agent_id: str) -> "ResolvedPreferences":
        limits = settings.context_limits_for(agent_id)
        return cls(
            max_context_messages=limits.max_messages,
            max_context_tokens=limits.max_tokens,
            auto_summarize_threshold=settings.auto_summarize_threshold,
        )

    @classmethod
    def from_row(cls, row: MemoryPreferences) -> "ResolvedPreferences":
        return cls(
            max_context_messages=row.max_context_messages,
            max_context_tokens=row.max_context_tokens,
            auto_summarize_threshold=row.auto_summarize_threshold,
            retain_system_messages=row.retain_system_messages,
            retain_error_messages=row.retain_error_messages,
            is_default=False,
        )


class PreferencesUpdate(BaseModel):
    """Partial update; omitted fields keep their current value."""

    max_context_messages: int | None = Field(default=None, ge=1, le=500)
    max_context_tokens: int | None = Field(default=None, ge=1, le=200_000)
    auto_summarize_threshold: int | None = Field(default=None, ge=5)
    retain_system_messages: bool | None = None
    retain_error_messages: bool | None = None

    def apply(self, current: ResolvedPreferences) -> ResolvedPreferences:
        changes = self.model_dump(exclude_none=True)
        return current.model_copy(update={**changes, "is_default": False})
