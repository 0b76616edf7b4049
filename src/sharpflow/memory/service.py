"""Conversation memory: sessions, messages and bounded context windows.

Context retrieval flow:
    relevant messages (active + paused sessions, retention flags applied)
        -> newest first, keep while under the message AND token budgets
        -> anything dropped and >= summary_min_messages relevant?
             -> unexpired ContextCache row       (reuse)
             -> else summarize the dropped range (cache for summary_ttl_seconds)
        -> summary tokens count toward the token budget
        -> return oldest first

The cache is strictly derived data. Losing it costs one summarization call;
a summarizer failure means "no summary", never a failed read.
"""

import asyncio
import functools
import math
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from uuid import UUID, uuid4

import structlog
from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from sharpflow.adapters.summarization import SummarizationAdapter
from sharpflow.config import Settings
from sharpflow.db import (
    ContextCache,
    ConversationMessage,
    ConversationSession,
    Database,
    MemoryPreferences,
    MessageRole,
    MessageType,
    SessionStatus,
    utcnow_naive,
)
from sharpflow.errors import SessionNotFoundError, ValidationFault
from sharpflow.memory.preferences import PreferencesUpdate, ResolvedPreferences

log = structlog.get_logger()

_READABLE = (SessionStatus.ACTIVE.value, SessionStatus.PAUSED.value)
# Never aged out of the context by retention
_PRESERVED_TYPES = (MessageType.system.value, MessageType.error.value)


@dataclass
class ConversationContext:
    """What an agent sees of a conversation."""

    messages: list[ConversationMessage] = field(default_factory=list)
    summary: str | None = None
    total_tokens: int = 0
    message_count: int = 0
    dropped_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "summary": self.summary,
            "total_tokens": self.total_tokens,
            "message_count": self.message_count,
            "dropped_count": self.dropped_count,
        }


@dataclass
class MessageCleanupStats:
    """Outcome of one retention sweep."""

    summaries_written: int = 0
    soft_deleted: int = 0
    hard_deleted: int = 0


class ConversationMemoryManager:
    """Short-term memory per (owner, agent) pair.

    Usage:
        memory = ConversationMemoryManager(settings, db, summarizer=adapter)
        await memory.append_message(owner_id, "discovery", "user", "find CEOs in Austin")
        context = await memory.get_context(owner_id, "discovery")
    """

    def __init__(
        self,
        settings: Settings,
        db: Database,
        summarizer: SummarizationAdapter | None = None,
    ) -> None:
        self.settings = settings
        self.db = db
        self.summarizer = summarizer
        self._background: set[asyncio.Task[Any]] = set()

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / self.settings.chars_per_token)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def get_or_create_session(
        self,
        owner_id: str,
        agent_id: str,
        session_id: UUID | None = None,
        title: str | None = None,
    ) -> ConversationSession:
        """The requested session, else the pair's active session, else a new one."""
        try:
            return await self._resolve_and_commit(owner_id, agent_id, session_id, title)
        except IntegrityError:
            log.info("session_resolution_conflict", owner_id=owner_id, agent_id=agent_id)
            return await self._resolve_and_commit(owner_id, agent_id, session_id, title)

    async def _resolve_and_commit(
        self, owner_id: str, agent_id: str, session_id: UUID | None, title: str | None
    ) -> ConversationSession:
        async with self.db.session() as session:
            conv = await self._resolve_session(session, owner_id, agent_id, session_id, title)
            await session.commit()
        return conv

    async def _resolve_session(
        self,
        session: AsyncSession,
        owner_id: str,
        agent_id: str,
        session_id: UUID | None,
        title: str | None,
    ) -> ConversationSession:
        if session_id is not None:
            result = await session.execute(
                select(ConversationSession).where(
                    col(ConversationSession.id) == session_id,
                    col(ConversationSession.owner_id) == owner_id,
                    col(ConversationSession.agent_id) == agent_id,
                )
            )
            conv = result.scalar_one_or_none()
            if conv is None:
                raise SessionNotFoundError(str(session_id))
            return conv

        result = await session.execute(
            select(ConversationSession)
            .where(
                col(ConversationSession.owner_id) == owner_id,
                col(ConversationSession.agent_id) == agent_id,
                col(ConversationSession.status) == SessionStatus.ACTIVE.value,
            )
            .order_by(col(ConversationSession.last_activity_at).desc())
            .limit(1)
        )
        conv = result.scalar_one_or_none()
        if conv is not None:
            return conv

        now = utcnow_naive()
        conv = ConversationSession(
            owner_id=owner_id,
            agent_id=agent_id,
            title=(title or f"{agent_id.capitalize()} conversation {now:%Y-%m-%d}")[:255],
            last_activity_at=now,
        )
        session.add(conv)
        # Raises IntegrityError if a concurrent writer created the active session first
        await session.flush()
        log.info("conversation_session_created", session_id=str(conv.id), agent_id=agent_id)
        return conv

    async def list_sessions(
        self, owner_id: str, agent_id: str, *, include_archived: bool = False
    ) -> Sequence[ConversationSession]:
        stmt = select(ConversationSession).where(
            col(ConversationSession.owner_id) == owner_id,
            col(ConversationSession.agent_id) == agent_id,
        )
        if not include_archived:
            stmt = stmt.where(col(ConversationSession.status).in_(_READABLE))
        stmt = stmt.order_by(col(ConversationSession.last_activity_at).desc())
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def pause_session(
        self, owner_id: str, session_id: UUID, agent_id: str | None = None
    ) -> bool:
        """active -> paused. False if the session was not active.

        With ``agent_id`` the session must also belong to that agent.
        """
        scope = [
            col(ConversationSession.id) == session_id,
            col(ConversationSession.owner_id) == owner_id,
        ]
        if agent_id is not None:
            scope.append(col(ConversationSession.agent_id) == agent_id)
        async with self.db.session() as session:
            result = await session.execute(
                update(ConversationSession)
                .where(*scope, col(ConversationSession.status) == SessionStatus.ACTIVE.value)
                .values(status=SessionStatus.PAUSED.value, updated_at=utcnow_naive())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount > 0:
                return True
            exists = await session.execute(select(ConversationSession.id).where(*scope))
        if exists.scalar_one_or_none() is None:
            raise SessionNotFoundError(str(session_id))
        return False

    async def archive_old_sessions(
        self, owner_id: str | None, days_threshold: int | None = None
    ) -> int:
        """Archive active sessions idle longer than the threshold.

        Idempotent: an archived session no longer matches. ``owner_id=None``
        sweeps every owner and is only used by the maintenance worker.
        """
        days = self.settings.session_archive_days if days_threshold is None else days_threshold
        if days < 0:
            raise ValidationFault("days_threshold must be >= 0", details={"days": days})
        cutoff = utcnow_naive() - timedelta(days=days)
        stmt = (
            update(ConversationSession)
            .where(
                col(ConversationSession.status) == SessionStatus.ACTIVE.value,
                col(ConversationSession.last_activity_at) < cutoff,
            )
            .values(status=SessionStatus.ARCHIVED.value, updated_at=utcnow_naive())
            .execution_options(synchronize_session=False)
        )
        if owner_id is not None:
            stmt = stmt.where(col(ConversationSession.owner_id) == owner_id)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        archived = result.rowcount or 0
        if archived:
            log.info("conversation_sessions_archived", owner_id=owner_id, count=archived)
        return archived

    # =========================================================================
    # Messages
    # =========================================================================

    async def append_message(
        self,
        owner_id: str,
        agent_id: str,
        role: MessageRole | str,
        content: str,
        *,
        session_id: UUID | None = None,
        message_type: MessageType | str = MessageType.chat,
        is_context_relevant: bool = True,
        parent_message_id: UUID | None = None,
        context_data: dict[str, Any] | None = None,
    ) -> ConversationMessage:
        """Store a message in the resolved session.

        Session resolution and the insert share one transaction. Losing the
        race to create the pair's active session re-resolves once and lands
        the message in the winner's session.
        """
        try:
            role = MessageRole(role)
            message_type = MessageType(message_type)
        except ValueError as e:
            raise ValidationFault(str(e)) from None
        if not content or not content.strip():
            raise ValidationFault("Message content must not be empty")

        insert = functools.partial(
            self._insert_message,
            owner_id,
            agent_id,
            role,
            content,
            session_id=session_id,
            message_type=message_type,
            is_context_relevant=is_context_relevant,
            parent_message_id=parent_message_id,
            context_data=context_data or {},
        )
        try:
            message, count, threshold = await insert()
        except IntegrityError:
            log.info("session_resolution_conflict", owner_id=owner_id, agent_id=agent_id)
            message, count, threshold = await insert()

        if self.summarizer is not None and count % threshold == 0:
            self._fire_and_forget(
                self.refresh_summary(owner_id, agent_id, message.session_id),
                name=f"summarize-{message.session_id}",
            )
        return message

    async def _insert_message(
        self,
        owner_id: str,
        agent_id: str,
        role: MessageRole,
        content: str,
        *,
        session_id: UUID | None,
        message_type: MessageType,
        is_context_relevant: bool,
        parent_message_id: UUID | None,
        context_data: dict[str, Any],
    ) -> tuple[ConversationMessage, int, int]:
        prefs = await self.get_preferences(owner_id, agent_id)
        async with self.db.session() as session:
            conv = await self._resolve_session(session, owner_id, agent_id, session_id, None)
            if conv.status != SessionStatus.ACTIVE.value:
                raise ValidationFault(
                    f"Session is {conv.status}", details={"session_id": str(conv.id)}
                )
            if parent_message_id is not None:
                parent = await session.execute(
                    select(ConversationMessage.id).where(
                        col(ConversationMessage.id) == parent_message_id,
                        col(ConversationMessage.session_id) == conv.id,
                    )
                )
                if parent.scalar_one_or_none() is None:
                    raise ValidationFault(
                        "Parent message not found in session",
                        details={"parent_message_id": str(parent_message_id)},
                    )

            now = utcnow_naive()
            message = ConversationMessage(
                session_id=conv.id,
                owner_id=owner_id,
                agent_id=agent_id,
                role=role.value,
                content=content,
                message_type=message_type.value,
                context_data=context_data,
                is_context_relevant=is_context_relevant,
                token_count=self.estimate_tokens(content),
                parent_message_id=parent_message_id,
                created_at=now,
            )
            session.add(message)
            conv.last_activity_at = now
            conv.updated_at = now
            await session.flush()
            count = await session.execute(
                select(func.count())
                .select_from(ConversationMessage)
                .where(col(ConversationMessage.session_id) == conv.id)
            )
            total = count.scalar_one()
            await session.commit()
        return message, total, prefs.auto_summarize_threshold

    async def get_history(
        self,
        owner_id: str,
        agent_id: str,
        session_id: UUID | None = None,
        limit: int = 50,
    ) -> list[ConversationMessage]:
        """Most recent messages regardless of relevance, oldest first."""
        if limit < 1:
            raise ValidationFault("limit must be >= 1", details={"limit": limit})
        stmt = select(ConversationMessage).where(
            col(ConversationMessage.owner_id) == owner_id,
            col(ConversationMessage.agent_id) == agent_id,
        )
        if session_id is not None:
            stmt = stmt.where(col(ConversationMessage.session_id) == session_id)
        stmt = stmt.order_by(col(ConversationMessage.created_at).desc()).limit(limit)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            messages = list(result.scalars().all())
        messages.reverse()
        return messages

    # =========================================================================
    # Context windows
    # =========================================================================

    def _relevant(
        self, owner_id: str, agent_id: str, session_id: UUID | None, prefs: ResolvedPreferences
    ) -> list[Any]:
        conditions: list[Any] = [
            col(ConversationMessage.owner_id) == owner_id,
            col(ConversationMessage.agent_id) == agent_id,
            col(ConversationMessage.is_context_relevant).is_(True),
            col(ConversationSession.status).in_(_READABLE),
        ]
        if session_id is not None:
            conditions.append(col(ConversationMessage.session_id) == session_id)
        if not prefs.retain_system_messages:
            conditions.append(col(ConversationMessage.role) != MessageRole.system.value)
            conditions.append(col(ConversationMessage.message_type) != MessageType.system.value)
        if not prefs.retain_error_messages:
            conditions.append(col(ConversationMessage.message_type) != MessageType.error.value)
        return conditions

    async def _fetch_relevant(
        self, conditions: list[Any], *, offset: int, limit: int
    ) -> list[ConversationMessage]:
        """Relevant messages newest first."""
        stmt = (
            select(ConversationMessage)
            .join(
                ConversationSession,
                col(ConversationSession.id) == col(ConversationMessage.session_id),
            )
            .where(*conditions)
            .order_by(col(ConversationMessage.created_at).desc())
            .offset(offset)
            .limit(limit)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def _count_relevant(self, conditions: list[Any]) -> int:
        stmt = (
            select(func.count())
            .select_from(ConversationMessage)
            .join(
                ConversationSession,
                col(ConversationSession.id) == col(ConversationMessage.session_id),
            )
            .where(*conditions)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return result.scalar_one()

    async def get_context(
        self,
        owner_id: str,
        agent_id: str,
        session_id: UUID | None = None,
        limit: int | None = None,
        summarize: bool = True,
    ) -> ConversationContext:
        """Bounded context window for an agent, oldest message first.

        Never returns more than ``min(limit, max_context_messages)`` messages,
        and messages plus summary never exceed ``max_context_tokens``.
        """
        return await self._build_context(
            owner_id, agent_id, session_id, limit, summarize=summarize, force_refresh=False
        )

    async def _build_context(
        self,
        owner_id: str,
        agent_id: str,
        session_id: UUID | None,
        limit: int | None,
        *,
        summarize: bool,
        force_refresh: bool,
    ) -> ConversationContext:
        prefs = await self.get_preferences(owner_id, agent_id)
        max_messages = prefs.max_context_messages
        if limit is not None:
            if limit < 1:
                raise ValidationFault("limit must be >= 1", details={"limit": limit})
            max_messages = min(limit, max_messages)
        max_tokens = prefs.max_context_tokens

        conditions = self._relevant(owner_id, agent_id, session_id, prefs)
        total = await self._count_relevant(conditions)
        newest = await self._fetch_relevant(conditions, offset=0, limit=max_messages)

        kept: list[ConversationMessage] = []
        tokens = 0
        for message in newest:
            if tokens + message.token_count > max_tokens:
                break
            kept.append(message)
            tokens += message.token_count
        dropped = total - len(kept)

        summary: str | None = None
        if summarize and dropped > 0 and total >= self.settings.summary_min_messages:
            summary = await self._summary_for(
                owner_id,
                agent_id,
                session_id,
                conditions,
                window=len(kept),
                dropped=dropped,
                force_refresh=force_refresh,
            )
        if summary is not None:
            summary_tokens = self.estimate_tokens(summary)
            if summary_tokens > max_tokens:
                summary = None
            else:
                # Make room for the summary by dropping the oldest kept messages
                while kept and tokens + summary_tokens > max_tokens:
                    tokens -= kept.pop().token_count
                    dropped += 1
                tokens += summary_tokens

        kept.reverse()
        return ConversationContext(
            messages=kept,
            summary=summary,
            total_tokens=tokens,
            message_count=total,
            dropped_count=dropped,
        )

    def _cache_key(self, owner_id: str, session_id: UUID | None) -> str:
        return str(session_id) if session_id is not None else f"owner:{owner_id}"

    async def _summary_for(
        self,
        owner_id: str,
        agent_id: str,
        session_id: UUID | None,
        conditions: list[Any],
        *,
        window: int,
        dropped: int,
        force_refresh: bool,
    ) -> str | None:
        cache_key = self._cache_key(owner_id, session_id)
        if not force_refresh:
            cached = await self._cached_summary(cache_key, agent_id)
            if cached is not None:
                return cached
        if self.summarizer is None:
            return None

        source = await self._fetch_relevant(
            conditions,
            offset=window,
            limit=min(dropped, self.settings.summary_source_max_messages),
        )
        source.reverse()
        try:
            summary = await self.summarizer.summarize(
                [{"role": m.role, "content": m.content} for m in source]
            )
        except Exception as e:
            log.warning(
                "context_summary_unavailable",
                owner_id=owner_id,
                agent_id=agent_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

        await self._store_summary(
            cache_key,
            agent_id,
            owner_id,
            session_id,
            summary,
            message_count=len(source),
            total_tokens=sum(m.token_count for m in source),
        )
        return summary

    async def _cached_summary(self, cache_key: str, agent_id: str) -> str | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(ContextCache.context_summary).where(
                    col(ContextCache.cache_key) == cache_key,
                    col(ContextCache.agent_id) == agent_id,
                    col(ContextCache.expires_at) > utcnow_naive(),
                )
            )
            return result.scalar_one_or_none()

    async def _store_summary(
        self,
        cache_key: str,
        agent_id: str,
        owner_id: str,
        session_id: UUID | None,
        summary: str,
        *,
        message_count: int,
        total_tokens: int,
    ) -> None:
        now = utcnow_naive()
        stmt = self.db.upsert(
            ContextCache.__table__,
            {
                "id": uuid4(),
                "cache_key": cache_key,
                "agent_id": agent_id,
                "owner_id": owner_id,
                "session_id": session_id,
                "context_summary": summary,
                "message_count": message_count,
                "total_tokens": total_tokens,
                "last_updated_at": now,
                "expires_at": now + timedelta(seconds=self.settings.summary_ttl_seconds),
            },
            index_elements=("cache_key", "agent_id"),
            update_fields=(
                "context_summary",
                "message_count",
                "total_tokens",
                "last_updated_at",
                "expires_at",
            ),
        )
        async with self.db.session() as session:
            await session.execute(stmt)
            if session_id is not None:
                await session.execute(
                    update(ConversationSession)
                    .where(col(ConversationSession.id) == session_id)
                    .values(context_summary=summary)
                    .execution_options(synchronize_session=False)
                )
            await session.commit()
        log.info("context_summary_cached", cache_key=cache_key, agent_id=agent_id)

    async def refresh_summary(self, owner_id: str, agent_id: str, session_id: UUID) -> None:
        """Regenerate the cached summary for a session, ignoring any unexpired entry."""
        await self._build_context(
            owner_id, agent_id, session_id, None, summarize=True, force_refresh=True
        )

    async def format_context(
        self,
        owner_id: str,
        agent_id: str,
        session_id: UUID | None = None,
        *,
        agent_label: str | None = None,
    ) -> str:
        """Summary plus transcript, ready to prepend to an agent prompt."""
        context = await self.get_context(owner_id, agent_id, session_id)
        if not context.messages:
            return ""

        label = agent_label or agent_id.capitalize()
        parts: list[str] = []
        if context.summary:
            parts.append(f"Previous conversation summary: {context.summary}\n")
        parts.append("Recent conversation:")
        for message in context.messages:
            if message.role == MessageRole.user:
                speaker = "User"
            elif message.role == MessageRole.assistant:
                speaker = label
            else:
                speaker = "System"
            parts.append(f"[{message.created_at:%Y-%m-%d %H:%M}] {speaker}: {message.content}")
        return "\n".join(parts)

    # =========================================================================
    # Preferences
    # =========================================================================

    async def get_preferences(self, owner_id: str, agent_id: str) -> ResolvedPreferences:
        async with self.db.session() as session:
            result = await session.execute(
                select(MemoryPreferences).where(
                    col(MemoryPreferences.owner_id) == owner_id,
                    col(MemoryPreferences.agent_id) == agent_id,
                )
            )
            row = result.scalar_one_or_none()
        if row is None:
            return ResolvedPreferences.defaults(self.settings, agent_id)
        return ResolvedPreferences.from_row(row)

    async def update_preferences(
        self, owner_id: str, agent_id: str, changes: PreferencesUpdate
    ) -> ResolvedPreferences:
        current = await self.get_preferences(owner_id, agent_id)
        updated = changes.apply(current)
        now = utcnow_naive()
        fields = updated.model_dump(exclude={"is_default"})
        stmt = self.db.upsert(
            MemoryPreferences.__table__,
            {
                "id": uuid4(),
                "owner_id": owner_id,
                "agent_id": agent_id,
                "created_at": now,
                "updated_at": now,
                **fields,
            },
            index_elements=("owner_id", "agent_id"),
            update_fields=(*fields, "updated_at"),
        )
        async with self.db.session() as session:
            await session.execute(stmt)
            await session.commit()
        log.info("memory_preferences_updated", owner_id=owner_id, agent_id=agent_id)
        return updated

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def cleanup_old_messages(
        self, retention_days: int | None = None, owner_id: str | None = None
    ) -> MessageCleanupStats:
        """Apply message retention.

        Sessions about to lose context get a summary first. Messages older
        than ``retention_days`` then stop being context-relevant (system and
        error messages are kept), and irrelevant messages older than twice
        that are deleted. ``owner_id=None`` sweeps every owner.
        """
        days = self.settings.message_retention_days if retention_days is None else retention_days
        if days < 1:
            raise ValidationFault("retention_days must be >= 1", details={"days": days})
        now = utcnow_naive()
        cutoff = now - timedelta(days=days)
        hard_cutoff = now - timedelta(days=2 * days)
        owned = [] if owner_id is None else [col(ConversationMessage.owner_id) == owner_id]
        expiring = [
            *owned,
            col(ConversationMessage.created_at) < cutoff,
            col(ConversationMessage.is_context_relevant).is_(True),
            col(ConversationMessage.message_type).not_in(_PRESERVED_TYPES),
        ]

        stats = MessageCleanupStats()
        stats.summaries_written = await self._summarize_expiring(expiring)

        async with self.db.session() as session:
            soft = await session.execute(
                update(ConversationMessage)
                .where(*expiring)
                .values(is_context_relevant=False)
                .execution_options(synchronize_session=False)
            )
            doomed = select(ConversationMessage.id).where(
                *owned,
                col(ConversationMessage.created_at) < hard_cutoff,
                col(ConversationMessage.is_context_relevant).is_(False),
            )
            # Surviving replies keep their row but lose the link to a deleted parent
            await session.execute(
                update(ConversationMessage)
                .where(col(ConversationMessage.parent_message_id).in_(doomed))
                .values(parent_message_id=None)
                .execution_options(synchronize_session=False)
            )
            hard = await session.execute(
                delete(ConversationMessage)
                .where(col(ConversationMessage.id).in_(doomed))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        stats.soft_deleted = soft.rowcount or 0
        stats.hard_deleted = hard.rowcount or 0

        log.info(
            "conversation_messages_cleaned",
            owner_id=owner_id,
            retention_days=days,
            summaries=stats.summaries_written,
            soft_deleted=stats.soft_deleted,
            hard_deleted=stats.hard_deleted,
        )
        return stats

    async def _summarize_expiring(self, expiring: list[Any]) -> int:
        """Summarize sessions that have no summary yet and are about to lose context."""
        if self.summarizer is None:
            return 0
        async with self.db.session() as session:
            result = await session.execute(
                select(ConversationSession).where(
                    col(ConversationSession.context_summary).is_(None),
                    col(ConversationSession.id).in_(
                        select(ConversationMessage.session_id).where(*expiring)
                    ),
                )
            )
            sessions = result.scalars().all()

        written = 0
        for conv in sessions:
            async with self.db.session() as session:
                result = await session.execute(
                    select(ConversationMessage)
                    .where(col(ConversationMessage.session_id) == conv.id, *expiring)
                    .order_by(col(ConversationMessage.created_at).desc())
                    .limit(self.settings.summary_source_max_messages)
                )
                source = list(result.scalars().all())
            source.reverse()
            try:
                summary = await self.summarizer.summarize(
                    [{"role": m.role, "content": m.content} for m in source]
                )
            except Exception as e:
                log.warning(
                    "retention_summary_unavailable",
                    session_id=str(conv.id),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                continue
            async with self.db.session() as session:
                await session.execute(
                    update(ConversationSession)
                    .where(col(ConversationSession.id) == conv.id)
                    .values(context_summary=summary, updated_at=utcnow_naive())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            written += 1
        return written

    async def cleanup_expired_cache(self) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                delete(ContextCache)
                .where(col(ContextCache.expires_at) < utcnow_naive())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            log.info("context_cache_cleaned", count=removed)
        return removed

    def _fire_and_forget(self, coro: Coroutine[Any, Any, Any], *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.warning(
                "background_summary_failed",
                task=task.get_name(),
                error=str(task.exception()),
            )

    async def drain(self) -> None:
        """Wait for scheduled background summarization (shutdown and tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
