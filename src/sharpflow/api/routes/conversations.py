"""Conversation memory endpoints, scoped to the authenticated owner."""

from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Path, Query
from pydantic import BaseModel, Field

from sharpflow.api.auth import get_owner_id
from sharpflow.api.dependencies import get_memory
from sharpflow.db import ConversationMessage, ConversationSession, MessageRole, MessageType
from sharpflow.memory import ConversationMemoryManager, PreferencesUpdate, ResolvedPreferences

router = APIRouter(prefix="/conversations", tags=["Conversations"])

AGENT_ID_PATTERN = r"^[a-z][a-z0-9_-]{0,31}$"


# =============================================================================
# Request/Response Models
# =============================================================================


class AppendMessageRequest(BaseModel):
    role: MessageRole
    content: str = Field(..., min_length=1, max_length=50_000)
    session_id: UUID | None = None
    message_type: MessageType = MessageType.chat
    is_context_relevant: bool = True
    parent_message_id: UUID | None = None
    context_data: dict[str, Any] | None = None


class MessageResponse(BaseModel):
    id: str
    session_id: str
    role: str
    content: str
    message_type: str
    is_context_relevant: bool
    token_count: int
    parent_message_id: str | None
    created_at: datetime

    @classmethod
    def from_model(cls, message: ConversationMessage) -> "MessageResponse":
        return cls(
            id=str(message.id),
            session_id=str(message.session_id),
            role=message.role,
            content=message.content,
            message_type=message.message_type,
            is_context_relevant=message.is_context_relevant,
            token_count=message.token_count,
            parent_message_id=str(message.parent_message_id)
            if message.parent_message_id
            else None,
            created_at=message.created_at,
        )


class MessagesListResponse(BaseModel):
    messages: list[MessageResponse]
    count: int


class ContextResponse(BaseModel):
    messages: list[MessageResponse]
    summary: str | None
    total_tokens: int
    message_count: int
    dropped_count: int


class SessionResponse(BaseModel):
    id: str
    agent_id: str
    status: str
    title: str
    last_activity_at: datetime

    @classmethod
    def from_model(cls, session: ConversationSession) -> "SessionResponse":
        return cls(
            id=str(session.id),
            agent_id=session.agent_id,
            status=session.status,
            title=session.title,
            last_activity_at=session.last_activity_at,
        )


class ArchiveRequest(BaseModel):
    days_threshold: int = Field(30, ge=0, le=3650)


class ArchiveResponse(BaseModel):
    archived: int


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/archive", response_model=ArchiveResponse)
async def archive_sessions(
    request: ArchiveRequest,
    owner_id: str = Depends(get_owner_id),
    memory: ConversationMemoryManager = Depends(get_memory),
) -> ArchiveResponse:
    """Archive this owner's sessions idle longer than the threshold."""
    return ArchiveResponse(
        archived=await memory.archive_old_sessions(owner_id, request.days_threshold)
    )


AgentId = Annotated[
    str, Path(pattern=AGENT_ID_PATTERN, description="Agent the conversation is with")
]


@router.get("/{agent_id}/sessions", response_model=list[SessionResponse])
async def list_sessions(
    agent_id: AgentId,
    include_archived: bool = Query(False),
    owner_id: str = Depends(get_owner_id),
    memory: ConversationMemoryManager = Depends(get_memory),
) -> list[SessionResponse]:
    sessions = await memory.list_sessions(owner_id, agent_id, include_archived=include_archived)
    return [SessionResponse.from_model(s) for s in sessions]


@router.post("/{agent_id}/sessions/{session_id}/pause", response_model=dict)
async def pause_session(
    session_id: UUID,
    agent_id: AgentId,
    owner_id: str = Depends(get_owner_id),
    memory: ConversationMemoryManager = Depends(get_memory),
) -> dict[str, Any]:
    paused = await memory.pause_session(owner_id, session_id, agent_id)
    return {"session_id": str(session_id), "paused": paused}


@router.get("/{agent_id}/messages", response_model=MessagesListResponse)
async def get_history(
    agent_id: AgentId,
    session_id: UUID | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    owner_id: str = Depends(get_owner_id),
    memory: ConversationMemoryManager = Depends(get_memory),
) -> MessagesListResponse:
    """Most recent messages, oldest first, for display."""
    messages = await memory.get_history(owner_id, agent_id, session_id, limit)
    return MessagesListResponse(
        messages=[MessageResponse.from_model(m) for m in messages], count=len(messages)
    )


@router.post("/{agent_id}/messages", response_model=MessageResponse, status_code=201)
async def append_message(
    request: AppendMessageRequest,
    agent_id: AgentId,
    owner_id: str = Depends(get_owner_id),
    memory: ConversationMemoryManager = Depends(get_memory),
) -> MessageResponse:
    message = await memory.append_message(
        owner_id,
        agent_id,
        request.role,
        request.content,
        session_id=request.session_id,
        message_type=request.message_type,
        is_context_relevant=request.is_context_relevant,
        parent_message_id=request.parent_message_id,
        context_data=request.context_data,
    )
    return MessageResponse.from_model(message)


@router.get("/{agent_id}/context", response_model=ContextResponse)
async def get_context(
    agent_id: AgentId,
    session_id: UUID | None = Query(None),
    limit: int | None = Query(None, ge=1, le=500),
    owner_id: str = Depends(get_owner_id),
    memory: ConversationMemoryManager = Depends(get_memory),
) -> ContextResponse:
    """Bounded context window plus cached summary, as an agent would receive it."""
    context = await memory.get_context(owner_id, agent_id, session_id=session_id, limit=limit)
    return ContextResponse(
        messages=[MessageResponse.from_model(m) for m in context.messages],
        summary=context.summary,
        total_tokens=context.total_tokens,
        message_count=context.message_count,
        dropped_count=context.dropped_count,
    )


@router.get("/{agent_id}/preferences", response_model=ResolvedPreferences)
async def get_preferences(
    agent_id: AgentId,
    owner_id: str = Depends(get_owner_id),
    memory: ConversationMemoryManager = Depends(get_memory),
) -> ResolvedPreferences:
    return await memory.get_preferences(owner_id, agent_id)


@router.put("/{agent_id}/preferences", response_model=ResolvedPreferences)
async def update_preferences(
    request: PreferencesUpdate,
    agent_id: AgentId,
    owner_id: str = Depends(get_owner_id),
    memory: ConversationMemoryManager = Depends(get_memory),
) -> ResolvedPreferences:
    return await memory.update_preferences(owner_id, agent_id, request)
