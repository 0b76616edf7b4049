"""Natural-language entry point: classify an utterance and optionally run it."""

from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from sharpflow.api.auth import get_owner_id
from sharpflow.api.dependencies import get_intent_router, get_memory, get_submission
from sharpflow.db import MessageRole, MessageType
from sharpflow.errors import ValidationFault
from sharpflow.jobs.submission import JobSubmissionService
from sharpflow.memory import ConversationMemoryManager
from sharpflow.routing import IntentResult, IntentRouter
from sharpflow.routing.router import ROUTER_AGENT_ID

log = structlog.get_logger()

router = APIRouter(prefix="/intents", tags=["Intents"])


class ClassifyRequest(BaseModel):
    utterance: str = Field(..., max_length=4000)
    session_id: UUID | None = Field(None, description="Conversation to take context from")


class IntentResponse(BaseModel):
    type: str
    confidence: float
    required_worker: str | None
    parameters: dict[str, Any]
    source: str
    missing_parameters: list[str]

    @classmethod
    def from_result(cls, result: IntentResult) -> "IntentResponse":
        return cls(**result.to_dict())


class DispatchResponse(BaseModel):
    intent: IntentResponse
    job_id: str | None = None
    session_id: str
    reply: str


def _reply_for(result: IntentResult, job_id: str | None) -> str:
    if job_id is not None:
        return f"Started {result.type.value} job {job_id} on the {result.required_worker} worker."
    if result.missing_parameters:
        return (
            f"To run {result.type.value} I still need: "
            + ", ".join(result.missing_parameters)
            + "."
        )
    return "I can find leads, research profiles, run message campaigns or check an inbox."


@router.post("/classify", response_model=IntentResponse)
async def classify_intent(
    request: ClassifyRequest,
    owner_id: str = Depends(get_owner_id),
    intent_router: IntentRouter = Depends(get_intent_router),
) -> IntentResponse:
    """Classify without side effects."""
    result = await intent_router.classify(request.utterance, owner_id, request.session_id)
    return IntentResponse.from_result(result)


@router.post("/dispatch", response_model=DispatchResponse)
async def dispatch_intent(
    request: ClassifyRequest,
    owner_id: str = Depends(get_owner_id),
    intent_router: IntentRouter = Depends(get_intent_router),
    submission: JobSubmissionService = Depends(get_submission),
    memory: ConversationMemoryManager = Depends(get_memory),
) -> DispatchResponse:
    """Classify, submit the job when the request is complete, and record the exchange."""
    result = await intent_router.classify(request.utterance, owner_id, request.session_id)

    user_message = await memory.append_message(
        owner_id,
        ROUTER_AGENT_ID,
        MessageRole.user,
        request.utterance,
        session_id=request.session_id,
        message_type=MessageType.command if result.is_actionable else MessageType.chat,
        context_data={"intent": result.to_dict()},
    )

    job_id: str | None = None
    if result.is_actionable:
        try:
            job_id = str(await submission.submit_from_intent(owner_id, result))
        except ValidationFault as e:
            await memory.append_message(
                owner_id,
                ROUTER_AGENT_ID,
                MessageRole.assistant,
                f"Could not start {result.type.value}: {e.message}",
                session_id=user_message.session_id,
                message_type=MessageType.error,
                parent_message_id=user_message.id,
            )
            raise

    reply = _reply_for(result, job_id)
    await memory.append_message(
        owner_id,
        ROUTER_AGENT_ID,
        MessageRole.assistant,
        reply,
        session_id=user_message.session_id,
        message_type=MessageType.result if job_id else MessageType.chat,
        parent_message_id=user_message.id,
        context_data={"job_id": job_id} if job_id else None,
    )
    log.info("intent_dispatched", owner_id=owner_id, intent=result.type, job_id=job_id)

    return DispatchResponse(
        intent=IntentResponse.from_result(result),
        job_id=job_id,
        session_id=str(user_message.session_id),
        reply=reply,
    )
