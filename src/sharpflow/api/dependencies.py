"""FastAPI dependencies resolving the per-process components from app state."""

from fastapi import Request

from sharpflow.jobs.submission import JobSubmissionService
from sharpflow.memory import ConversationMemoryManager
from sharpflow.routing import IntentRouter


def get_submission(request: Request) -> JobSubmissionService:
    return request.app.state.submission


def get_memory(request: Request) -> ConversationMemoryManager:
    return request.app.state.memory


def get_intent_router(request: Request) -> IntentRouter:
    return request.app.state.router
