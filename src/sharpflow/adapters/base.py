"""Shared helpers for external capability calls.

Every call out of the process goes through ``call_with_timeout`` so an
unresponsive collaborator surfaces as a TransientFault instead of hanging
a worker or request.
"""

import asyncio
import json
import re
from collections.abc import Awaitable
from typing import Any, TypeVar

from sharpflow.errors import TerminalPipelineFault, TransientFault, classify_exception

T = TypeVar("T")

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, *, operation: str) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    Timeouts become TransientFault; other errors are mapped through
    ``classify_exception``.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except TimeoutError as e:
        raise TransientFault(
            f"{operation} timed out after {timeout:g}s",
            details={"operation": operation, "timeout": timeout},
        ) from e
    except Exception as e:
        fault = classify_exception(e)
        if fault is e:
            raise
        fault.details.setdefault("operation", operation)
        raise fault from e


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    return match.group(1).strip() if match else stripped


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a model answer that should be a single JSON object."""
    body = strip_code_fences(text)
    try:
        value = json.loads(body)
    except json.JSONDecodeError:
        # Tolerate prose around the object
        start, end = body.find("{"), body.rfind("}")
        if start == -1 or end <= start:
            raise TerminalPipelineFault("Answer is not JSON") from None
        try:
            value = json.loads(body[start : end + 1])
        except json.JSONDecodeError as e:
            raise TerminalPipelineFault(f"Answer is not JSON: {e.msg}") from e
    if not isinstance(value, dict):
        raise TerminalPipelineFault("Answer is not a JSON object")
    return value
