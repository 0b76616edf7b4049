"""Common plumbing for adapters backed by the Anthropic messages API."""

from typing import Any

import anthropic

from sharpflow.adapters.base import call_with_timeout
from sharpflow.errors import TerminalPipelineFault, TransientFault

_TRANSIENT_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
)


class AnthropicAdapter:
    """Lazily creates one ``AsyncAnthropic`` client per adapter."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        timeout: float,
        client: Any = None,
    ) -> None:
        self._api_key = api_key or None
        self.model = model
        self.timeout = timeout
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None or self._api_key is not None

    def _get_client(self) -> Any:
        if self._client is None:
            if self._api_key is None:
                raise TerminalPipelineFault("Anthropic API key is not configured")
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def _create(self, prompt: str, *, system: str, max_tokens: int, operation: str) -> Any:
        client = self._get_client()
        try:
            return await client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except _TRANSIENT_ERRORS as e:
            raise TransientFault(f"{operation} unavailable: {type(e).__name__}") from e
        except anthropic.APIStatusError as e:
            raise TerminalPipelineFault(
                f"{operation} rejected: HTTP {e.status_code}",
                details={"status_code": e.status_code},
            ) from e

    async def _complete(
        self,
        prompt: str,
        *,
        system: str,
        max_tokens: int,
        operation: str,
    ) -> str:
        message = await call_with_timeout(
            self._create(prompt, system=system, max_tokens=max_tokens, operation=operation),
            self.timeout,
            operation=operation,
        )
        content_block = message.content[0] if message.content else None
        return getattr(content_block, "text", "").strip()
