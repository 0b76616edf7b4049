"""Task execution capabilities called by the worker pipelines.

Each capability is one request/response call against the capability
gateway. Pipelines depend only on the Protocols, so tests substitute
in-memory fakes.

HTTP error mapping (via ``classify_exception``):
    408, 425, 429, 5xx -> TransientFault (retried)
    other 4xx          -> TerminalPipelineFault (job fails)
"""

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from sharpflow.adapters.base import call_with_timeout
from sharpflow.config import Settings
from sharpflow.errors import TerminalPipelineFault

log = structlog.get_logger()


# =============================================================================
# Capability protocols
# =============================================================================


class LeadSearch(Protocol):
    async def search(self, criteria: dict[str, Any]) -> list[dict[str, Any]]: ...


class ProfileFetcher(Protocol):
    async def fetch(self, linkedin_url: str) -> dict[str, Any]: ...


class OrganizationResearch(Protocol):
    async def research(self, company: str | None, website: str | None) -> dict[str, Any]: ...


class ReputationLookup(Protocol):
    async def lookup(self, domain: str | None) -> dict[str, Any]: ...


class NarrativeSynthesizer(Protocol):
    async def synthesize(
        self,
        profile: dict[str, Any],
        organization: dict[str, Any],
        reputation: dict[str, Any],
    ) -> dict[str, Any]: ...


class MessageDelivery(Protocol):
    async def deliver(self, campaign_id: str, lead_id: str, channel: str) -> dict[str, Any]: ...


class InboxReader(Protocol):
    async def read(
        self, mailbox: str, *, since: str | None, max_messages: int
    ) -> list[dict[str, Any]]: ...


@dataclass
class Capabilities:
    """The full set of execution capabilities a worker pool needs."""

    lead_search: LeadSearch
    profile_fetcher: ProfileFetcher
    organization_research: OrganizationResearch
    reputation_lookup: ReputationLookup
    narrative_synthesizer: NarrativeSynthesizer
    message_delivery: MessageDelivery
    inbox_reader: InboxReader


# =============================================================================
# HTTP implementations
# =============================================================================


class HttpCapability:
    """One POST endpoint on the capability gateway."""

    path: str = ""
    operation: str = ""

    def __init__(self, client: httpx.AsyncClient, *, timeout: float) -> None:
        self._client = client
        self.timeout = timeout

    async def _send(self, body: dict[str, Any]) -> Any:
        response = await self._client.post(self.path, json=body)
        response.raise_for_status()
        return response.json()

    async def _post(self, body: dict[str, Any]) -> Any:
        data = await call_with_timeout(self._send(body), self.timeout, operation=self.operation)
        log.debug("capability_called", operation=self.operation)
        return data

    async def _post_object(self, body: dict[str, Any]) -> dict[str, Any]:
        data = await self._post(body)
        if not isinstance(data, dict):
            raise TerminalPipelineFault(f"{self.operation} returned a non-object response")
        return data

    async def _post_items(self, body: dict[str, Any], key: str) -> list[dict[str, Any]]:
        data = await self._post_object(body)
        items = data.get(key, [])
        if not isinstance(items, list):
            raise TerminalPipelineFault(f"{self.operation} returned malformed '{key}'")
        return [item for item in items if isinstance(item, dict)]


class HttpLeadSearch(HttpCapability):
    path = "/leads/search"
    operation = "lead_search"

    async def search(self, criteria: dict[str, Any]) -> list[dict[str, Any]]:
        return await self._post_items(criteria, "leads")


class HttpProfileFetcher(HttpCapability):
    path = "/profiles/fetch"
    operation = "profile_fetch"

    async def fetch(self, linkedin_url: str) -> dict[str, Any]:
        return await self._post_object({"linkedinUrl": linkedin_url})


class HttpOrganizationResearch(HttpCapability):
    path = "/organizations/research"
    operation = "organization_research"

    async def research(self, company: str | None, website: str | None) -> dict[str, Any]:
        return await self._post_object({"company": company, "website": website})


class HttpReputationLookup(HttpCapability):
    path = "/reputation/lookup"
    operation = "reputation_lookup"

    async def lookup(self, domain: str | None) -> dict[str, Any]:
        if not domain:
            return {"reviews": [], "rating": None}
        return await self._post_object({"domain": domain})


class HttpNarrativeSynthesizer(HttpCapability):
    path = "/narratives/synthesize"
    operation = "narrative_synthesis"

    async def synthesize(
        self,
        profile: dict[str, Any],
        organization: dict[str, Any],
        reputation: dict[str, Any],
    ) -> dict[str, Any]:
        return await self._post_object(
            {"profile": profile, "organization": organization, "reputation": reputation}
        )


class HttpMessageDelivery(HttpCapability):
    path = "/messages/deliver"
    operation = "message_delivery"

    async def deliver(self, campaign_id: str, lead_id: str, channel: str) -> dict[str, Any]:
        return await self._post_object(
            {"campaignId": campaign_id, "leadId": lead_id, "channel": channel}
        )


class HttpInboxReader(HttpCapability):
    path = "/inbox/read"
    operation = "inbox_read"

    async def read(
        self, mailbox: str, *, since: str | None, max_messages: int
    ) -> list[dict[str, Any]]:
        return await self._post_items(
            {"mailbox": mailbox, "since": since, "maxMessages": max_messages}, "messages"
        )


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    headers = {"User-Agent": "sharpflow-worker"}
    api_key = settings.capabilities_api_key.get_secret_value()
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    # Per-call deadlines come from call_with_timeout; this only bounds connects
    return httpx.AsyncClient(
        base_url=settings.capabilities_base_url,
        headers=headers,
        timeout=httpx.Timeout(None, connect=10.0),
    )


def build_http_capabilities(settings: Settings, client: httpx.AsyncClient) -> Capabilities:
    execution = settings.execution_timeout
    return Capabilities(
        lead_search=HttpLeadSearch(client, timeout=execution),
        profile_fetcher=HttpProfileFetcher(client, timeout=execution),
        organization_research=HttpOrganizationResearch(client, timeout=execution),
        reputation_lookup=HttpReputationLookup(client, timeout=execution),
        narrative_synthesizer=HttpNarrativeSynthesizer(client, timeout=execution),
        message_delivery=HttpMessageDelivery(client, timeout=settings.delivery_timeout),
        inbox_reader=HttpInboxReader(client, timeout=settings.delivery_timeout),
    )
