"""Fixed, ordered pipelines run by the workers.

Each step declares the progress value reached once it finishes. Steps write
their results through ``ArtifactStore.upsert`` keyed by a natural key, so
re-running a pipeline after a crash or retry overwrites instead of
duplicating, and usage is recorded once per job.

    lead_generation   start 10 -> search 50 -> store 80 -> usage 90 -> 100
    profile_research  start 5 -> profile 20 -> organization 40 -> reputation 60
                      -> narrative 80 -> report 90 -> 100
    message_campaign  start 10 -> per lead 10 + 80 * done / total -> 100
    inbox_monitoring  start 10 -> fetch 50 -> store 90 -> 100
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

import structlog
from pydantic import BaseModel

from sharpflow.adapters.execution import Capabilities
from sharpflow.db.models import ArtifactKind, TaskType
from sharpflow.errors import TerminalPipelineFault, TransientFault
from sharpflow.jobs.artifacts import ArtifactStore
from sharpflow.jobs.schemas import (
    InboxMonitoringPayload,
    LeadGenerationPayload,
    MessageCampaignPayload,
    ProfileResearchPayload,
)

log = structlog.get_logger()


@dataclass
class PipelineContext:
    """Everything one pipeline run may touch. Lives for a single delivery."""

    job_id: UUID
    owner_id: str
    attempt: int
    payload: Any
    capabilities: Capabilities
    artifacts: ArtifactStore
    report_progress: Callable[[int], Awaitable[None]]
    check_cancelled: Callable[[], Awaitable[None]]
    state: dict[str, Any] = field(default_factory=dict)


StepFn = Callable[[PipelineContext], Awaitable[None]]


@dataclass(frozen=True)
class PipelineStep:
    name: str
    progress: int
    run: StepFn


@dataclass(frozen=True)
class Pipeline:
    task_type: TaskType
    payload_model: type[BaseModel]
    start_progress: int
    steps: tuple[PipelineStep, ...]
    result: Callable[[PipelineContext], dict[str, Any]]


# =============================================================================
# lead_generation
# =============================================================================


def lead_key(lead: dict[str, Any]) -> str | None:
    """Stable identity of a lead: profile URL, then email, then name + company."""
    for key in ("linkedinUrl", "linkedin_url", "email"):
        value = lead.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip().lower().rstrip("/")
    name = str(lead.get("name") or "").strip().lower()
    company = str(lead.get("company") or "").strip().lower()
    if name and company:
        return f"{name}|{company}"
    return None


async def _search_leads(ctx: PipelineContext) -> None:
    payload: LeadGenerationPayload = ctx.payload
    ctx.state["leads"] = await ctx.capabilities.lead_search.search(
        {
            "locations": payload.locations,
            "businesses": payload.businesses,
            "jobTitles": payload.job_titles,
            "maxResults": payload.max_results,
        }
    )


async def _store_leads(ctx: PipelineContext) -> None:
    payload: LeadGenerationPayload = ctx.payload
    criteria = payload.model_dump(by_alias=True)
    keys: list[str] = []
    for lead in ctx.state.get("leads", []):
        key = lead_key(lead)
        if key is None or key in keys:
            continue
        await ctx.artifacts.upsert(
            ctx.owner_id, ctx.job_id, ArtifactKind.LEAD, key, {**lead, "searchCriteria": criteria}
        )
        keys.append(key)
    ctx.state["lead_keys"] = keys


async def _record_lead_usage(ctx: PipelineContext) -> None:
    count = len(ctx.state.get("lead_keys", []))
    await ctx.artifacts.upsert(
        ctx.owner_id,
        ctx.job_id,
        ArtifactKind.USAGE,
        f"lead_generation:{ctx.job_id}",
        {"taskType": TaskType.LEAD_GENERATION.value, "leads": count},
    )


def _lead_result(ctx: PipelineContext) -> dict[str, Any]:
    keys = ctx.state.get("lead_keys", [])
    return {"leadsFound": len(keys), "leadKeys": keys[:100]}


# =============================================================================
# profile_research
# =============================================================================


def _domain(profile: dict[str, Any], organization: dict[str, Any]) -> str | None:
    domain = profile.get("companyDomain") or organization.get("domain")
    if domain:
        return str(domain)
    website = profile.get("companyWebsite") or organization.get("website")
    if website:
        host = urlparse(website if "//" in website else f"https://{website}").hostname
        return host.removeprefix("www.") if host else None
    return None


async def _fetch_profile(ctx: PipelineContext) -> None:
    payload: ProfileResearchPayload = ctx.payload
    profile = await ctx.capabilities.profile_fetcher.fetch(payload.linkedin_url)
    if not profile:
        raise TerminalPipelineFault("Profile not found", details={"url": payload.linkedin_url})
    ctx.state["profile"] = profile


async def _research_organization(ctx: PipelineContext) -> None:
    profile = ctx.state["profile"]
    ctx.state["organization"] = await ctx.capabilities.organization_research.research(
        profile.get("company"), profile.get("companyWebsite")
    )


async def _reputation_signals(ctx: PipelineContext) -> None:
    domain = _domain(ctx.state["profile"], ctx.state["organization"])
    ctx.state["reputation"] = await ctx.capabilities.reputation_lookup.lookup(domain)


async def _synthesize_narrative(ctx: PipelineContext) -> None:
    ctx.state["narrative"] = await ctx.capabilities.narrative_synthesizer.synthesize(
        ctx.state["profile"], ctx.state["organization"], ctx.state["reputation"]
    )


async def _persist_report(ctx: PipelineContext) -> None:
    payload: ProfileResearchPayload = ctx.payload
    key = payload.linkedin_url.lower()
    await ctx.artifacts.upsert(
        ctx.owner_id,
        ctx.job_id,
        ArtifactKind.RESEARCH_REPORT,
        key,
        {
            "linkedinUrl": payload.linkedin_url,
            "leadId": payload.lead_id,
            "profile": ctx.state["profile"],
            "organization": ctx.state["organization"],
            "reputation": ctx.state["reputation"],
            "narrative": ctx.state["narrative"],
        },
    )
    ctx.state["report_key"] = key


def _research_result(ctx: PipelineContext) -> dict[str, Any]:
    profile = ctx.state.get("profile", {})
    return {
        "reportKey": ctx.state.get("report_key"),
        "name": profile.get("name"),
        "company": profile.get("company"),
    }


# =============================================================================
# message_campaign
# =============================================================================

CAMPAIGN_START = 10
CAMPAIGN_SPAN = 80


async def _deliver_messages(ctx: PipelineContext) -> None:
    """Deliver to each lead once; a failed lead is counted, not fatal."""
    payload: MessageCampaignPayload = ctx.payload
    total = len(payload.lead_ids)
    sent = skipped = 0
    failures: dict[str, str] = {}
    transient_failures = 0

    for done, lead_id in enumerate(payload.lead_ids, start=1):
        await ctx.check_cancelled()
        key = f"{payload.campaign_id}:{lead_id}"
        if await ctx.artifacts.exists(ctx.owner_id, ArtifactKind.MESSAGE_DELIVERY, key):
            skipped += 1
        else:
            try:
                receipt = await ctx.capabilities.message_delivery.deliver(
                    payload.campaign_id, lead_id, payload.channel
                )
            except (TransientFault, TerminalPipelineFault) as e:
                failures[lead_id] = e.message
                if isinstance(e, TransientFault):
                    transient_failures += 1
                log.warning(
                    "campaign_delivery_failed",
                    job_id=str(ctx.job_id),
                    lead_id=lead_id,
                    error=e.message,
                )
            else:
                await ctx.artifacts.upsert(
                    ctx.owner_id,
                    ctx.job_id,
                    ArtifactKind.MESSAGE_DELIVERY,
                    key,
                    {"campaignId": payload.campaign_id, "leadId": lead_id, "receipt": receipt},
                )
                sent += 1
        await ctx.report_progress(CAMPAIGN_START + CAMPAIGN_SPAN * done // total)

    # Nothing got through and the cause may clear up: let the broker retry
    if sent == 0 and skipped == 0 and transient_failures:
        raise TransientFault(
            f"All {total} deliveries failed",
            details={"failures": failures},
        )

    ctx.state.update(sent=sent, skipped=skipped, failures=failures, total=total)


def _campaign_result(ctx: PipelineContext) -> dict[str, Any]:
    payload: MessageCampaignPayload = ctx.payload
    return {
        "campaignId": payload.campaign_id,
        "totalLeads": ctx.state.get("total", 0),
        "sent": ctx.state.get("sent", 0),
        "alreadySent": ctx.state.get("skipped", 0),
        "failed": len(ctx.state.get("failures", {})),
    }


# =============================================================================
# inbox_monitoring
# =============================================================================


async def _fetch_inbox(ctx: PipelineContext) -> None:
    payload: InboxMonitoringPayload = ctx.payload
    ctx.state["messages"] = await ctx.capabilities.inbox_reader.read(
        payload.mailbox, since=payload.since, max_messages=payload.max_messages
    )


async def _store_messages(ctx: PipelineContext) -> None:
    payload: InboxMonitoringPayload = ctx.payload
    stored = 0
    for message in ctx.state.get("messages", []):
        message_id = message.get("messageId") or message.get("id")
        if not message_id:
            continue
        await ctx.artifacts.upsert(
            ctx.owner_id,
            ctx.job_id,
            ArtifactKind.INBOX_MESSAGE,
            f"{payload.mailbox}:{message_id}",
            message,
        )
        stored += 1
    ctx.state["stored"] = stored


def _inbox_result(ctx: PipelineContext) -> dict[str, Any]:
    payload: InboxMonitoringPayload = ctx.payload
    return {
        "mailbox": payload.mailbox,
        "messagesFound": len(ctx.state.get("messages", [])),
        "stored": ctx.state.get("stored", 0),
    }


PIPELINES: dict[TaskType, Pipeline] = {
    TaskType.LEAD_GENERATION: Pipeline(
        task_type=TaskType.LEAD_GENERATION,
        payload_model=LeadGenerationPayload,
        start_progress=10,
        steps=(
            PipelineStep("search_leads", 50, _search_leads),
            PipelineStep("store_leads", 80, _store_leads),
            PipelineStep("record_usage", 90, _record_lead_usage),
        ),
        result=_lead_result,
    ),
    TaskType.PROFILE_RESEARCH: Pipeline(
        task_type=TaskType.PROFILE_RESEARCH,
        payload_model=ProfileResearchPayload,
        start_progress=5,
        steps=(
            PipelineStep("fetch_profile", 20, _fetch_profile),
            PipelineStep("research_organization", 40, _research_organization),
            PipelineStep("reputation_signals", 60, _reputation_signals),
            PipelineStep("synthesize_narrative", 80, _synthesize_narrative),
            PipelineStep("persist_report", 90, _persist_report),
        ),
        result=_research_result,
    ),
    TaskType.MESSAGE_CAMPAIGN: Pipeline(
        task_type=TaskType.MESSAGE_CAMPAIGN,
        payload_model=MessageCampaignPayload,
        start_progress=CAMPAIGN_START,
        steps=(
            PipelineStep("deliver_messages", CAMPAIGN_START + CAMPAIGN_SPAN, _deliver_messages),
        ),
        result=_campaign_result,
    ),
    TaskType.INBOX_MONITORING: Pipeline(
        task_type=TaskType.INBOX_MONITORING,
        payload_model=InboxMonitoringPayload,
        start_progress=10,
        steps=(
            PipelineStep("fetch_inbox", 50, _fetch_inbox),
            PipelineStep("store_messages", 90, _store_messages),
        ),
        result=_inbox_result,
    ),
}

