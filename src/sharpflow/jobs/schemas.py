"""Per-task-type payload schemas.

Submission validates input against these before anything is persisted.
Wire keys follow the dashboard's camelCase (``jobTitles``, ``linkedinUrl``);
both camelCase and snake_case are accepted.
"""

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sharpflow.db.models import TaskType
from sharpflow.errors import ValidationFault

LINKEDIN_PROFILE_RE = re.compile(
    r"^(?:https?://)?(?:[a-z]{2,3}\.)?linkedin\.com/in/[A-Za-z0-9\-_%]+/?$", re.IGNORECASE
)
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")


def _clean_terms(values: list[str]) -> list[str]:
    cleaned: list[str] = []
    for value in values:
        term = value.strip()
        if term and term not in cleaned:
            cleaned.append(term)
    return cleaned


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", str_strip_whitespace=True)


class LeadGenerationPayload(_Payload):
    """Search criteria for lead discovery."""

    locations: list[str] = Field(min_length=1)
    businesses: list[str] = Field(min_length=1)
    job_titles: list[str] = Field(alias="jobTitles", min_length=1)
    max_results: int = Field(default=100, alias="maxResults", ge=1, le=500)

    @field_validator("locations", "businesses", "job_titles")
    @classmethod
    def _non_blank(cls, value: list[str]) -> list[str]:
        cleaned = _clean_terms(value)
        if not cleaned:
            raise ValueError("must contain at least one non-empty entry")
        return cleaned


class ProfileResearchPayload(_Payload):
    """Profile to research."""

    linkedin_url: str = Field(alias="linkedinUrl")
    lead_id: str | None = Field(default=None, alias="leadId")

    @field_validator("linkedin_url")
    @classmethod
    def _linkedin(cls, value: str) -> str:
        if not LINKEDIN_PROFILE_RE.match(value):
            raise ValueError("must be a LinkedIn profile URL")
        return value.rstrip("/")


class MessageCampaignPayload(_Payload):
    """Campaign and recipients for outbound messaging."""

    campaign_id: str = Field(alias="campaignId", min_length=1)
    lead_ids: list[str] = Field(alias="leadIds", min_length=1)
    channel: str = Field(default="email")

    @field_validator("lead_ids")
    @classmethod
    def _non_blank(cls, value: list[str]) -> list[str]:
        cleaned = _clean_terms(value)
        if not cleaned:
            raise ValueError("must contain at least one lead id")
        return cleaned


class InboxMonitoringPayload(_Payload):
    """Mailbox to scan."""

    mailbox: str
    since: str | None = None
    max_messages: int = Field(default=50, alias="maxMessages", ge=1, le=500)

    @field_validator("mailbox")
    @classmethod
    def _email(cls, value: str) -> str:
        if not EMAIL_RE.match(value):
            raise ValueError("must be an email address")
        return value.lower()


PAYLOAD_SCHEMAS: dict[TaskType, type[_Payload]] = {
    TaskType.LEAD_GENERATION: LeadGenerationPayload,
    TaskType.PROFILE_RESEARCH: ProfileResearchPayload,
    TaskType.MESSAGE_CAMPAIGN: MessageCampaignPayload,
    TaskType.INBOX_MONITORING: InboxMonitoringPayload,
}


def parse_task_type(value: str) -> TaskType:
    try:
        return TaskType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in TaskType)
        raise ValidationFault(
            f"Unknown task type '{value}'. Expected one of: {allowed}",
            details={"task_type": value},
        ) from None


def validate_payload(task_type: TaskType, payload: dict[str, Any]) -> dict[str, Any]:
    """Validate and normalize a payload, returning its wire (camelCase) form."""
    schema = PAYLOAD_SCHEMAS[task_type]
    try:
        model = schema.model_validate(payload)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ValidationFault(
            f"Invalid {task_type.value} payload: {', '.join(fields)}",
            details={"task_type": task_type.value, "fields": fields},
        ) from e
    return model.model_dump(by_alias=True, exclude_none=True)


def missing_fields(task_type: TaskType, payload: dict[str, Any]) -> list[str]:
    """Required wire fields the payload does not satisfy (empty when valid)."""
    schema = PAYLOAD_SCHEMAS[task_type]
    try:
        schema.model_validate(payload)
    except ValidationError as e:
        missing = []
        for err in e.errors():
            name = str(err["loc"][0]) if err["loc"] else ""
            field = schema.model_fields.get(name)
            wire = field.alias if field and field.alias else name
            if wire and wire not in missing:
                missing.append(wire)
        return missing
    return []
