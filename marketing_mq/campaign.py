"""Campaign fan-out: one request, one envelope per recipient.

A campaign names a label and optionally an SMS part and an email part, each
with its own recipient list. Every recipient becomes an independent
envelope routed by its kind, so SMS and email workers scale separately.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, constr

from marketing_mq.envelope import EmailEnvelope, SmsEnvelope, new_email, new_sms
from marketing_mq.publisher import Publisher


class SmsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: constr(strip_whitespace=True, min_length=1)  # type: ignore[valid-type]
    recipients: list[str] = Field(default_factory=list)


class EmailRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject: constr(strip_whitespace=True, min_length=1)  # type: ignore[valid-type]
    body: constr(strip_whitespace=True, min_length=1)  # type: ignore[valid-type]
    recipients: list[str] = Field(default_factory=list)


class CampaignRequest(BaseModel):
    """Bulk request; a blank campaign name fails validation."""
    model_config = ConfigDict(extra="forbid")

    campaign: constr(strip_whitespace=True, min_length=1)  # type: ignore[valid-type]
    sms: Optional[SmsRequest] = None
    email: Optional[EmailRequest] = None


@dataclass
class KindResult:
    queued: int = 0
    message_ids: list[str] = field(default_factory=list)


@dataclass
class CampaignResult:
    campaign: str
    sms: KindResult = field(default_factory=KindResult)
    email: KindResult = field(default_factory=KindResult)

    @property
    def total(self) -> int:
        return self.sms.queued + self.email.queued


def build_campaign_envelopes(request: CampaignRequest) -> list[SmsEnvelope | EmailEnvelope]:
    """Return the envelopes for every recipient, SMS first, in request order."""
    envelopes: list[SmsEnvelope | EmailEnvelope] = []
    if request.sms is not None:
        for phone in request.sms.recipients:
            envelopes.append(new_sms(phone, request.sms.text, campaign=request.campaign))
    if request.email is not None:
        for recipient in request.email.recipients:
            envelopes.append(
                new_email(recipient, request.email.subject, request.email.body, campaign=request.campaign)
            )
    return envelopes


async def publish_campaign(publisher: Publisher, request: CampaignRequest) -> CampaignResult:
    """Publish every envelope of the campaign in order.

    A publish failure stops the fan-out and propagates; messages already
    published stay queued.
    """
    result = CampaignResult(campaign=request.campaign)
    for envelope in build_campaign_envelopes(request):
        await publisher.publish_envelope(envelope)
        part = result.sms if isinstance(envelope, SmsEnvelope) else result.email
        part.queued += 1
        part.message_ids.append(envelope.id)
    return result
