"""Pydantic models for the message envelope and its wire codec.

Every message shares the same outer shape (``id``, ``createdAt``,
``campaign``, ``kind``) and carries a kind-specific ``payload``. The
variants form a tagged union keyed by ``kind``, so decoding dispatches on
the tag instead of on a class hierarchy.

Envelopes are frozen: once built (and published) they never change. The
only per-message state that evolves afterwards lives broker-side in the
delivery metadata (delivery tag, redelivered flag, retry header).

Example:
    >>> env = new_sms("+15551234567", "Spring sale starts today", campaign="spring")
    >>> decode_envelope(encode_envelope(env)) == env
    True
"""
from __future__ import annotations

import datetime as _dt
import uuid
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, constr

from marketing_mq.constants import CONTENT_TYPE_JSON, KIND_EMAIL, KIND_SMS
from marketing_mq.errors import DecodeError


NonBlank = constr(strip_whitespace=True, min_length=1)  # type: ignore[valid-type]


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def new_message_id() -> str:
    return str(uuid.uuid4())


# -------------------------
# Payloads
# -------------------------

class SmsPayload(BaseModel):
    """Text message to a single phone number (E.164 recommended)."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    phone: NonBlank  # type: ignore[valid-type]
    text: NonBlank  # type: ignore[valid-type]


class EmailPayload(BaseModel):
    """Email to a single recipient with optional copies."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    to: NonBlank  # type: ignore[valid-type]
    subject: NonBlank  # type: ignore[valid-type]
    body: NonBlank  # type: ignore[valid-type]
    cc: Optional[tuple[str, ...]] = None
    bcc: Optional[tuple[str, ...]] = None


# -------------------------
# Envelope variants
# -------------------------

class _EnvelopeBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    id: str = Field(default_factory=new_message_id, min_length=1)
    created_at: _dt.datetime = Field(default_factory=utcnow, alias="createdAt")
    campaign: str = "default"


class SmsEnvelope(_EnvelopeBase):
    kind: Literal["SMS"] = KIND_SMS
    payload: SmsPayload


class EmailEnvelope(_EnvelopeBase):
    kind: Literal["EMAIL"] = KIND_EMAIL
    payload: EmailPayload


Envelope = Annotated[Union[SmsEnvelope, EmailEnvelope], Field(discriminator="kind")]

_ENVELOPE_ADAPTER: TypeAdapter[Any] = TypeAdapter(Envelope)


def new_sms(phone: str, text: str, campaign: str = "default") -> SmsEnvelope:
    """Build a fresh SMS envelope with a generated id and timestamp."""
    return SmsEnvelope(campaign=campaign, payload=SmsPayload(phone=phone, text=text))


def new_email(
    to: str,
    subject: str,
    body: str,
    campaign: str = "default",
    cc: Optional[list[str]] = None,
    bcc: Optional[list[str]] = None,
) -> EmailEnvelope:
    """Build a fresh email envelope with a generated id and timestamp."""
    payload = EmailPayload(
        to=to,
        subject=subject,
        body=body,
        cc=tuple(cc) if cc else None,
        bcc=tuple(bcc) if bcc else None,
    )
    return EmailEnvelope(campaign=campaign, payload=payload)


# -------------------------
# Codec
# -------------------------

def encode_envelope(envelope: SmsEnvelope | EmailEnvelope) -> bytes:
    """Serialize an envelope to compact UTF-8 JSON using the wire field names."""
    return envelope.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def decode_envelope(body: bytes, content_type: str | None = CONTENT_TYPE_JSON) -> SmsEnvelope | EmailEnvelope:
    """Parse a delivery body into the envelope variant named by its ``kind``.

    Raises ``DecodeError`` for anything that can never succeed on a retry:
    a foreign content type, bytes that are not UTF-8, malformed JSON, an
    unknown ``kind`` or a payload that fails validation.
    """
    if content_type and content_type.split(";")[0].strip().lower() != CONTENT_TYPE_JSON:
        raise DecodeError(f"unsupported content type {content_type!r}", body)
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"body is not valid UTF-8 ({exc.reason})", body) from exc
    try:
        return _ENVELOPE_ADAPTER.validate_json(text)
    except ValidationError as exc:
        raise DecodeError(f"{exc.error_count()} validation error(s): {exc.errors()[0]['msg']}", body) from exc


def export_envelope_json_schema() -> dict[str, Any]:
    """Return the JSON Schema of the envelope union (for non-Python producers)."""
    return _ENVELOPE_ADAPTER.json_schema(by_alias=True)
