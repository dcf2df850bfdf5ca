import json

import pytest
from pydantic import ValidationError

from marketing_mq.envelope import (
    EmailEnvelope,
    SmsEnvelope,
    decode_envelope,
    encode_envelope,
    export_envelope_json_schema,
    new_email,
    new_sms,
)
from marketing_mq.errors import DecodeError


def test_sms_envelope_wire_shape():
    env = new_sms("+15551234567", "Spring sale", campaign="spring")
    doc = json.loads(encode_envelope(env))
    assert doc["kind"] == "SMS"
    assert doc["campaign"] == "spring"
    assert doc["payload"] == {"phone": "+15551234567", "text": "Spring sale"}
    assert "createdAt" in doc and "created_at" not in doc
    assert doc["id"] == env.id


def test_email_optional_copies_are_omitted_when_empty():
    env = new_email("a@example.com", "Hi", "Hello there")
    doc = json.loads(encode_envelope(env))
    assert "cc" not in doc["payload"] and "bcc" not in doc["payload"]

    with_cc = new_email("a@example.com", "Hi", "Hello", cc=["b@example.com"])
    decoded = decode_envelope(encode_envelope(with_cc))
    assert isinstance(decoded, EmailEnvelope)
    assert decoded.payload.cc == ("b@example.com",)


def test_decode_dispatches_on_kind():
    sms = new_sms("+1", "x")
    email = new_email("a@example.com", "s", "b")
    assert isinstance(decode_envelope(encode_envelope(sms)), SmsEnvelope)
    assert isinstance(decode_envelope(encode_envelope(email)), EmailEnvelope)


def test_ids_are_unique():
    assert new_sms("+1", "a").id != new_sms("+1", "a").id


def test_envelopes_are_frozen():
    env = new_sms("+1", "a")
    with pytest.raises(ValidationError):
        env.campaign = "other"  # type: ignore[misc]


@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b'{"kind": "FAX", "payload": {}}',
        b'{"kind": "SMS", "payload": {"phone": "+1"}}',
        b'{"kind": "SMS", "payload": {"phone": "  ", "text": "hi"}}',
        b"\xff\xfe\x00",
    ],
)
def test_decode_rejects_poison(body):
    with pytest.raises(DecodeError) as exc:
        decode_envelope(body)
    assert exc.value.body == body


def test_decode_rejects_foreign_content_type():
    body = encode_envelope(new_sms("+1", "a"))
    with pytest.raises(DecodeError):
        decode_envelope(body, content_type="text/plain")
    # Parameters on the content type are tolerated
    assert decode_envelope(body, content_type="application/json; charset=utf-8").kind == "SMS"


def test_blank_fields_rejected_at_build_time():
    with pytest.raises(ValidationError):
        new_sms("+1", "   ")
    with pytest.raises(ValidationError):
        new_email("", "s", "b")


def test_json_schema_has_both_variants():
    schema = json.dumps(export_envelope_json_schema())
    assert "SmsEnvelope" in schema and "EmailEnvelope" in schema
