"""
Simple producer script.

- Builds and validates an SMS, an email or a whole campaign
- Declares topology, then publishes persistent messages to the exchange
- Prints the accepted message ids as JSON; exits non-zero on rejection

Examples:
    uv run python -m scripts.producer sms --phone +15551234567 --text "Sale today"
    uv run python -m scripts.producer email --to a@example.com --subject Hi --body Hello
    uv run python -m scripts.producer campaign --name spring --phones +1555,+1666 --text "Sale"
"""

import argparse
import asyncio
import json
import logging
import sys

from pydantic import ValidationError

from marketing_mq.campaign import CampaignRequest, EmailRequest, SmsRequest, publish_campaign
from marketing_mq.config import Settings
from marketing_mq.envelope import new_email, new_sms
from marketing_mq.errors import MessagingError
from marketing_mq.publisher import Publisher
from marketing_mq.rabbit import BrokerConnection
from marketing_mq.topology import ensure_default_topology
from marketing_mq.tracing import start_tracing


def _split(value: str | None) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


async def run(args: argparse.Namespace, settings: Settings) -> dict:
    start_tracing("marketing-producer")
    async with BrokerConnection(settings) as broker:
        channel = await broker.channel()
        await ensure_default_topology(channel, settings)
        await channel.close()

        publisher = Publisher(broker, settings)
        try:
            if args.command == "sms":
                result = await publisher.publish_envelope(new_sms(args.phone, args.text, campaign=args.campaign))
                return {"status": "Accepted", "messageId": result.message_id}
            if args.command == "email":
                envelope = new_email(
                    args.to, args.subject, args.body, campaign=args.campaign,
                    cc=_split(args.cc) or None, bcc=_split(args.bcc) or None,
                )
                result = await publisher.publish_envelope(envelope)
                return {"status": "Accepted", "messageId": result.message_id}

            request = CampaignRequest(
                campaign=args.name,
                sms=SmsRequest(text=args.text, recipients=_split(args.phones)) if args.phones else None,
                email=(
                    EmailRequest(subject=args.subject, body=args.body, recipients=_split(args.emails))
                    if args.emails else None
                ),
            )
            outcome = await publish_campaign(publisher, request)
            return {
                "status": "Accepted",
                "campaign": outcome.campaign,
                "sms": {"queued": outcome.sms.queued, "messageIds": outcome.sms.message_ids},
                "email": {"queued": outcome.email.queued, "messageIds": outcome.email.message_ids},
            }
        finally:
            await publisher.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish marketing notifications")
    sub = parser.add_subparsers(dest="command", required=True)

    sms = sub.add_parser("sms")
    sms.add_argument("--phone", required=True)
    sms.add_argument("--text", required=True)
    sms.add_argument("--campaign", default="default")

    email = sub.add_parser("email")
    email.add_argument("--to", required=True)
    email.add_argument("--subject", required=True)
    email.add_argument("--body", required=True)
    email.add_argument("--cc")
    email.add_argument("--bcc")
    email.add_argument("--campaign", default="default")

    campaign = sub.add_parser("campaign")
    campaign.add_argument("--name", required=True)
    campaign.add_argument("--phones", help="Comma-separated SMS recipients")
    campaign.add_argument("--text", default="")
    campaign.add_argument("--emails", help="Comma-separated email recipients")
    campaign.add_argument("--subject", default="")
    campaign.add_argument("--body", default="")

    args = parser.parse_args()
    settings = Settings()
    logging.basicConfig(level=settings.log_level.upper())

    try:
        print(json.dumps(asyncio.run(run(args, settings))))
    except ValidationError as exc:
        print(json.dumps({"status": "Rejected", "error": exc.errors()[0]["msg"]}))
        sys.exit(2)
    except MessagingError as exc:
        print(json.dumps({"status": "Rejected", "error": str(exc)}))
        sys.exit(1)


if __name__ == "__main__":
    main()
