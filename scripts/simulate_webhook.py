"""
Simulate chat-platform webhooks against a running instance.

Usage:
    python scripts/simulate_webhook.py
    python scripts/simulate_webhook.py --event message_received --text "Hola"
    python scripts/simulate_webhook.py --event tag_added --tag atencion-humana
    python scripts/simulate_webhook.py --event message_received --replay 3
"""
import argparse
import asyncio
import logging
import time

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def build_payload(args) -> dict:
    payload = {
        "event_type": args.event,
        "subscriber_id": args.subscriber_id,
        "timestamp": int(time.time()),
    }
    if args.event == "new_subscriber":
        first, _, last = args.name.partition(" ")
        payload["subscriber"] = {
            "id": args.subscriber_id,
            "first_name": first,
            "last_name": last,
            "phone": args.phone,
        }
    elif args.event in ("message_received", "message_sent"):
        payload["message"] = {
            "id": args.message_id or f"msg_{int(time.time() * 1000)}",
            "type": "text",
            "text": args.text,
            "timestamp": int(time.time()),
        }
    elif args.event in ("tag_added", "tag_removed"):
        payload["tag"] = {"name": args.tag}
    elif args.event == "custom_field_changed":
        payload["custom_field"] = {"name": args.field, "value": args.value}
    return payload


async def main():
    parser = argparse.ArgumentParser(description="Simulate chat-platform webhooks")
    parser.add_argument(
        "--event",
        default="new_subscriber",
        choices=[
            "new_subscriber", "subscriber_updated", "message_received", "message_sent",
            "tag_added", "tag_removed", "custom_field_changed",
        ],
    )
    parser.add_argument("--platform", default="manychat")
    parser.add_argument("--subscriber-id", default="987654321")
    parser.add_argument("--phone", default="+543709876543")
    parser.add_argument("--name", default="María Gómez")
    parser.add_argument("--message-id", default=None)
    parser.add_argument("--text", default="Hola, quiero financiar una moto")
    parser.add_argument("--tag", default="atencion-humana")
    parser.add_argument("--field", default="dni")
    parser.add_argument("--value", default="30123456")
    parser.add_argument("--replay", type=int, default=1, help="Send the identical payload N times")
    parser.add_argument("--base-url", default=BASE_URL)
    args = parser.parse_args()

    payload = build_payload(args)
    logger.info("Sending %s x%d for subscriber %s", args.event, args.replay, args.subscriber_id)

    async with httpx.AsyncClient(timeout=30) as client:
        for _ in range(max(1, args.replay)):
            resp = await client.post(f"{args.base_url}/webhooks/{args.platform}", json=payload)
            logger.info("Response: %s %s", resp.status_code, resp.json())


if __name__ == "__main__":
    asyncio.run(main())
