"""
Replay a sample Telegram update against the webhook endpoint.

Useful for exercising update handling without a real chat: send a text,
a photo or a button press as if Telegram had delivered it.

Usage:
    python scripts/webhook_replay.py [--text "/start"] [--photo] [--button approve:1]
        [--from USER_ID] [--update-id N] [--url http://localhost:8000]
"""

import argparse
import json
import random
import sys
import time

import httpx

from marketbot.api.webhooks import SECRET_HEADER
from marketbot.core.config import settings


def _sender(user_id: int) -> dict:
    return {"id": user_id, "is_bot": False, "first_name": "Test", "username": f"test{user_id}"}


def _message(user_id: int, message_id: int) -> dict:
    return {
        "message_id": message_id,
        "from": _sender(user_id),
        "chat": {"id": user_id, "type": "private"},
        "date": int(time.time()),
    }


def create_text_update(update_id: int, user_id: int, text: str) -> dict:
    message = _message(user_id, update_id)
    message["text"] = text
    return {"update_id": update_id, "message": message}


def create_photo_update(update_id: int, user_id: int, file_id: str = "AgACAgTestPhotoFileId") -> dict:
    message = _message(user_id, update_id)
    message["photo"] = [
        {"file_id": f"{file_id}-s", "file_unique_id": "s", "width": 90, "height": 90},
        {"file_id": file_id, "file_unique_id": "m", "width": 800, "height": 800},
    ]
    return {"update_id": update_id, "message": message}


def create_button_update(update_id: int, user_id: int, data: str) -> dict:
    return {
        "update_id": update_id,
        "callback_query": {
            "id": str(update_id),
            "from": _sender(user_id),
            "message": _message(user_id, update_id - 1),
            "data": data,
        },
    }


def send_update(payload: dict, base_url: str) -> bool:
    webhook_url = f"{base_url}/webhooks/telegram"
    headers = {"Content-Type": "application/json"}
    if settings.telegram_webhook_secret:
        headers[SECRET_HEADER] = settings.telegram_webhook_secret

    print(f"Sending update to: {webhook_url}")
    print(f"   Payload: {json.dumps(payload, indent=2)}")
    print()

    try:
        with httpx.Client(timeout=10.0) as client:
            response = client.post(webhook_url, json=payload, headers=headers)
    except httpx.HTTPError as e:
        print(f"Error sending update: {e}")
        return False

    print("Response:")
    print(f"   Status: {response.status_code}")
    print(f"   Body: {response.text}")
    print()
    return response.status_code == 200


def main():
    parser = argparse.ArgumentParser(description="Replay a Telegram update")
    parser.add_argument("--text", type=str, default="/start", help="Text message content")
    parser.add_argument("--photo", action="store_true", help="Send a photo message instead of text")
    parser.add_argument("--button", type=str, default=None, help="Send a button press with this callback data")
    parser.add_argument("--from", dest="user_id", type=int, default=100001, help="Sender Telegram user id")
    parser.add_argument("--update-id", type=int, default=None, help="Update id (random if omitted)")
    parser.add_argument("--url", type=str, default="http://localhost:8000", help="Base URL of the API")
    args = parser.parse_args()

    update_id = args.update_id or random.randint(10_000_000, 99_999_999)
    print(f"Webhook secret: {'set' if settings.telegram_webhook_secret else 'not set (header check disabled)'}")

    if args.button:
        payload = create_button_update(update_id, args.user_id, args.button)
    elif args.photo:
        payload = create_photo_update(update_id, args.user_id)
    else:
        payload = create_text_update(update_id, args.user_id, args.text)

    if not send_update(payload, base_url=args.url):
        print("Troubleshooting:")
        print("   1. Ensure the API is running (uvicorn marketbot.main:app)")
        print("   2. Check TELEGRAM_WEBHOOK_SECRET matches the running server")
        sys.exit(1)
    print("Update accepted. Replaying the same --update-id should answer type=duplicate.")


if __name__ == "__main__":
    main()
