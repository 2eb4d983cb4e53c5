#!/usr/bin/env python3
"""Setup script: configure the Telegram bot webhook.

Usage:
    # Show the current webhook:
    python scripts/setup_telegram_webhook.py --info

    # Point the bot at this service:
    python scripts/setup_telegram_webhook.py --webhook-url https://crm.example.com/api/v1/webhooks/telegram

    # Remove the webhook (needed before TELEGRAM_POLLING_ENABLED=true):
    python scripts/setup_telegram_webhook.py --delete

Requires:
    TELEGRAM_BOT_TOKEN environment variable (or in .env)
    TELEGRAM_WEBHOOK_SECRET is sent as the secret token when set
"""

import argparse
import os
import sys

import httpx

TELEGRAM_BASE_URL = os.environ.get("TELEGRAM_API_BASE", "https://api.telegram.org")


def _from_env_file(name: str) -> str:
    if not os.path.exists(".env"):
        return ""
    with open(".env") as f:
        for line in f:
            line = line.strip()
            if line.startswith(f"{name}="):
                return line.split("=", 1)[1].strip().strip('"').strip("'")
    return ""


def get_setting(name: str, required: bool = False) -> str:
    value = os.environ.get(name, "") or _from_env_file(name)
    if required and not value:
        print(f"ERROR: {name} not found in environment or .env file")
        sys.exit(1)
    return value


def call(token: str, method: str, params: dict = None) -> dict:
    resp = httpx.post(f"{TELEGRAM_BASE_URL}/bot{token}/{method}", json=params or {}, timeout=30.0)
    body = resp.json()
    if not body.get("ok"):
        print(f"ERROR: {method} failed: {body.get('description')}")
        sys.exit(1)
    return body.get("result")


def main():
    parser = argparse.ArgumentParser(description="Configure the Telegram bot webhook")
    parser.add_argument("--info", action="store_true", help="Show the current webhook")
    parser.add_argument("--webhook-url", type=str, help="Webhook URL to set")
    parser.add_argument("--delete", action="store_true", help="Delete the webhook")
    parser.add_argument("--drop-pending", action="store_true", help="Drop updates queued while no webhook was set")
    args = parser.parse_args()

    token = get_setting("TELEGRAM_BOT_TOKEN", required=True)

    if args.delete:
        call(token, "deleteWebhook", {"drop_pending_updates": args.drop_pending})
        print("✅ Webhook deleted")
        return

    if args.webhook_url:
        params = {
            "url": args.webhook_url,
            "allowed_updates": ["message", "callback_query"],
            "drop_pending_updates": args.drop_pending,
        }
        secret = get_setting("TELEGRAM_WEBHOOK_SECRET")
        if secret:
            params["secret_token"] = secret
        call(token, "setWebhook", params)
        print(f"✅ Webhook → {args.webhook_url}" + (" (secret token set)" if secret else ""))
        return

    me = call(token, "getMe")
    info = call(token, "getWebhookInfo")
    print(f"\nBot:              @{me.get('username')}")
    print(f"Webhook URL:      {info.get('url') or '(not set)'}")
    print(f"Pending updates:  {info.get('pending_update_count', 0)}")
    if info.get("last_error_message"):
        print(f"Last error:       {info['last_error_message']}")


if __name__ == "__main__":
    main()
