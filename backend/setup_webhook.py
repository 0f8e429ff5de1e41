"""
Strava Webhook Setup Script
Register the coach backend's webhook with Strava after deployment.

Usage:
    python setup_webhook.py [callback_url] [--replace]
    python setup_webhook.py --list
"""

import os
import sys
import requests
from dotenv import load_dotenv, find_dotenv

load_dotenv(find_dotenv())

from strava_client import StravaClient, StravaError

WEBHOOK_PATH = "/api/strava/webhook"


def default_callback_url() -> str:
    app_url = os.getenv("APP_URL", "http://localhost:8001").rstrip("/")
    return f"{app_url}{WEBHOOK_PATH}"


def print_subscriptions(subscriptions):
    for sub in subscriptions:
        print(f"  - ID: {sub['id']}, Callback: {sub['callback_url']}")


def main(argv=None, confirm=input) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    replace = "--replace" in args
    list_only = "--list" in args
    positional = [a for a in args if not a.startswith("--")]
    callback_url = positional[0] if positional else default_callback_url()

    try:
        existing = StravaClient.list_webhook_subscriptions()

        if list_only:
            if not existing:
                print("No webhook subscriptions")
            else:
                print(f"Found {len(existing)} subscription(s):")
                print_subscriptions(existing)
            return 0

        # Strava allows a single subscription per application
        if existing:
            print(f"⚠️  Found {len(existing)} existing subscription(s):")
            print_subscriptions(existing)
            if not replace and confirm("Delete existing subscriptions? (y/n): ").strip().lower() != "y":
                print("Keeping existing subscription, nothing to do")
                return 0
            for sub in existing:
                StravaClient.delete_webhook_subscription(sub["id"])

        print(f"🔗 Subscribing to Strava webhooks with callback: {callback_url}")
        result = StravaClient.subscribe_to_webhooks(callback_url)
        print("✅ Webhook subscription created")
        print(f"   Subscription ID: {result['id']}")
        print(f"   Callback URL: {callback_url}")
        return 0

    except (StravaError, requests.RequestException) as e:
        print(f"❌ Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
