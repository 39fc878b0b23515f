"""
Strava push subscription management.

A Strava app has at most one push subscription. Create it once per
deployment (pointing at the webhook proxy), inspect it, or delete it to
rotate the callback URL.
"""

import requests
from typing import Dict, List
from core.config import settings
import logging

logger = logging.getLogger(__name__)

PUSH_SUBSCRIPTIONS_URL = "https://www.strava.com/api/v3/push_subscriptions"


class WebhookSubscriptionError(RuntimeError):
    """Strava refused the subscription request."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def _credentials() -> Dict[str, str]:
    if not settings.STRAVA_CLIENT_ID or not settings.STRAVA_CLIENT_SECRET:
        raise ValueError("Strava credentials not configured")
    return {
        "client_id": settings.STRAVA_CLIENT_ID,
        "client_secret": settings.STRAVA_CLIENT_SECRET,
    }


def subscribe_to_webhooks(callback_url: str) -> Dict:
    """
    Create the push subscription. Strava immediately calls the handshake
    endpoint on callback_url, so it must already be reachable.

    Returns Strava's response body ({"id": ...}).
    """
    if not settings.STRAVA_WEBHOOK_VERIFY_TOKEN:
        raise ValueError("STRAVA_WEBHOOK_VERIFY_TOKEN not configured")

    data = {
        **_credentials(),
        "callback_url": callback_url,
        "verify_token": settings.STRAVA_WEBHOOK_VERIFY_TOKEN,
    }
    response = requests.post(PUSH_SUBSCRIPTIONS_URL, data=data, timeout=settings.EXTERNAL_API_TIMEOUT)
    if response.status_code != 201:
        logger.error(f"Webhook subscription failed: HTTP {response.status_code} {response.text[:200]}")
        raise WebhookSubscriptionError(f"subscription failed: HTTP {response.status_code}", response.status_code)

    result = response.json()
    logger.info(f"Webhook subscription created: id={result.get('id')}")
    return result


def list_webhook_subscriptions() -> List[Dict]:
    response = requests.get(PUSH_SUBSCRIPTIONS_URL, params=_credentials(), timeout=settings.EXTERNAL_API_TIMEOUT)
    if response.status_code != 200:
        raise WebhookSubscriptionError(f"listing subscriptions failed: HTTP {response.status_code}", response.status_code)
    return response.json()


def delete_webhook_subscription(subscription_id: int) -> bool:
    response = requests.delete(
        f"{PUSH_SUBSCRIPTIONS_URL}/{int(subscription_id)}",
        params=_credentials(),
        timeout=settings.EXTERNAL_API_TIMEOUT,
    )
    if response.status_code == 204:
        logger.info(f"Webhook subscription {subscription_id} deleted")
        return True
    logger.warning(f"Deleting webhook subscription {subscription_id} returned HTTP {response.status_code}")
    return False
