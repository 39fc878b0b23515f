"""
Strava Webhook Router

Receives Strava push events relayed by the webhook proxy, answers Strava's
subscription handshake, and exposes subscription management for admins.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from core.auth import require_admin
from core.config import settings
from core.database import get_db
from services.pipeline import build_pipeline
from services.strava_webhook import (
    WebhookSubscriptionError,
    delete_webhook_subscription,
    list_webhook_subscriptions,
    subscribe_to_webhooks,
)
from services.sync_state import get_state_store
from services.webhook_events import ERROR_PREFIX, accept_inbound_event
import hmac
import json
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/strava/webhook", tags=["strava-webhook"])


@router.get("")
def verify_webhook(
    hub_mode: str = Query(..., alias="hub.mode"),
    hub_verify_token: str = Query(..., alias="hub.verify_token"),
    hub_challenge: str = Query(..., alias="hub.challenge"),
):
    """
    Subscription handshake. Strava calls this when a subscription is created
    and expects the challenge echoed back if the verify token matches.
    """
    expected_token = settings.STRAVA_WEBHOOK_VERIFY_TOKEN
    if (
        hub_mode == "subscribe"
        and expected_token
        and hmac.compare_digest(hub_verify_token.encode(), expected_token.encode())
    ):
        logger.info("Webhook verification successful")
        return {"hub.challenge": hub_challenge}

    logger.warning(f"Webhook verification failed: mode={hub_mode}")
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Verification failed"
    )


@router.post("", response_class=PlainTextResponse)
async def receive_webhook_event(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Fast acknowledgment for a relayed event: check the secret, record receipt,
    hand the event to the worker. Always 200; the text tells the proxy what
    happened.
    """
    raw_body = await request.body()
    return await run_in_threadpool(_acknowledge, raw_body, db)


def _acknowledge(raw_body: bytes, db: Session) -> str:
    state = get_state_store()
    try:
        body = json.loads(raw_body or b"null")
        if not isinstance(body, dict):
            raise ValueError("request body must be a JSON object")
        ack = accept_inbound_event(body, state)
        if not ack.accepted:
            return ack.text

        if settings.WEBHOOK_PROCESS_INLINE:
            pipeline = build_pipeline(db, state=state)
            pipeline.router.process(ack.event)
        else:
            from tasks.sync_tasks import process_strava_webhook_event_task
            process_strava_webhook_event_task.delay(ack.event.to_payload())
        return ack.text
    except Exception as e:
        logger.error(f"Error processing webhook request: {e}", exc_info=True)
        return f"{ERROR_PREFIX}{e}"


@router.post("/subscribe", dependencies=[Depends(require_admin)])
def subscribe_webhook(
    callback_url: str = Query(None, description="Public URL Strava will call; defaults to STRAVA_WEBHOOK_CALLBACK_URL"),
):
    url = callback_url or settings.STRAVA_WEBHOOK_CALLBACK_URL
    if not url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="callback_url is required")
    try:
        return subscribe_to_webhooks(url)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except WebhookSubscriptionError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.get("/subscriptions", dependencies=[Depends(require_admin)])
def get_subscriptions():
    try:
        return list_webhook_subscriptions()
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except WebhookSubscriptionError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.delete("/subscriptions/{subscription_id}", dependencies=[Depends(require_admin)])
def remove_subscription(subscription_id: int):
    try:
        deleted = delete_webhook_subscription(subscription_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Strava did not delete the subscription")
    return {"deleted": True, "subscription_id": subscription_id}
