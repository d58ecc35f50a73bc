import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from core.clock import Clock, get_clock
from core.config import settings
from core.db import get_db
from core.exceptions import SubscriptionError
from services.billing import activate_subscription, apply_billing_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _from_epoch(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _invoice_period_end(invoice: Dict[str, Any]) -> Optional[datetime]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    return _from_epoch((lines[0].get("period") or {}).get("end"))


def _subscription_period(subscription: Dict[str, Any], key: str) -> Optional[datetime]:
    # Newer API versions carry the period on the subscription items
    if subscription.get(key):
        return _from_epoch(subscription[key])
    items = (subscription.get("items") or {}).get("data") or []
    return _from_epoch(items[0].get(key)) if items else None


def handle_event(db: Session, event: Dict[str, Any], now: datetime) -> Optional[str]:
    """Route one verified Stripe event to the billing service. Returns the handled type or None."""
    event_type = event["type"]
    obj = event["data"]["object"]

    if event_type == "checkout.session.completed":
        metadata = obj.get("metadata") or {}
        if not metadata.get("user_id") or not metadata.get("plan_code"):
            logger.error("Checkout session %s is missing user_id or plan_code metadata", obj.get("id"))
            return None
        activate_subscription(
            db,
            user_id=int(metadata["user_id"]),
            plan_code=metadata["plan_code"],
            billing_period=metadata.get("billing_period", "monthly"),
            stripe_customer_id=obj.get("customer"),
            stripe_subscription_id=obj.get("subscription"),
            now=now,
        )
    elif event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
        status = "canceled" if event_type.endswith("deleted") else obj.get("status", "active")
        apply_billing_event(
            db,
            subscription_id=obj["id"],
            new_status=status,
            period_start=_subscription_period(obj, "current_period_start"),
            period_end=_subscription_period(obj, "current_period_end"),
            cancel_at_period_end=obj.get("cancel_at_period_end"),
            now=now,
        )
    elif event_type in ("invoice.paid", "invoice.payment_failed"):
        if not obj.get("subscription"):
            return None
        apply_billing_event(
            db,
            subscription_id=obj["subscription"],
            new_status="active" if event_type == "invoice.paid" else "past_due",
            period_end=_invoice_period_end(obj) if event_type == "invoice.paid" else None,
            now=now,
        )
    else:
        logger.debug("Unhandled Stripe event: %s", event_type)
        return None
    return event_type


@router.post("/stripe", include_in_schema=False)
async def stripe_webhook(request: Request, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Stripe webhook signature verification failed: %s", e)
        raise HTTPException(status_code=400, detail="Webhook signature invalid")

    # Work on plain dicts; the signature is already verified
    event = json.loads(payload)

    logger.info("Stripe webhook received: %s", event["type"])
    try:
        handled = handle_event(db, event, clock())
    except SubscriptionError as e:
        # Acknowledge so Stripe does not retry events we can never apply
        db.rollback()
        logger.error("Error processing Stripe event %s: %s", event["type"], e.message)
        return {"received": True, "error": e.message}

    return {"received": True, "handled": handled is not None}
