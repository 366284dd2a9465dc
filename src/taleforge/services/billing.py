"""Stripe billing: checkout, customer portal, payment verification and webhook sync.

Checkout and portal pages are hosted by Stripe; this module only creates
their sessions and mirrors subscription state into ``subscribers`` from
webhook events. The stripe SDK is synchronous, so calls run in a thread.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taleforge.api.exceptions import APIError, ForbiddenError, NotFoundError
from taleforge.core.config import Settings, get_settings

from ..models.user import Subscriber
from .tiers import map_display_to_tier

logger = logging.getLogger(__name__)

PURCHASABLE_TIERS = ("Core", "Pro", "Family")


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def subscription_period(subscription: Any) -> tuple[datetime | None, datetime | None]:
    """Current period of a subscription.

    Newer API versions moved the period onto the subscription items.
    """
    start = _get(subscription, "current_period_start")
    end = _get(subscription, "current_period_end")
    if start is None or end is None:
        items = _get(_get(subscription, "items"), "data") or []
        if items:
            start = start or _get(items[0], "current_period_start")
            end = end or _get(items[0], "current_period_end")
    return _timestamp(start), _timestamp(end)


class BillingService:
    """Stripe sessions and subscription sync for one database session."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    def _require_stripe(self) -> None:
        if not self.settings.stripe_secret_key:
            raise APIError("Billing is not configured", status_code=503)

    async def _subscriber_for_user(self, user_id: str) -> Subscriber | None:
        result = await self.session.execute(select(Subscriber).where(Subscriber.user_id == user_id))
        return result.scalar_one_or_none()

    async def _subscriber_for_customer(self, customer_id: str) -> Subscriber | None:
        result = await self.session.execute(
            select(Subscriber).where(Subscriber.stripe_customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    async def create_checkout_session(self, user: dict, tier: str) -> dict[str, str]:
        """Subscription-mode checkout for a display tier."""
        self._require_stripe()
        price_id = self.settings.stripe_price_for_tier(tier) if tier in PURCHASABLE_TIERS else ""
        if not price_id:
            raise APIError(f"Unknown subscription tier: {tier}", status_code=400)

        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": self.settings.stripe_success_url,
            "cancel_url": self.settings.stripe_cancel_url,
            "client_reference_id": user["id"],
            "metadata": {"user_id": user["id"], "tier": tier},
            "subscription_data": {"metadata": {"user_id": user["id"], "tier": tier}},
        }
        subscriber = await self._subscriber_for_user(user["id"])
        if subscriber is not None and subscriber.stripe_customer_id:
            params["customer"] = subscriber.stripe_customer_id
        elif user.get("email"):
            params["customer_email"] = user["email"]

        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=self.settings.stripe_secret_key,
            **params,
        )
        logger.info("Checkout session %s created for %s (%s)", _get(session, "id"), user["id"], tier)
        return {"session_id": _get(session, "id"), "url": _get(session, "url")}

    async def create_portal_session(self, user: dict) -> dict[str, str]:
        """Customer portal for managing an existing subscription."""
        self._require_stripe()
        subscriber = await self._subscriber_for_user(user["id"])
        if subscriber is None or not subscriber.stripe_customer_id:
            raise NotFoundError("Stripe customer")

        session = await asyncio.to_thread(
            stripe.billing_portal.Session.create,
            api_key=self.settings.stripe_secret_key,
            customer=subscriber.stripe_customer_id,
            return_url=self.settings.stripe_portal_return_url,
        )
        return {"url": _get(session, "url")}

    def get_config(self) -> dict[str, Any]:
        """Public checkout configuration for the pricing page.

        ``tier_names`` maps price id to display tier; ``price_to_tier`` maps
        the lowercase tier to its price id.
        """
        publishable_key = self.settings.stripe_publishable_key
        if not publishable_key:
            raise APIError("Billing is not configured", status_code=503)
        if not publishable_key.startswith("pk_"):
            raise APIError("Invalid Stripe publishable key format", status_code=500)

        price_ids = {
            tier.lower(): self.settings.stripe_price_for_tier(tier)
            for tier in PURCHASABLE_TIERS
            if self.settings.stripe_price_for_tier(tier)
        }
        return {
            "publishable_key": publishable_key,
            "price_ids": price_ids,
            "tier_names": {price_id: tier.capitalize() for tier, price_id in price_ids.items()},
            "price_to_tier": dict(price_ids),
        }

    async def verify_checkout(self, user: dict, session_id: str) -> dict[str, Any]:
        """Confirm a finished checkout and sync the subscriber without waiting for the webhook."""
        self._require_stripe()
        try:
            checkout = await asyncio.to_thread(
                stripe.checkout.Session.retrieve,
                session_id,
                api_key=self.settings.stripe_secret_key,
            )
        except stripe.InvalidRequestError as e:
            raise NotFoundError("Checkout session", session_id) from e

        metadata = _get(checkout, "metadata") or {}
        owner = _get(metadata, "user_id") or _get(checkout, "client_reference_id")
        if owner != user["id"]:
            raise ForbiddenError("Checkout session belongs to another user")

        payment_status = _get(checkout, "payment_status")
        if payment_status not in ("paid", "no_payment_required"):
            logger.info("Checkout %s not paid yet (%s)", session_id, payment_status)
            return {"success": False, "error": "Payment not completed", "payment_status": payment_status}

        outcome = await self._checkout_completed(checkout)
        if outcome != "subscribed":
            return {"success": False, "error": f"Checkout not applied: {outcome}", "payment_status": payment_status}
        return {
            "success": True,
            "tier": _get(metadata, "tier") or "Core",
            "payment_status": payment_status,
        }

    def construct_event(self, payload: bytes, signature: str | None) -> Any:
        """Verify a webhook payload's signature and parse the event."""
        if not self.settings.stripe_webhook_secret:
            raise APIError("Billing is not configured", status_code=503)
        if not signature:
            raise APIError("No Stripe signature found", status_code=400)
        try:
            return stripe.Webhook.construct_event(payload, signature, self.settings.stripe_webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise APIError("Webhook signature verification failed", status_code=400) from e

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        return await asyncio.to_thread(
            stripe.Subscription.retrieve,
            subscription_id,
            api_key=self.settings.stripe_secret_key,
        )

    async def handle_event(self, event: Any) -> str:
        """Apply one webhook event; returns a short outcome label."""
        event_type = _get(event, "type")
        obj = _get(_get(event, "data"), "object")
        logger.info("Stripe webhook event: %s", event_type)

        if event_type == "checkout.session.completed":
            return await self._checkout_completed(obj)
        if event_type == "customer.subscription.updated":
            return await self._subscription_updated(obj)
        if event_type == "customer.subscription.deleted":
            return await self._subscription_deleted(obj)
        if event_type == "invoice.payment_failed":
            logger.warning(
                "Payment failed for invoice %s (customer %s)",
                _get(obj, "id"),
                _get(obj, "customer"),
            )
            return "payment_failed_logged"

        logger.info("Unhandled Stripe event type: %s", event_type)
        return "ignored"

    async def _checkout_completed(self, checkout: Any) -> str:
        if _get(checkout, "mode") != "subscription" or not _get(checkout, "subscription"):
            return "ignored"

        metadata = _get(checkout, "metadata") or {}
        user_id = _get(metadata, "user_id")
        if not user_id:
            logger.warning("No user_id in checkout session %s metadata", _get(checkout, "id"))
            return "missing_user"

        subscription = await self.retrieve_subscription(_get(checkout, "subscription"))
        start, end = subscription_period(subscription)
        tier = map_display_to_tier(_get(metadata, "tier") or "Core")

        subscriber = await self._subscriber_for_user(user_id)
        if subscriber is None:
            subscriber = Subscriber(user_id=user_id)
            self.session.add(subscriber)

        email = _get(_get(checkout, "customer_details"), "email") or _get(checkout, "customer_email")
        if email:
            subscriber.email = email
        subscriber.subscribed = True
        subscriber.is_active = _get(subscription, "status") == "active"
        subscriber.subscription_tier = tier
        subscriber.subscription_start = start
        subscriber.subscription_end = end
        subscriber.stripe_customer_id = _get(checkout, "customer")
        await self.session.flush()

        logger.info("Subscriber %s updated to %s", user_id, tier)
        return "subscribed"

    async def _subscription_updated(self, subscription: Any) -> str:
        customer_id = _get(subscription, "customer")
        subscriber = await self._subscriber_for_customer(customer_id)
        if subscriber is None:
            logger.warning("Could not find subscriber for customer %s", customer_id)
            return "unknown_customer"

        status = _get(subscription, "status")
        start, end = subscription_period(subscription)
        subscriber.is_active = status == "active"
        subscriber.subscribed = status in ("active", "trialing")
        subscriber.subscription_start = start
        subscriber.subscription_end = end
        await self.session.flush()

        logger.info("Subscription for customer %s is now %s", customer_id, status)
        return "updated"

    async def _subscription_deleted(self, subscription: Any) -> str:
        customer_id = _get(subscription, "customer")
        subscriber = await self._subscriber_for_customer(customer_id)
        if subscriber is None:
            logger.warning("Could not find subscriber for customer %s", customer_id)
            return "unknown_customer"

        subscriber.subscribed = False
        subscriber.is_active = False
        subscriber.subscription_tier = "Free"
        subscriber.subscription_end = datetime.now(UTC)
        await self.session.flush()

        logger.info("Subscription cancelled for customer %s", customer_id)
        return "cancelled"
