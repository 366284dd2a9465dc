"""Billing router: Stripe config, checkout, payment verification, customer portal and webhook."""

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, Field

from taleforge.api.deps import AppSettings, CurrentUser, DBSession
from taleforge.services.billing import BillingService

router = APIRouter()


class CheckoutRequest(BaseModel):
    tier: str = Field(..., description="Display tier: Core, Pro or Family")


class CheckoutResponse(BaseModel):
    session_id: str
    url: str


class PortalResponse(BaseModel):
    url: str


class StripeConfigResponse(BaseModel):
    publishable_key: str
    price_ids: dict[str, str]
    tier_names: dict[str, str]
    price_to_tier: dict[str, str]


class VerifyPaymentRequest(BaseModel):
    session_id: str = Field(..., min_length=1, description="Stripe checkout session id")


class VerifyPaymentResponse(BaseModel):
    success: bool
    tier: str | None = None
    payment_status: str | None = None
    error: str | None = None


class WebhookResponse(BaseModel):
    received: bool
    outcome: str


@router.get("/config", response_model=StripeConfigResponse)
async def get_stripe_config(db: DBSession, settings: AppSettings) -> StripeConfigResponse:
    """Publishable key and price ids for the pricing page."""
    return StripeConfigResponse(**BillingService(db, settings).get_config())


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    user: CurrentUser,
    db: DBSession,
    settings: AppSettings,
) -> CheckoutResponse:
    """Start a Stripe-hosted subscription checkout."""
    session = await BillingService(db, settings).create_checkout_session(user, request.tier)
    return CheckoutResponse(**session)


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(
    request: VerifyPaymentRequest,
    user: CurrentUser,
    db: DBSession,
    settings: AppSettings,
) -> VerifyPaymentResponse:
    """Check a returning checkout and activate the subscription if it is paid."""
    result = await BillingService(db, settings).verify_checkout(user, request.session_id)
    await db.commit()
    return VerifyPaymentResponse(**result)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(user: CurrentUser, db: DBSession, settings: AppSettings) -> PortalResponse:
    """Open the Stripe customer portal for an existing subscriber."""
    session = await BillingService(db, settings).create_portal_session(user)
    return PortalResponse(**session)


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    db: DBSession,
    settings: AppSettings,
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
) -> WebhookResponse:
    """Sync subscription state from Stripe events.

    The signature is checked against the raw request body.
    """
    service = BillingService(db, settings)
    payload = await request.body()
    event = service.construct_event(payload, stripe_signature)
    outcome = await service.handle_event(event)
    await db.commit()
    return WebhookResponse(received=True, outcome=outcome)
