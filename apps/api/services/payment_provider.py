"""Stripe client used by checkout creation and the webhook reconciler."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe

from config import settings
from services.errors import PaymentProviderError, WebhookSignatureInvalid
from services.plan_catalog import Plan

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin wrapper over the stripe SDK so tests can substitute a fake."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.tolerance_seconds = int(tolerance_seconds or settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS)

    def _require_api_key(self) -> str:
        if not self.api_key:
            raise PaymentProviderError("Stripe is not configured.")
        return self.api_key

    def verify_and_parse(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Check the Stripe-Signature header, then return the event as a plain dict."""
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
            raise WebhookSignatureInvalid("Webhook secret not configured.")
        if not signature:
            raise WebhookSignatureInvalid("Missing Stripe-Signature header.")

        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else str(payload)
        try:
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret, self.tolerance_seconds)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureInvalid(f"Invalid webhook signature: {exc}") from exc

        try:
            event = json.loads(text)
        except ValueError as exc:
            raise WebhookSignatureInvalid("Webhook payload is not valid JSON.") from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookSignatureInvalid("Webhook payload is missing id or type.")
        return event

    def lookup_customer_email(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id or not self.api_key:
            return None
        try:
            customer = stripe.Customer.retrieve(customer_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            logger.warning("Stripe customer lookup failed for %s: %s", customer_id, exc)
            return None
        email = getattr(customer, "email", None)
        return str(email).strip().lower() if email else None

    def lookup_subscription_metadata(self, subscription_id: Optional[str]) -> Dict[str, str]:
        if not subscription_id or not self.api_key:
            return {}
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
            metadata = subscription["metadata"]
        except (stripe.StripeError, KeyError) as exc:
            logger.warning("Stripe subscription lookup failed for %s: %s", subscription_id, exc)
            return {}
        return {str(key): str(metadata[key]) for key in metadata.keys()} if metadata else {}

    def price_for_plan(self, plan: Plan) -> str:
        prices = {
            "creator": settings.STRIPE_PRICE_CREATOR,
            "agency": settings.STRIPE_PRICE_AGENCY,
        }
        price_id = (prices.get(plan.id) or "").strip()
        if not price_id:
            raise PaymentProviderError(f"No Stripe price configured for plan '{plan.id}'.")
        return price_id

    def create_checkout_session(
        self,
        *,
        account_id: str,
        plan: Plan,
        email: Optional[str] = None,
        customer_id: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        api_key = self._require_api_key()
        metadata = {"planId": plan.id, "credits": str(plan.monthly_credits), "accountId": account_id}
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": self.price_for_plan(plan), "quantity": 1}],
            "success_url": success_url or f"{settings.STRIPE_SUCCESS_URL}&plan={plan.id}",
            "cancel_url": cancel_url or settings.STRIPE_CANCEL_URL,
            "client_reference_id": account_id,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "api_key": api_key,
        }
        if customer_id:
            params["customer"] = customer_id
        elif email:
            params["customer_email"] = email
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as exc:
            logger.error("Stripe checkout creation failed for account %s: %s", account_id, exc)
            raise PaymentProviderError(f"Stripe checkout failed: {exc}") from exc
        return {"id": session.id, "url": session.url}
