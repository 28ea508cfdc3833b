"""Stripe adapter built on hosted Checkout Sessions.

The session's PaymentIntent uses ``capture_method=manual``: a completed
checkout leaves the intent in ``requires_capture`` (approved) until the
reconciler captures it. Stripe takes integer minor units, so amounts go out
unconverted.
"""
import json
import logging

import stripe

from .. import config
from ..errors import TransientProviderError, ValidationError
from .base import (
    CaptureResult,
    Money,
    PaymentGateway,
    PaymentSession,
    ProviderPaymentStatus,
    RefundResult,
)

logger = logging.getLogger(__name__)

FAILED_INTENT_STATUSES = {"canceled"}

PAYMENT_INTENT_EVENTS = (
    "payment_intent.amount_capturable_updated",
    "payment_intent.succeeded",
    "payment_intent.canceled",
    "payment_intent.payment_failed",
)


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, api_key=None, webhook_secret=None):
        self.api_key = api_key or config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.STRIPE_WEBHOOK_SECRET

    def _account(self, merchant):
        return getattr(merchant, "stripe_account_id", None)

    def _call(self, description, fn, *args, **kwargs):
        if not self.api_key:
            raise TransientProviderError("Stripe API key not configured", provider=self.name)
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", description, exc)
            raise TransientProviderError(f"Stripe request failed: {description}", provider=self.name) from exc

    def create_payment(self, order_id, amount: Money, description, return_url, cancel_url, merchant=None):
        session = self._call(
            "checkout.create",
            stripe.checkout.Session.create,
            mode="payment",
            client_reference_id=order_id,
            success_url=return_url,
            cancel_url=cancel_url,
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": amount.currency.lower(),
                    "unit_amount": amount.amount,
                    "product_data": {"name": description},
                },
            }],
            payment_intent_data={
                "capture_method": "manual",
                "metadata": {"order_id": order_id},
            },
            metadata={"order_id": order_id},
            idempotency_key=f"checkout_{order_id}",
            stripe_account=self._account(merchant),
        )
        logger.info("Stripe checkout session %s created for order %s", session["id"], order_id)
        return PaymentSession(payment_id=session["id"], approval_url=session["url"])

    def get_payment_status(self, payment_id, merchant=None):
        session = self._call(
            "checkout.retrieve",
            stripe.checkout.Session.retrieve,
            payment_id,
            expand=["payment_intent"],
            stripe_account=self._account(merchant),
        )
        # Expanded intents come back as objects; a bare id means the expansion was skipped.
        intent = session["payment_intent"]
        if intent is None or isinstance(intent, str):
            intent_status, intent_id = "", intent
        else:
            intent_status, intent_id = intent["status"], intent["id"]

        return ProviderPaymentStatus(
            status=intent_status or session["status"] or "",
            is_approved=intent_status == "requires_capture",
            is_paid=intent_status == "succeeded",
            is_failed=session["status"] == "expired" or intent_status in FAILED_INTENT_STATUSES,
            capture_id=intent_id,
        )

    def capture_payment(self, payment_id, merchant=None):
        status = self.get_payment_status(payment_id, merchant)
        if not status.capture_id:
            raise TransientProviderError("Stripe checkout has no payment intent yet", provider=self.name)
        intent = self._call(
            "payment_intent.capture",
            stripe.PaymentIntent.capture,
            status.capture_id,
            idempotency_key=f"capture_{status.capture_id}",
            stripe_account=self._account(merchant),
        )
        return CaptureResult(capture_id=intent["id"], status=intent["status"])

    def create_refund(self, payment_id, amount: Money, description, merchant=None):
        refund = self._call(
            "refund.create",
            stripe.Refund.create,
            payment_intent=payment_id,
            amount=amount.amount,
            metadata={"description": description},
            idempotency_key=f"refund_{payment_id}_{amount.amount}",
            stripe_account=self._account(merchant),
        )
        return RefundResult(refund_id=refund["id"], status=refund["status"] or "")

    def parse_webhook(self, body, headers):
        if self.webhook_secret:
            try:
                event = stripe.Webhook.construct_event(body, headers.get("stripe-signature", ""), self.webhook_secret)
            except (ValueError, stripe.SignatureVerificationError) as exc:
                raise ValidationError("Invalid Stripe webhook signature", reason="invalid_signature") from exc
        else:
            try:
                event = json.loads(body)
            except ValueError as exc:
                raise ValidationError("Stripe webhook body is not JSON", reason="invalid_webhook") from exc

        try:
            event_type = event["type"]
            object_id = event["data"]["object"]["id"]
        except (KeyError, TypeError) as exc:
            raise ValidationError("Stripe webhook is missing type or data", reason="invalid_webhook") from exc
        logger.info("Stripe webhook (%s)", event_type)

        if event_type.startswith("checkout.session."):
            return object_id
        if event_type in PAYMENT_INTENT_EVENTS:
            # Orders store the session id, so map the intent back to its session.
            return self._session_for_intent(object_id)
        return None

    def _session_for_intent(self, intent_id):
        sessions = self._call("checkout.list", stripe.checkout.Session.list, payment_intent=intent_id, limit=1)
        data = sessions["data"]
        return data[0]["id"] if data else None
