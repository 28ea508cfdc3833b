"""Mollie Payments v2 adapter.

Payments are created with ``captureMode=manual`` so an authorized payment is
captured by the reconciler, the same as PayPal and Stripe. Mollie webhooks
are thin: the body only carries the payment id (``id=tr_...``).
"""
import logging
from urllib.parse import parse_qs

import requests

from .. import config
from ..errors import TransientProviderError
from .base import (
    CaptureResult,
    Money,
    PaymentGateway,
    PaymentSession,
    ProviderPaymentStatus,
    RefundResult,
)

logger = logging.getLogger(__name__)

API_BASE = "https://api.mollie.com/v2"

FAILED_STATUSES = {"failed", "canceled", "expired"}


class MollieGateway(PaymentGateway):
    name = "mollie"

    def __init__(self, api_key=None, session=None, timeout=None, webhook_url=None):
        self.api_key = api_key or config.MOLLIE_API_KEY
        self.session = session or requests.Session()
        self.timeout = timeout or config.PAYMENT_HTTP_TIMEOUT
        self.webhook_url = webhook_url or f"{config.SERVER_URL}/api/v1/webhooks/mollie"

    def _send(self, method, path, **kwargs):
        if not self.api_key:
            raise TransientProviderError("Mollie API key not configured", provider=self.name)
        try:
            response = self.session.request(
                method,
                f"{API_BASE}{path}",
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
                **kwargs,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as exc:
            logger.error("Mollie %s %s failed: %s", method, path, exc)
            raise TransientProviderError(f"Mollie request failed: {method} {path}", provider=self.name) from exc

    def create_payment(self, order_id, amount: Money, description, return_url, cancel_url, merchant=None):
        payload = {
            "amount": {"currency": amount.currency, "value": amount.to_decimal_string()},
            "description": description,
            "redirectUrl": return_url,
            "cancelUrl": cancel_url,
            "webhookUrl": self.webhook_url,
            "captureMode": "manual",
            "metadata": {"order_id": order_id},
        }
        profile_id = getattr(merchant, "mollie_profile_id", None)
        if profile_id:
            payload["profileId"] = profile_id

        data = self._send("POST", "/payments", json=payload)
        checkout = ((data.get("_links") or {}).get("checkout") or {}).get("href")
        if not checkout:
            raise TransientProviderError("Mollie did not return a checkout URL", provider=self.name)

        logger.info("Mollie payment %s created for order %s", data["id"], order_id)
        return PaymentSession(payment_id=data["id"], approval_url=checkout)

    def get_payment_status(self, payment_id, merchant=None):
        data = self._send("GET", f"/payments/{payment_id}")
        status = data.get("status", "")
        captures = ((data.get("_embedded") or {}).get("captures")) or []
        return ProviderPaymentStatus(
            status=status,
            is_approved=status == "authorized",
            is_paid=status == "paid",
            is_failed=status in FAILED_STATUSES,
            capture_id=captures[0]["id"] if captures else None,
        )

    def capture_payment(self, payment_id, merchant=None):
        data = self._send("POST", f"/payments/{payment_id}/captures", json={})
        logger.info("Mollie payment %s captured (%s)", payment_id, data.get("status"))
        return CaptureResult(capture_id=data["id"], status=data.get("status", ""))

    def create_refund(self, payment_id, amount: Money, description, merchant=None):
        data = self._send(
            "POST",
            f"/payments/{payment_id}/refunds",
            json={
                "amount": {"currency": amount.currency, "value": amount.to_decimal_string()},
                "description": description,
            },
        )
        return RefundResult(refund_id=data["id"], status=data.get("status", ""))

    def parse_webhook(self, body, headers):
        params = parse_qs(body.decode() if isinstance(body, bytes) else body)
        payment_ids = params.get("id") or []
        return payment_ids[0] if payment_ids else None
