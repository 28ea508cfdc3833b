"""PayPal Orders v2 adapter (marketplace flow: payments go to the seller)."""
import base64
import json
import logging
import time

import requests

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

LIVE_API_BASE = "https://api-m.paypal.com"
SANDBOX_API_BASE = "https://api-m.sandbox.paypal.com"

# Order statuses that will never turn into a payment.
FAILED_STATUSES = {"VOIDED"}

# Refresh the OAuth token this many seconds before it expires.
TOKEN_EXPIRY_BUFFER = 60


class PayPalGateway(PaymentGateway):
    name = "paypal"

    def __init__(self, client_id=None, client_secret=None, mode=None, session=None, timeout=None):
        self.client_id = client_id or config.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or config.PAYPAL_CLIENT_SECRET
        self.api_base = LIVE_API_BASE if (mode or config.PAYPAL_MODE) == "live" else SANDBOX_API_BASE
        self.session = session or requests.Session()
        self.timeout = timeout or config.PAYMENT_HTTP_TIMEOUT
        self._token = None
        self._token_expires_at = 0.0

    # --- HTTP plumbing ---

    def _access_token(self):
        if self._token and self._token_expires_at - time.time() > TOKEN_EXPIRY_BUFFER:
            return self._token
        if not self.client_id or not self.client_secret:
            raise TransientProviderError("PayPal credentials not configured", provider=self.name)

        auth = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode()
        data = self._send(
            "POST",
            "/v1/oauth2/token",
            headers={
                "Authorization": f"Basic {auth}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            data="grant_type=client_credentials",
        )
        self._token = data["access_token"]
        self._token_expires_at = time.time() + int(data.get("expires_in", 0))
        logger.info("PayPal access token obtained (expires in %ss)", data.get("expires_in"))
        return self._token

    def _auth_assertion(self, seller_merchant_id):
        """Unsigned JWT that lets the platform act on behalf of the seller."""
        def encode(part):
            return base64.urlsafe_b64encode(json.dumps(part).encode()).decode().rstrip("=")
        return f"{encode({'alg': 'none'})}.{encode({'iss': self.client_id, 'payer_id': seller_merchant_id})}."

    def _headers(self, merchant=None, request_id=None):
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        seller = getattr(merchant, "paypal_merchant_id", None)
        if seller:
            headers["PayPal-Auth-Assertion"] = self._auth_assertion(seller)
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        if config.PAYPAL_BN_CODE:
            headers["PayPal-Partner-Attribution-Id"] = config.PAYPAL_BN_CODE
        return headers

    def _send(self, method, path, **kwargs):
        try:
            response = self.session.request(method, f"{self.api_base}{path}", timeout=self.timeout, **kwargs)
            response.raise_for_status() # Raises an exception for 4xx/5xx status codes
            return response.json()
        except requests.exceptions.RequestException as exc:
            logger.error("PayPal %s %s failed: %s", method, path, exc)
            raise TransientProviderError(f"PayPal request failed: {method} {path}", provider=self.name) from exc

    # --- Gateway operations ---

    def create_payment(self, order_id, amount: Money, description, return_url, cancel_url, merchant=None):
        purchase_unit = {
            "reference_id": order_id,
            "description": description,
            "amount": {"currency_code": amount.currency, "value": amount.to_decimal_string()},
        }
        seller = getattr(merchant, "paypal_merchant_id", None)
        if seller:
            purchase_unit["payee"] = {"merchant_id": seller}

        payload = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": {
                "return_url": return_url,
                "cancel_url": cancel_url,
                "landing_page": "NO_PREFERENCE",
                "user_action": "PAY_NOW",
            },
        }
        data = self._send(
            "POST",
            "/v2/checkout/orders",
            headers=self._headers(request_id=order_id),
            json=payload,
        )
        approval = next((link["href"] for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")), None)
        if not approval:
            raise TransientProviderError("PayPal did not return approval URL", provider=self.name)

        logger.info("PayPal order %s created for order %s", data["id"], order_id)
        return PaymentSession(payment_id=data["id"], approval_url=approval)

    def get_payment_status(self, payment_id, merchant=None):
        data = self._send("GET", f"/v2/checkout/orders/{payment_id}", headers=self._headers(merchant))
        status = data.get("status", "")
        capture = _first_capture(data)
        return ProviderPaymentStatus(
            status=status,
            is_approved=status == "APPROVED",
            is_paid=status == "COMPLETED",
            is_failed=status in FAILED_STATUSES,
            capture_id=capture.get("id") if capture else None,
        )

    def capture_payment(self, payment_id, merchant=None):
        data = self._send(
            "POST",
            f"/v2/checkout/orders/{payment_id}/capture",
            headers=self._headers(merchant, request_id=f"capture_{payment_id}"),
        )
        capture = _first_capture(data)
        if not capture:
            raise TransientProviderError("PayPal capture response missing capture data", provider=self.name)
        logger.info("PayPal order %s captured (%s)", payment_id, capture.get("status"))
        return CaptureResult(capture_id=capture["id"], status=capture.get("status", ""))

    def create_refund(self, payment_id, amount: Money, description, merchant=None):
        data = self._send(
            "POST",
            f"/v2/payments/captures/{payment_id}/refund",
            headers=self._headers(merchant, request_id=f"refund_{payment_id}_{amount.amount}"),
            json={
                "amount": {"currency_code": amount.currency, "value": amount.to_decimal_string()},
                "note_to_payer": description,
            },
        )
        return RefundResult(refund_id=data["id"], status=data.get("status", ""))

    def parse_webhook(self, body, headers):
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise ValidationError("PayPal webhook body is not JSON", reason="invalid_webhook") from exc
        if not isinstance(event, dict) or "event_type" not in event:
            raise ValidationError("PayPal webhook is missing event_type", reason="invalid_webhook")
        resource = event.get("resource") or {}
        event_type = event["event_type"]
        logger.info("PayPal webhook %s (%s)", event.get("id"), event_type)

        if event_type.startswith("CHECKOUT.ORDER."):
            return resource.get("id")
        if event_type.startswith("PAYMENT.CAPTURE."):
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            return related.get("order_id")
        return None


def _first_capture(data):
    units = data.get("purchase_units") or [{}]
    captures = ((units[0].get("payments") or {}).get("captures")) or []
    return captures[0] if captures else None
