import json
from types import SimpleNamespace

import pytest
import requests
import stripe

from order_service.errors import TransientProviderError, ValidationError
from order_service.payments.base import Money
from order_service.payments.mollie import MollieGateway
from order_service.payments.paypal import PayPalGateway
from order_service.payments.registry import GatewayRegistry, default_registry
from order_service.payments.stripe_payments import StripeGateway


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def json(self):
        return self.payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error", response=self)


class FakeSession:
    """Replays canned responses in order and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append(SimpleNamespace(method=method, url=url, **kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


TOKEN = FakeResponse({"access_token": "tok", "expires_in": 3600})
SELLER = SimpleNamespace(paypal_merchant_id="SELLER1", stripe_account_id="acct_1", mollie_profile_id="pfl_1")


# --- Money ---

def test_money_decimal_strings():
    assert Money(1250, "EUR").to_decimal_string() == "12.50"
    assert Money(5, "EUR").to_decimal_string() == "0.05"
    assert Money(500, "JPY").to_decimal_string() == "500"
    assert Money.from_decimal_string("12.5", "eur") == Money(1250, "EUR")


# --- PayPal ---

def paypal(*responses):
    session = FakeSession(*responses)
    return PayPalGateway(client_id="id", client_secret="secret", mode="sandbox", session=session), session


def test_paypal_create_payment():
    gateway, session = paypal(TOKEN, FakeResponse({
        "id": "PP-1",
        "links": [{"rel": "self", "href": "x"}, {"rel": "approve", "href": "https://paypal.example/approve"}],
    }))

    result = gateway.create_payment("o-1", Money(1250, "EUR"), "Order #001 - Cafe", "https://r", "https://c", merchant=SELLER)

    assert result.payment_id == "PP-1"
    assert result.approval_url == "https://paypal.example/approve"
    create = session.requests[1]
    assert create.url.endswith("/v2/checkout/orders")
    unit = create.json["purchase_units"][0]
    assert unit["amount"] == {"currency_code": "EUR", "value": "12.50"}
    assert unit["payee"] == {"merchant_id": "SELLER1"}
    assert create.headers["PayPal-Request-Id"] == "o-1"


def test_paypal_token_is_cached():
    gateway, session = paypal(TOKEN, FakeResponse({"status": "APPROVED"}), FakeResponse({"status": "APPROVED"}))

    gateway.get_payment_status("PP-1")
    gateway.get_payment_status("PP-1")

    assert [r.url.rsplit("/", 1)[-1] for r in session.requests] == ["token", "PP-1", "PP-1"]


@pytest.mark.parametrize("status, approved, paid, failed", [
    ("CREATED", False, False, False),
    ("APPROVED", True, False, False),
    ("COMPLETED", False, True, False),
    ("VOIDED", False, False, True),
])
def test_paypal_status_mapping(status, approved, paid, failed):
    gateway, _ = paypal(TOKEN, FakeResponse({"status": status}))

    result = gateway.get_payment_status("PP-1")

    assert (result.is_approved, result.is_paid, result.is_failed) == (approved, paid, failed)


def test_paypal_capture_returns_capture_id():
    gateway, session = paypal(TOKEN, FakeResponse({
        "status": "COMPLETED",
        "purchase_units": [{"payments": {"captures": [{"id": "CAP-9", "status": "COMPLETED"}]}}],
    }))

    result = gateway.capture_payment("PP-1", merchant=SELLER)

    assert result.capture_id == "CAP-9"
    assert "PayPal-Auth-Assertion" in session.requests[1].headers


def test_paypal_network_error_is_transient():
    gateway, _ = paypal(TOKEN, requests.exceptions.ConnectionError("reset"))

    with pytest.raises(TransientProviderError) as exc:
        gateway.capture_payment("PP-1")
    assert exc.value.provider == "paypal"


def test_paypal_http_error_is_transient():
    gateway, _ = paypal(TOKEN, FakeResponse({"name": "INTERNAL"}, status_code=500))

    with pytest.raises(TransientProviderError):
        gateway.get_payment_status("PP-1")


def test_paypal_refund_posts_to_capture():
    gateway, session = paypal(TOKEN, FakeResponse({"id": "RF-1", "status": "COMPLETED"}))

    result = gateway.create_refund("CAP-9", Money(300, "EUR"), "Order refund")

    assert result.refund_id == "RF-1"
    assert session.requests[1].url.endswith("/v2/payments/captures/CAP-9/refund")
    assert session.requests[1].json["amount"]["value"] == "3.00"


def test_paypal_webhook_references():
    gateway, _ = paypal()

    order_event = {"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "PP-1"}}
    capture_event = {
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {"id": "CAP-1", "supplementary_data": {"related_ids": {"order_id": "PP-2"}}},
    }
    assert gateway.parse_webhook(json.dumps(order_event).encode(), {}) == "PP-1"
    assert gateway.parse_webhook(json.dumps(capture_event).encode(), {}) == "PP-2"
    assert gateway.parse_webhook(json.dumps({"event_type": "BILLING.PLAN.CREATED"}).encode(), {}) is None


# --- Mollie ---

def mollie(*responses):
    session = FakeSession(*responses)
    return MollieGateway(api_key="test_key", session=session, webhook_url="https://svc/webhooks/mollie"), session


def test_mollie_create_payment():
    gateway, session = mollie(FakeResponse({
        "id": "tr_1",
        "_links": {"checkout": {"href": "https://mollie.example/checkout"}},
    }))

    result = gateway.create_payment("o-1", Money(1250, "EUR"), "Order #001", "https://r", "https://c", merchant=SELLER)

    assert result.payment_id == "tr_1"
    assert result.approval_url == "https://mollie.example/checkout"
    payload = session.requests[0].json
    assert payload["amount"] == {"currency": "EUR", "value": "12.50"}
    assert payload["captureMode"] == "manual"
    assert payload["profileId"] == "pfl_1"
    assert session.requests[0].headers["Authorization"] == "Bearer test_key"


def test_mollie_status_mapping():
    gateway, _ = mollie(
        FakeResponse({"status": "authorized"}),
        FakeResponse({"status": "paid", "_embedded": {"captures": [{"id": "cpt_1"}]}}),
        FakeResponse({"status": "expired"}),
    )

    assert gateway.get_payment_status("tr_1").is_approved
    paid = gateway.get_payment_status("tr_1")
    assert paid.is_paid and paid.capture_id == "cpt_1"
    assert gateway.get_payment_status("tr_1").is_failed


def test_mollie_missing_key_is_transient():
    gateway = MollieGateway(api_key="", session=FakeSession())
    gateway.api_key = ""

    with pytest.raises(TransientProviderError):
        gateway.get_payment_status("tr_1")


def test_mollie_webhook_form_body():
    gateway, _ = mollie()

    assert gateway.parse_webhook(b"id=tr_42", {}) == "tr_42"
    assert gateway.parse_webhook(b"", {}) is None


# --- Stripe ---

def stripe_object(values):
    return stripe.StripeObject.construct_from(values, "sk_test_1")


@pytest.fixture
def stripe_gateway():
    return StripeGateway(api_key="sk_test_1", webhook_secret="")


def test_stripe_create_checkout_session(stripe_gateway, monkeypatch):
    seen = {}

    def create(**kwargs):
        seen.update(kwargs)
        return stripe_object({"id": "cs_1", "url": "https://stripe.example/pay"})

    monkeypatch.setattr(stripe.checkout.Session, "create", create)

    result = stripe_gateway.create_payment("o-1", Money(1250, "EUR"), "Order #001", "https://r", "https://c", merchant=SELLER)

    assert (result.payment_id, result.approval_url) == ("cs_1", "https://stripe.example/pay")
    assert seen["line_items"][0]["price_data"]["unit_amount"] == 1250
    assert seen["line_items"][0]["price_data"]["currency"] == "eur"
    assert seen["payment_intent_data"]["capture_method"] == "manual"
    assert seen["stripe_account"] == "acct_1"
    assert seen["api_key"] == "sk_test_1"


@pytest.mark.parametrize("session_status, intent_status, approved, paid, failed", [
    ("open", "requires_payment_method", False, False, False),
    ("complete", "requires_capture", True, False, False),
    ("complete", "succeeded", False, True, False),
    ("expired", "canceled", False, False, True),
])
def test_stripe_status_mapping(stripe_gateway, monkeypatch, session_status, intent_status, approved, paid, failed):
    monkeypatch.setattr(
        stripe.checkout.Session, "retrieve",
        lambda *args, **kwargs: stripe_object({"status": session_status, "payment_intent": {"id": "pi_1", "status": intent_status}}),
    )

    result = stripe_gateway.get_payment_status("cs_1")

    assert (result.is_approved, result.is_paid, result.is_failed) == (approved, paid, failed)
    assert result.capture_id == "pi_1"


def test_stripe_capture_uses_payment_intent(stripe_gateway, monkeypatch):
    monkeypatch.setattr(
        stripe.checkout.Session, "retrieve",
        lambda *args, **kwargs: stripe_object({"status": "complete", "payment_intent": {"id": "pi_1", "status": "requires_capture"}}),
    )
    captured = []

    def capture(intent_id, **kwargs):
        captured.append(intent_id)
        return stripe_object({"id": intent_id, "status": "succeeded"})

    monkeypatch.setattr(stripe.PaymentIntent, "capture", capture)

    result = stripe_gateway.capture_payment("cs_1")

    assert captured == ["pi_1"]
    assert result.capture_id == "pi_1"


def test_stripe_errors_are_transient(stripe_gateway, monkeypatch):
    def boom(*args, **kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", boom)

    with pytest.raises(TransientProviderError):
        stripe_gateway.get_payment_status("cs_1")


def test_stripe_refund(stripe_gateway, monkeypatch):
    seen = {}

    def create(**kwargs):
        seen.update(kwargs)
        return stripe_object({"id": "re_1", "status": "succeeded"})

    monkeypatch.setattr(stripe.Refund, "create", create)

    result = stripe_gateway.create_refund("pi_1", Money(400, "EUR"), "Order refund")

    assert result.refund_id == "re_1"
    assert (seen["payment_intent"], seen["amount"]) == ("pi_1", 400)


def test_stripe_webhook_without_secret(stripe_gateway, monkeypatch):
    event = {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {"id": "cs_1"}}}
    assert stripe_gateway.parse_webhook(json.dumps(event).encode(), {}) == "cs_1"

    monkeypatch.setattr(stripe.checkout.Session, "list", lambda **kwargs: stripe_object({"data": [{"id": "cs_2"}]}))
    intent_event = {"id": "evt_2", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_2"}}}
    assert stripe_gateway.parse_webhook(json.dumps(intent_event).encode(), {}) == "cs_2"


def test_stripe_webhook_bad_signature(monkeypatch):
    gateway = StripeGateway(api_key="sk_test_1", webhook_secret="whsec_1")

    with pytest.raises(ValidationError) as exc:
        gateway.parse_webhook(b'{"type": "checkout.session.completed"}', {"stripe-signature": "t=1,v1=bad"})
    assert exc.value.reason == "invalid_signature"


def test_stripe_signed_webhook_event_object(monkeypatch):
    gateway = StripeGateway(api_key="sk_test_1", webhook_secret="whsec_1")
    event = {"id": "evt_3", "type": "checkout.session.expired", "data": {"object": {"id": "cs_3"}}}
    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda *args: stripe_object(event))

    assert gateway.parse_webhook(b"{}", {"stripe-signature": "t=1,v1=ok"}) == "cs_3"


def test_stripe_status_with_unexpanded_intent(stripe_gateway, monkeypatch):
    monkeypatch.setattr(
        stripe.checkout.Session, "retrieve",
        lambda *args, **kwargs: stripe_object({"status": "open", "payment_intent": "pi_9"}),
    )

    result = stripe_gateway.get_payment_status("cs_1")

    assert result.capture_id == "pi_9"
    assert result.status == "open"
    assert not (result.is_approved or result.is_paid or result.is_failed)


@pytest.mark.parametrize("body", [b"not json", b"[]", b'{"id": "evt_1"}', b'{"type": "checkout.session.completed"}'])
def test_stripe_malformed_webhook_is_rejected(stripe_gateway, body):
    with pytest.raises(ValidationError) as exc:
        stripe_gateway.parse_webhook(body, {})
    assert exc.value.reason == "invalid_webhook"


@pytest.mark.parametrize("body", [b"not json", b"[]", b'{"resource": {"id": "PP-1"}}'])
def test_paypal_malformed_webhook_is_rejected(body):
    gateway, _ = paypal()

    with pytest.raises(ValidationError) as exc:
        gateway.parse_webhook(body, {})
    assert exc.value.reason == "invalid_webhook"


# --- Registry ---

def test_registry_lookup():
    registry = default_registry()

    assert "paypal" in registry and "stripe" in registry and "mollie" in registry
    assert registry.get("stripe").name == "stripe"
    with pytest.raises(ValueError):
        GatewayRegistry([]).get("paypal")
