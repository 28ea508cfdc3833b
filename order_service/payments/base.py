"""Provider-neutral payment types.

Amounts stay in integer minor units inside the service and are converted to
each provider's wire format at the adapter boundary.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional, Union

from ..errors import ValidationError

# ISO 4217 currencies without a minor unit.
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "CLP", "ISK", "HUF", "TWD", "VND", "XAF", "XOF"}


@dataclass(frozen=True)
class Money:
    amount: int # Minor units (cents).
    currency: str

    @property
    def exponent(self) -> int:
        return 0 if self.currency.upper() in ZERO_DECIMAL_CURRENCIES else 2

    def to_decimal_string(self) -> str:
        """``Money(1250, "EUR")`` -> ``"12.50"``."""
        value = Decimal(self.amount).scaleb(-self.exponent)
        return f"{value:.{self.exponent}f}"

    @classmethod
    def from_decimal_string(cls, value: str, currency: str) -> "Money":
        exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
        minor = (Decimal(value).scaleb(exponent)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        return cls(int(minor), currency.upper())


@dataclass(frozen=True)
class PaymentSession:
    payment_id: str
    approval_url: str


@dataclass(frozen=True)
class ProviderPaymentStatus:
    status: str # Raw provider status, kept for logging.
    is_approved: bool = False
    is_paid: bool = False
    is_failed: bool = False
    capture_id: Optional[str] = None


@dataclass(frozen=True)
class CaptureResult:
    capture_id: str
    status: str


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str


# --- The payment attached to an order, one variant per provider ---

@dataclass(frozen=True)
class PayPalPayment:
    order_id: str
    capture_id: Optional[str] = None
    kind = "paypal"

    @property
    def refund_reference(self):
        return self.capture_id


@dataclass(frozen=True)
class StripePayment:
    session_id: str
    intent_id: Optional[str] = None
    kind = "stripe"

    @property
    def refund_reference(self):
        return self.intent_id


@dataclass(frozen=True)
class MolliePayment:
    payment_id: str
    kind = "mollie"

    @property
    def refund_reference(self):
        return self.payment_id


AttachedPayment = Union[PayPalPayment, StripePayment, MolliePayment]


def attached_payment(order) -> Optional[AttachedPayment]:
    """Build the payment variant from the order's provider columns."""
    provider = order.payment_provider
    if provider is None:
        return None
    if provider == "paypal":
        return PayPalPayment(order_id=order.provider_order_id, capture_id=order.provider_capture_id)
    if provider == "stripe":
        return StripePayment(session_id=order.provider_order_id, intent_id=order.provider_capture_id)
    if provider == "mollie":
        return MolliePayment(payment_id=order.provider_order_id)
    raise ValueError(f"Unknown payment provider: {provider}")


class PaymentGateway:
    """Operations every provider adapter implements.

    Adapters raise ``TransientProviderError`` for transport failures and
    non-success responses; they never decide whether a payment failed.
    """

    name = ""

    def create_payment(self, order_id: str, amount: Money, description: str,
                       return_url: str, cancel_url: str, merchant=None) -> PaymentSession:
        raise NotImplementedError

    def get_payment_status(self, payment_id: str, merchant=None) -> ProviderPaymentStatus:
        raise NotImplementedError

    def capture_payment(self, payment_id: str, merchant=None) -> CaptureResult:
        raise NotImplementedError

    def create_refund(self, payment_id: str, amount: Money, description: str, merchant=None) -> RefundResult:
        raise NotImplementedError

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        """Return the provider payment id a webhook refers to, if any."""
        raise NotImplementedError


def require_refund_reference(payment: Optional[AttachedPayment]) -> str:
    reference = payment.refund_reference if payment is not None else None
    if not reference:
        raise ValidationError("No payment ID found for this order", reason="missing_payment_reference")
    return reference
