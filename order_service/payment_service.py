"""Starting payments and reconciling them with the provider."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session, selectinload

from .errors import NotFoundError, PaymentSetupError, TransientProviderError, ValidationError
from .messaging.producer import order_event
from .models import Merchant, Order, Store, utcnow
from .payments.base import Money, attached_payment
from .payments.registry import GatewayRegistry
from .reconciliation import SETTLED_PAYMENT_STATUSES, Action, decide, is_settled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentOutcome:
    payment_status: str
    success: bool


def with_order_id(url: str, order_id: str) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append(("order_id", order_id))
    return urlunsplit(parts._replace(query=urlencode(query)))


class PaymentService:
    def __init__(self, gateways: GatewayRegistry, publisher=None, clock: Callable[[], datetime] = utcnow):
        self.gateways = gateways
        self.publisher = publisher
        self.clock = clock

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def start_payment(self, db: Session, order_id: str, return_url: str, cancel_url: str) -> str:
        """Open a provider payment for an unpaid order and return the approval URL."""
        order = db.execute(
            select(Order)
            .where(Order.id == order_id, Order.status == "awaiting_payment")
            .options(selectinload(Order.store).selectinload(Store.merchant))
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found or not awaiting payment")

        # The provider comes from the order's merchant, never from the client.
        merchant = order.store.merchant
        provider = merchant.payment_provider if merchant else None
        if not provider or provider not in self.gateways:
            raise PaymentSetupError("Store cannot accept online payments")
        if order.payment_provider and order.payment_provider != provider:
            logger.warning(
                "Order %s switches payment provider from %s to %s",
                order.id, order.payment_provider, provider,
            )

        gateway = self.gateways.get(provider)
        session = gateway.create_payment(
            order_id=order.id,
            amount=Money(order.total_amount, order.store.currency.upper()),
            description=f"Order #{order.pickup_number:03d} - {order.store.name}",
            return_url=with_order_id(return_url, order.id),
            cancel_url=with_order_id(cancel_url, order.id),
            merchant=merchant,
        )

        order.payment_provider = provider
        order.provider_order_id = session.payment_id
        order.provider_capture_id = None
        order.payment_status = "awaiting_confirmation"
        db.commit()

        logger.info("Order %s awaiting %s confirmation (%s)", order.id, provider, session.payment_id)
        return session.approval_url

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def verify_payment(self, db: Session, order_id: str) -> PaymentOutcome:
        """Customer returned from the provider's hosted page."""
        return self.reconcile(db, self._load(db, order_id))

    def capture_payment(self, db: Session, order_id: str) -> PaymentOutcome:
        """Explicit capture request; same decisions as verify."""
        order = self._load(db, order_id)
        if order.payment_provider is None and not is_settled(order.payment_status):
            raise ValidationError("No payment found for this order", reason="payment_not_started")
        return self.reconcile(db, order)

    def handle_webhook(self, db: Session, provider: str, body: bytes, headers: Mapping[str, str]) -> Optional[PaymentOutcome]:
        """Reconcile the order a provider webhook points at.

        The webhook payload only identifies the payment; its status is always
        fetched again from the provider.
        """
        if provider not in self.gateways:
            raise NotFoundError(f"Unknown payment provider: {provider}")
        payment_id = self.gateways.get(provider).parse_webhook(body, headers)
        if not payment_id:
            logger.info("Ignoring %s webhook without a payment reference", provider)
            return None
        return self.reconcile_payment(db, provider, payment_id)

    def reconcile_payment(self, db: Session, provider: str, payment_id: str) -> Optional[PaymentOutcome]:
        order = db.execute(
            select(Order).where(Order.payment_provider == provider, Order.provider_order_id == payment_id)
        ).scalar_one_or_none()
        if order is None:
            logger.warning("No order found for %s payment %s", provider, payment_id)
            return None
        return self.reconcile(db, order)

    def reconcile(self, db: Session, order: Order) -> PaymentOutcome:
        # Already settled locally: no provider call at all.
        if is_settled(order.payment_status):
            return PaymentOutcome(order.payment_status, success=order.payment_status == "paid")

        payment = attached_payment(order)
        if payment is None:
            return PaymentOutcome(order.payment_status, success=False)

        gateway = self.gateways.get(payment.kind)
        merchant = db.get(Merchant, order.merchant_id)
        reported = gateway.get_payment_status(order.provider_order_id, merchant=merchant)
        action = decide(order.payment_status, reported)
        logger.info(
            "Order %s: %s reports %s, local %s -> %s",
            order.id, payment.kind, reported.status, order.payment_status, action.value,
        )

        if action is Action.MARK_PAID:
            return self._mark_paid(db, order, reported.capture_id)
        if action is Action.MARK_FAILED:
            return self._mark_failed(db, order)
        if action is Action.CAPTURE:
            try:
                capture = gateway.capture_payment(order.provider_order_id, merchant=merchant)
            except TransientProviderError as exc:
                # Approved but not captured is not the customer's fault: keep the order as is.
                logger.error("Capture for order %s not finalized: %s", order.id, exc.message)
                raise TransientProviderError(
                    "Payment approved but capture is not finalized yet",
                    provider=payment.kind,
                    reason="capture_pending",
                ) from exc
            return self._mark_paid(db, order, capture.capture_id)

        return PaymentOutcome(order.payment_status, success=order.payment_status == "paid")

    def _mark_paid(self, db: Session, order: Order, capture_id: Optional[str]) -> PaymentOutcome:
        values = {
            "payment_status": "paid",
            "status": case(
                (Order.status.in_(("awaiting_payment", "cancelled")), "confirmed"),
                else_=Order.status,
            ),
            "confirmed_at": func.coalesce(Order.confirmed_at, self.clock()),
        }
        if capture_id:
            values["provider_capture_id"] = capture_id
        changed = self._conditional_update(db, order, SETTLED_PAYMENT_STATUSES, values)

        if changed:
            if order.payment_status == "paid":
                logger.info("Order %s paid and confirmed", order.id)
            self._publish("order.confirmed", order)
        return PaymentOutcome(order.payment_status, success=order.payment_status == "paid")

    def _mark_failed(self, db: Session, order: Order) -> PaymentOutcome:
        values = {
            "payment_status": "failed",
            "status": "cancelled",
        }
        changed = self._conditional_update(db, order, SETTLED_PAYMENT_STATUSES + ("failed",), values)

        if changed:
            logger.info("Order %s payment failed, order cancelled", order.id)
            self._publish("order.cancelled", order)
        return PaymentOutcome(order.payment_status, success=order.payment_status == "paid")

    def _conditional_update(self, db: Session, order: Order, unless_in, values) -> bool:
        """Apply ``values`` unless a concurrent writer already reached one of ``unless_in``."""
        result = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.payment_status.notin_(unless_in))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(order)
        return result.rowcount == 1

    def _load(self, db: Session, order_id: str) -> Order:
        order = db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def _publish(self, routing_key: str, order: Order):
        if self.publisher is not None:
            self.publisher.publish(routing_key, order_event(order))
