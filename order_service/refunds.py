"""Merchant-initiated refunds."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from .errors import ForbiddenError, NotFoundError, TransientProviderError, ValidationError
from .messaging.producer import order_event
from .models import Order, Store, utcnow
from .payments.base import Money, attached_payment, require_refund_reference
from .payments.registry import GatewayRegistry

logger = logging.getLogger(__name__)

DEFAULT_REFUND_DESCRIPTION = "Order refund"

REJECTED_REFUND_STATUSES = {"failed", "canceled", "cancelled", "denied"}


@dataclass(frozen=True)
class RefundAuthorization:
    order_id: str
    merchant_id: str
    provider: str
    payment_id: str # Provider reference the refund is issued against.
    amount: int
    description: str
    is_partial_refund: bool


def authorize_refund(order: Order, merchant_id: str, requested_amount: Optional[int] = None,
                     description: Optional[str] = None) -> RefundAuthorization:
    """Check that ``merchant_id`` may refund ``order`` and work out the amount.

    No provider call is made here. The amount defaults to the order total and
    may not exceed it.
    """
    if order.store.merchant_id != merchant_id:
        raise ForbiddenError("You do not have access to this order")
    if order.payment_status != "paid":
        raise ValidationError(
            f"Cannot refund order with payment status: {order.payment_status}",
            reason="order_not_paid",
        )

    amount = order.total_amount if requested_amount is None else requested_amount
    if amount <= 0:
        raise ValidationError("Refund amount must be positive", reason="invalid_refund_amount")
    if amount > order.total_amount:
        raise ValidationError(
            f"Refund amount {amount} exceeds order total {order.total_amount}",
            reason="refund_exceeds_total",
        )

    payment = attached_payment(order)
    payment_id = require_refund_reference(payment)
    return RefundAuthorization(
        order_id=order.id,
        merchant_id=merchant_id,
        provider=payment.kind,
        payment_id=payment_id,
        amount=amount,
        description=description or DEFAULT_REFUND_DESCRIPTION,
        is_partial_refund=amount < order.total_amount,
    )


@dataclass(frozen=True)
class RefundOutcome:
    order_id: str
    provider: str
    payment_id: str
    refund_id: str
    amount: int
    is_partial_refund: bool
    payment_status: str


class RefundService:
    def __init__(self, gateways: GatewayRegistry, publisher=None, clock: Callable[[], datetime] = utcnow):
        self.gateways = gateways
        self.publisher = publisher
        self.clock = clock

    def issue_refund(self, db: Session, order_id: str, merchant_id: str,
                     amount: Optional[int] = None, description: Optional[str] = None) -> RefundOutcome:
        order = db.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.store).selectinload(Store.merchant))
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found")

        refund = authorize_refund(order, merchant_id, amount, description)
        gateway = self.gateways.get(refund.provider)
        result = gateway.create_refund(
            refund.payment_id,
            Money(refund.amount, order.store.currency.upper()),
            refund.description,
            merchant=order.store.merchant,
        )
        if result.status.lower() in REJECTED_REFUND_STATUSES:
            logger.error("Refund for order %s rejected by %s (%s)", order.id, refund.provider, result.status)
            raise TransientProviderError(
                f"Refund was not accepted by {refund.provider}",
                provider=refund.provider,
                reason="refund_rejected",
            )

        # Partial refunds settle the order the same way as full ones.
        db.execute(
            update(Order)
            .where(Order.id == order.id, Order.payment_status == "paid")
            .values(
                payment_status="refunded",
                status="cancelled",
                provider_refund_id=result.refund_id,
                refunded_amount=refund.amount,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(order)

        logger.info(
            "Refunded %d of order %s via %s (refund %s)",
            refund.amount, order.id, refund.provider, result.refund_id,
        )
        if self.publisher is not None:
            self.publisher.publish(
                "order.refunded",
                order_event(order, refund_id=result.refund_id, refunded_amount=refund.amount),
            )
        return RefundOutcome(
            order_id=order.id,
            provider=refund.provider,
            payment_id=refund.payment_id,
            refund_id=result.refund_id,
            amount=refund.amount,
            is_partial_refund=refund.is_partial_refund,
            payment_status=order.payment_status,
        )
