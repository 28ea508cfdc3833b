"""Payment status decisions.

One decision table serves the verify-after-redirect call, the explicit capture
call and provider webhooks, so the paths cannot disagree when they race.
"""
from enum import Enum

from .payments.base import ProviderPaymentStatus

# Local payment states that no provider report may change.
SETTLED_PAYMENT_STATUSES = ("paid", "refunded")


class Action(str, Enum):
    NONE = "none"
    MARK_PAID = "mark_paid"
    MARK_FAILED = "mark_failed"
    CAPTURE = "capture"


def is_settled(payment_status: str) -> bool:
    return payment_status in SETTLED_PAYMENT_STATUSES


def decide(local_payment_status: str, provider: ProviderPaymentStatus) -> Action:
    """Next step for an order given what the provider reports right now.

    ``paid`` and ``refunded`` are final. A provider-side capture always wins
    over a local ``failed`` so a collected payment is never lost. Only an
    explicit provider failure cancels; anything unknown changes nothing.
    """
    if is_settled(local_payment_status):
        return Action.NONE
    if provider.is_paid:
        return Action.MARK_PAID
    if provider.is_failed:
        return Action.NONE if local_payment_status == "failed" else Action.MARK_FAILED
    if provider.is_approved:
        return Action.CAPTURE
    return Action.NONE
