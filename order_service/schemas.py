from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

OrderType = Literal["dine_in", "takeaway", "delivery"]
OrderStatus = Literal["awaiting_payment", "confirmed", "preparing", "ready", "completed", "cancelled"]
PaymentStatus = Literal["pending", "awaiting_confirmation", "paid", "failed", "refunded"]


# --- Request Models ---

class SelectedOption(BaseModel):
    """A chosen option on a cart entry."""
    option_group_id: Optional[str] = None
    option_choice_id: str
    quantity: int = Field(default=1, ge=1)


class CartItem(BaseModel):
    item_id: str
    quantity: int = Field(default=1, ge=1)
    options: List[SelectedOption] = Field(default_factory=list)
    special_instructions: Optional[str] = Field(default=None, max_length=500)


class OrderRequest(BaseModel):
    """Defines the data model for an incoming checkout."""
    store_id: str
    order_type: OrderType
    items: List[CartItem] = Field(min_length=1)
    service_point_id: Optional[str] = None
    customer_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    customer_email: Optional[str] = Field(default=None, max_length=254)
    customer_phone: Optional[str] = Field(default=None, max_length=50)
    customer_notes: Optional[str] = Field(default=None, max_length=1000)
    scheduled_pickup_time: Optional[datetime] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=100)


class PaymentRequest(BaseModel):
    """Return/cancel pages the provider sends the customer back to."""
    return_url: HttpUrl
    cancel_url: HttpUrl


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, max_length=255)


class StatusUpdateRequest(BaseModel):
    status: OrderStatus


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


# --- Response Models ---

class LineItemOptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    option_group_id: str
    option_choice_id: str
    group_name: str
    choice_name: str
    quantity: int
    price_modifier: int


class LineItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: str
    name: str
    kitchen_name: Optional[str] = None
    quantity: int
    unit_price: int
    options_price: int
    total_price: int
    display_order: int
    special_instructions: Optional[str] = None
    options: List[LineItemOptionOut] = Field(default_factory=list)


class StoreSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    slug: str
    currency: str


class ServicePointSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    code: str


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    store_id: str
    order_type: str
    status: str
    payment_status: str
    subtotal: int
    tax_amount: int
    tip_amount: int
    total_amount: int
    pickup_number: int
    scheduled_pickup_time: Optional[datetime] = None
    customer_name: Optional[str] = None
    customer_notes: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class OrderDetailOut(OrderOut):
    items: List[LineItemOut] = Field(default_factory=list)
    store: Optional[StoreSummary] = None
    service_point: Optional[ServicePointSummary] = None


class OrderPage(BaseModel):
    orders: List[OrderDetailOut]
    next_cursor: Optional[str] = None


class PaymentStatusOut(BaseModel):
    payment_status: str
    success: bool


class ApprovalOut(BaseModel):
    approval_url: str


class RefundOut(BaseModel):
    order_id: str
    provider: str
    payment_id: str
    refund_id: str
    amount: int
    is_partial_refund: bool
    payment_status: str
