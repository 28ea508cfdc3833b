import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import relationship

from .database import Base # Import the Base class from our database setup


def new_id():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


# Fulfillment workflow of an order.
ORDER_STATUSES = ("awaiting_payment", "confirmed", "preparing", "ready", "completed", "cancelled")

# Payment workflow, coupled to the order status.
PAYMENT_STATUSES = ("pending", "awaiting_confirmation", "paid", "failed", "refunded")

ORDER_TYPES = ("dine_in", "takeaway", "delivery")

PAYMENT_PROVIDERS = ("paypal", "stripe", "mollie")


# --- Tenancy and catalog (read-only for this service) ---

class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    api_key = Column(String, unique=True, index=True) # Bearer token for the merchant console.
    payment_provider = Column(String) # "paypal" | "stripe" | "mollie", None = no online payments.
    paypal_merchant_id = Column(String)
    stripe_account_id = Column(String)
    mollie_profile_id = Column(String)

    stores = relationship("Store", back_populates="merchant")


class Store(Base):
    __tablename__ = "stores"

    id = Column(String, primary_key=True, default=new_id)
    merchant_id = Column(String, ForeignKey("merchants.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    timezone = Column(String, nullable=False, default="UTC")
    is_active = Column(Boolean, nullable=False, default=True)

    merchant = relationship("Merchant", back_populates="stores")
    settings = relationship("StoreSettings", uselist=False, back_populates="store")
    hours = relationship("StoreHours", back_populates="store", order_by="StoreHours.day_of_week")


class StoreSettings(Base):
    __tablename__ = "store_settings"

    store_id = Column(String, ForeignKey("stores.id"), primary_key=True)
    # {"dine_in": {"enabled": true}, "takeaway": {...}, "delivery": {...}}
    order_types = Column(JSON)

    store = relationship("Store", back_populates="settings")


class StoreHours(Base):
    __tablename__ = "store_hours"

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(String, ForeignKey("stores.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False) # 0 = Monday, matches date.weekday().
    opens_at = Column(Time, nullable=False)
    closes_at = Column(Time, nullable=False)

    store = relationship("Store", back_populates="hours")


class ServicePoint(Base):
    __tablename__ = "service_points"

    id = Column(String, primary_key=True, default=new_id)
    store_id = Column(String, ForeignKey("stores.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    code = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Item(Base):
    __tablename__ = "items"

    id = Column(String, primary_key=True, default=new_id)
    store_id = Column(String, ForeignKey("stores.id"), nullable=False, index=True)
    price = Column(Integer, nullable=False) # Minor currency units.
    kitchen_name = Column(String)
    translations = Column(JSON) # {"de": {"name": "..."}, "en": {...}}
    is_active = Column(Boolean, nullable=False, default=True)


class OptionGroup(Base):
    __tablename__ = "option_groups"

    id = Column(String, primary_key=True, default=new_id)
    store_id = Column(String, ForeignKey("stores.id"), nullable=False, index=True)
    translations = Column(JSON)


class OptionChoice(Base):
    __tablename__ = "option_choices"

    id = Column(String, primary_key=True, default=new_id)
    option_group_id = Column(String, ForeignKey("option_groups.id"), nullable=False, index=True)
    price_modifier = Column(Integer, nullable=False, default=0) # May be negative.
    translations = Column(JSON)
    is_available = Column(Boolean, nullable=False, default=True)


# --- Orders ---

class StoreCounter(Base):
    __tablename__ = "store_counters"

    store_id = Column(String, ForeignKey("stores.id"), primary_key=True)
    pickup_number = Column(Integer, nullable=False) # Always within [0, 999].
    updated_at = Column(DateTime(timezone=True), default=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    store_id = Column(String, ForeignKey("stores.id"), nullable=False, index=True)
    merchant_id = Column(String, ForeignKey("merchants.id"), nullable=False, index=True)
    service_point_id = Column(String, ForeignKey("service_points.id"))
    order_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="awaiting_payment")
    payment_status = Column(String, nullable=False, default="pending")

    subtotal = Column(Integer, nullable=False)
    tax_amount = Column(Integer, nullable=False, default=0)
    tip_amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False)

    pickup_number = Column(Integer, nullable=False)
    scheduled_pickup_time = Column(DateTime(timezone=True))
    idempotency_key = Column(String, unique=True) # Key to prevent duplicate checkouts.

    # The single payment provider attached to this order, if any.
    payment_provider = Column(String)
    provider_order_id = Column(String, index=True)
    provider_capture_id = Column(String)
    provider_refund_id = Column(String)
    refunded_amount = Column(Integer)

    customer_name = Column(String)
    customer_email = Column(String)
    customer_phone = Column(String)
    customer_notes = Column(Text)
    merchant_notes = Column(Text)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    confirmed_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    store = relationship("Store")
    service_point = relationship("ServicePoint")
    items = relationship(
        "OrderLineItem",
        back_populates="order",
        order_by="OrderLineItem.display_order",
    )


class OrderLineItem(Base):
    __tablename__ = "order_line_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    item_id = Column(String, nullable=False) # Snapshot reference, not enforced.
    name = Column(String, nullable=False)
    kitchen_name = Column(String)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    options_price = Column(Integer, nullable=False, default=0)
    total_price = Column(Integer, nullable=False)
    display_order = Column(Integer, nullable=False)
    special_instructions = Column(Text)

    order = relationship("Order", back_populates="items")
    options = relationship("OrderLineItemOption", back_populates="line_item", order_by="OrderLineItemOption.id")


class OrderLineItemOption(Base):
    __tablename__ = "order_line_item_options"

    id = Column(Integer, primary_key=True, index=True)
    line_item_id = Column(Integer, ForeignKey("order_line_items.id"), nullable=False, index=True)
    option_group_id = Column(String, nullable=False)
    option_choice_id = Column(String, nullable=False)
    group_name = Column(String, nullable=False)
    choice_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price_modifier = Column(Integer, nullable=False)

    line_item = relationship("OrderLineItem", back_populates="options")
