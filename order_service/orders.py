"""Order creation and store-owner order management."""
import base64
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from . import config
from .counters import next_pickup_number
from .errors import ForbiddenError, NotFoundError, ValidationError
from .messaging.producer import order_event
from .models import (
    Item,
    OptionChoice,
    OptionGroup,
    Order,
    OrderLineItem,
    OrderLineItemOption,
    ServicePoint,
    Store,
    StoreSettings,
    utcnow,
)
from .pricing import (
    CatalogChoice,
    CatalogGroup,
    CatalogItem,
    PricedCart,
    price_cart,
    requested_choice_ids,
)
from .schemas import OrderRequest
from .store_status import StoreStatusService, as_utc

logger = logging.getLogger(__name__)

# Used when a store has no order type configuration.
DEFAULT_ORDER_TYPES = {
    "dine_in": {"enabled": True},
    "takeaway": {"enabled": True},
    "delivery": {"enabled": False},
}

TERMINAL_STATUSES = ("completed", "cancelled")

# Store owners move an order one step at a time along this chain.
STATUS_FLOW = ("awaiting_payment", "confirmed", "preparing", "ready", "completed")
NEXT_STATUS = dict(zip(STATUS_FLOW, STATUS_FLOW[1:]))

# Orders the kitchen still has to work on.
KITCHEN_STATUSES = ("confirmed", "preparing", "ready")

# How far back the kitchen sees finished orders.
COMPLETED_WINDOW = timedelta(hours=24)


class OrderService:
    def __init__(
        self,
        status_service: Optional[StoreStatusService] = None,
        publisher=None,
        clock: Callable[[], datetime] = utcnow,
        language: str = config.DEFAULT_LANGUAGE,
    ):
        self.status_service = status_service
        self.publisher = publisher
        self.clock = clock
        self.language = language

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def create_order(self, db: Session, req: OrderRequest) -> Order:
        # 1. Idempotency Check: a retried checkout gets the original order back.
        if req.idempotency_key:
            existing = self._find_by_idempotency_key(db, req.idempotency_key)
            if existing:
                logger.info("Returning existing order %s for idempotency key", existing.id)
                return existing

        try:
            order = self._create_order(db, req)
            db.commit()
        except IntegrityError:
            db.rollback()
            # Lost a race against a concurrent request with the same key.
            if req.idempotency_key:
                existing = self._find_by_idempotency_key(db, req.idempotency_key)
                if existing:
                    return existing
            raise
        except Exception:
            db.rollback()
            raise

        logger.info(
            "Created order %s for store %s (pickup #%03d, total %d)",
            order.id, order.store_id, order.pickup_number, order.total_amount,
        )
        self._publish("order.created", order)
        return order

    def _create_order(self, db: Session, req: OrderRequest) -> Order:
        # 2. Store eligibility.
        store = db.execute(
            select(Store).where(Store.id == req.store_id, Store.is_active.is_(True))
        ).scalar_one_or_none()
        if store is None:
            raise NotFoundError("Store not found or is not active")
        self._check_order_type(db, store, req.order_type)

        # 3. Scheduling.
        if self.status_service is not None:
            self._check_schedule(store, req)

        # 4. Service point.
        if req.service_point_id:
            self._check_service_point(db, store.id, req.service_point_id)

        # 5. Catalog fetch + pricing.
        priced = self._price(db, store.id, req.items)

        # 6. Pickup number, rolled back together with the order on failure.
        pickup_number = next_pickup_number(db, store.id)

        # 7. Persistence: parent rows before children.
        order = Order(
            store_id=store.id,
            merchant_id=store.merchant_id,
            service_point_id=req.service_point_id,
            order_type=req.order_type,
            status="awaiting_payment",
            payment_status="pending",
            subtotal=priced.subtotal,
            tax_amount=0,
            tip_amount=0,
            total_amount=priced.subtotal,
            pickup_number=pickup_number,
            scheduled_pickup_time=req.scheduled_pickup_time,
            idempotency_key=req.idempotency_key,
            customer_name=req.customer_name,
            customer_email=req.customer_email,
            customer_phone=req.customer_phone,
            customer_notes=req.customer_notes,
            created_at=self.clock(),
        )
        db.add(order)
        db.flush()
        self._insert_line_items(db, order, priced)
        return order

    def _insert_line_items(self, db: Session, order: Order, priced: PricedCart):
        for line in priced.items:
            line_item = OrderLineItem(
                order_id=order.id,
                item_id=line.item_id,
                name=line.name,
                kitchen_name=line.kitchen_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                options_price=line.options_price,
                total_price=line.total_price,
                display_order=line.display_order,
                special_instructions=line.special_instructions,
            )
            db.add(line_item)
            db.flush()
            for opt in line.options:
                db.add(OrderLineItemOption(
                    line_item_id=line_item.id,
                    option_group_id=opt.option_group_id,
                    option_choice_id=opt.option_choice_id,
                    group_name=opt.group_name,
                    choice_name=opt.choice_name,
                    quantity=opt.quantity,
                    price_modifier=opt.price_modifier,
                ))
        db.flush()

    def _find_by_idempotency_key(self, db: Session, key: str) -> Optional[Order]:
        return db.execute(select(Order).where(Order.idempotency_key == key)).scalar_one_or_none()

    def _check_order_type(self, db: Session, store: Store, order_type: str):
        settings = db.get(StoreSettings, store.id)
        order_types = (settings.order_types if settings else None) or DEFAULT_ORDER_TYPES
        enabled = order_types.get(order_type, {}).get("enabled", True)
        if not enabled:
            raise ValidationError(
                f'Order type "{order_type}" is not available for this store.',
                reason="order_type_unavailable",
            )

    def _check_schedule(self, store: Store, req: OrderRequest):
        status = self.status_service.get_status(store)
        scheduled = as_utc(req.scheduled_pickup_time) if req.scheduled_pickup_time else None
        label = "Pickup" if req.order_type == "takeaway" else "Delivery"

        if not status.is_open:
            if req.order_type not in ("takeaway", "delivery"):
                raise ValidationError(
                    "Shop is currently closed. Only takeaway and delivery orders are available for pre-ordering.",
                    reason="store_closed",
                )
            if scheduled is None:
                raise ValidationError(
                    "Pickup/delivery time is required when shop is closed. "
                    "Please select a time for when the shop opens.",
                    reason="pickup_time_required",
                )
            if status.next_open_time and scheduled <= status.next_open_time:
                raise ValidationError(
                    "Pickup/delivery time must be after the shop opens. Please select a time after the shop opens.",
                    reason="pickup_time_before_opening",
                )

        if req.order_type == "takeaway" or (req.order_type == "delivery" and not status.is_open):
            if scheduled is None:
                raise ValidationError(
                    f"{label} time is required for {req.order_type} orders.",
                    reason="pickup_time_required",
                )
            now = as_utc(self.clock())
            if scheduled <= now:
                raise ValidationError(f"{label} time must be in the future.", reason="pickup_time_past")
            if scheduled <= now + timedelta(minutes=config.MIN_PICKUP_LEAD_MINUTES):
                raise ValidationError(
                    f"{label} time must be at least {config.MIN_PICKUP_LEAD_MINUTES} minutes in advance.",
                    reason="pickup_time_too_soon",
                )
            if scheduled not in self.status_service.get_available_pickup_slots(store):
                raise ValidationError(
                    f"Selected {label.lower()} time is not available. Please select a valid time slot.",
                    reason="pickup_time_unavailable",
                )

    def _check_service_point(self, db: Session, store_id: str, service_point_id: str):
        service_point = db.execute(
            select(ServicePoint.id).where(
                ServicePoint.id == service_point_id,
                ServicePoint.store_id == store_id,
                ServicePoint.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if service_point is None:
            raise NotFoundError("Service point not found or is not active")

    def _price(self, db: Session, store_id: str, entries) -> PricedCart:
        items = self._fetch_items(db, store_id, {entry.item_id for entry in entries})
        choices, groups = self._fetch_options(db, store_id, requested_choice_ids(entries))
        return price_cart(entries, items, choices, groups, language=self.language)

    def _fetch_items(self, db: Session, store_id: str, item_ids) -> Dict[str, CatalogItem]:
        rows = db.execute(
            select(Item).where(
                Item.id.in_(item_ids),
                Item.store_id == store_id,
                Item.is_active.is_(True),
            )
        ).scalars()
        found = {
            row.id: CatalogItem(id=row.id, price=row.price, kitchen_name=row.kitchen_name, translations=row.translations)
            for row in rows
        }
        for item_id in sorted(item_ids):
            if item_id not in found:
                raise NotFoundError(f"Item {item_id} not found, not available, or doesn't belong to this store")
        return found

    def _fetch_options(self, db: Session, store_id: str, choice_ids: List[str]):
        if not choice_ids:
            return {}, {}
        rows = db.execute(
            select(OptionChoice, OptionGroup)
            .join(OptionGroup, OptionChoice.option_group_id == OptionGroup.id)
            .where(
                OptionChoice.id.in_(choice_ids),
                OptionChoice.is_available.is_(True),
                OptionGroup.store_id == store_id,
            )
        ).all()
        choices = {}
        groups = {}
        for choice, group in rows:
            choices[choice.id] = CatalogChoice(
                id=choice.id,
                option_group_id=choice.option_group_id,
                price_modifier=choice.price_modifier,
                translations=choice.translations,
            )
            groups[group.id] = CatalogGroup(id=group.id, translations=group.translations)
        for choice_id in choice_ids:
            if choice_id not in choices:
                raise NotFoundError(f"Option choice {choice_id} not found")
        return choices, groups

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_order(self, db: Session, order_id: str) -> Order:
        """Full order aggregate: line items with options, store and service point."""
        order = db.execute(
            select(Order)
            .where(Order.id == order_id)
            .options(
                selectinload(Order.items).selectinload(OrderLineItem.options),
                selectinload(Order.store),
                selectinload(Order.service_point),
            )
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def list_orders(
        self,
        db: Session,
        store_id: str,
        merchant_id: str,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        order_type: Optional[str] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ):
        """Newest first, paginated by an opaque ``(created_at, id)`` cursor."""
        self._require_store_owner(db, store_id, merchant_id)

        query = select(Order).where(Order.store_id == store_id)
        if status:
            query = query.where(Order.status == status)
        if payment_status:
            query = query.where(Order.payment_status == payment_status)
        if order_type:
            query = query.where(Order.order_type == order_type)
        if cursor:
            created_at, last_id = decode_cursor(cursor)
            query = query.where(or_(
                Order.created_at < created_at,
                and_(Order.created_at == created_at, Order.id < last_id),
            ))

        rows = self._fetch_page(db, query.order_by(Order.created_at.desc(), Order.id.desc()), limit)
        page = rows[:limit]
        next_cursor = encode_cursor(page[-1].created_at, page[-1].id) if len(rows) > limit else None
        return page, next_cursor

    def list_kitchen_orders(self, db: Session, store_id: str, merchant_id: str,
                            limit: int = 50, cursor: Optional[str] = None):
        """Orders the kitchen still works on, oldest first."""
        self._require_store_owner(db, store_id, merchant_id)

        query = select(Order).where(Order.store_id == store_id, Order.status.in_(KITCHEN_STATUSES))
        if cursor:
            created_at, last_id = decode_cursor(cursor)
            query = query.where(or_(
                Order.created_at > created_at,
                and_(Order.created_at == created_at, Order.id > last_id),
            ))

        rows = self._fetch_page(db, query.order_by(Order.created_at.asc(), Order.id.asc()), limit)
        page = rows[:limit]
        next_cursor = encode_cursor(page[-1].created_at, page[-1].id) if len(rows) > limit else None
        return page, next_cursor

    def list_completed_orders(self, db: Session, store_id: str, merchant_id: str,
                              limit: int = 50, cursor: Optional[str] = None):
        """Orders completed within the last day, most recently completed first."""
        self._require_store_owner(db, store_id, merchant_id)

        since = self.clock() - COMPLETED_WINDOW
        query = select(Order).where(
            Order.store_id == store_id,
            Order.status == "completed",
            Order.completed_at >= since,
        )
        if cursor:
            completed_at, last_id = decode_cursor(cursor)
            query = query.where(or_(
                Order.completed_at < completed_at,
                and_(Order.completed_at == completed_at, Order.id < last_id),
            ))

        rows = self._fetch_page(db, query.order_by(Order.completed_at.desc(), Order.id.desc()), limit)
        page = rows[:limit]
        next_cursor = encode_cursor(page[-1].completed_at, page[-1].id) if len(rows) > limit else None
        return page, next_cursor

    def _fetch_page(self, db: Session, query, limit: int):
        # One extra row tells whether another page exists.
        return db.execute(
            query.limit(limit + 1).options(
                selectinload(Order.items).selectinload(OrderLineItem.options),
                selectinload(Order.service_point),
            )
        ).scalars().all()

    # ------------------------------------------------------------------
    # Store owner updates
    # ------------------------------------------------------------------

    def update_status(self, db: Session, order_id: str, merchant_id: str, new_status: str) -> Order:
        order = self._owned_order(db, order_id, merchant_id)

        if order.status in TERMINAL_STATUSES:
            raise ValidationError(f"Cannot change order with status: {order.status}", reason="order_closed")
        if new_status == "cancelled":
            return self.cancel_order(db, order_id, merchant_id)
        if new_status != NEXT_STATUS.get(order.status):
            raise ValidationError(
                f"Cannot move order from {order.status} to {new_status}",
                reason="invalid_transition",
            )
        if order.status == "awaiting_payment" and order.payment_provider and order.payment_status != "paid":
            raise ValidationError(
                f"Cannot confirm order with payment status: {order.payment_status}",
                reason="payment_not_completed",
            )

        now = self.clock()
        if order.status == "awaiting_payment":
            order.confirmed_at = now
        if new_status == "completed":
            order.completed_at = now
        order.status = new_status
        db.commit()

        logger.info("Order %s moved to %s", order.id, new_status)
        self._publish("order.status_changed", order)
        return order

    def cancel_order(self, db: Session, order_id: str, merchant_id: str, reason: Optional[str] = None) -> Order:
        order = self._owned_order(db, order_id, merchant_id)
        if order.status in TERMINAL_STATUSES:
            raise ValidationError(f"Cannot cancel order with status: {order.status}", reason="order_closed")

        order.status = "cancelled"
        if reason:
            order.merchant_notes = f"Cancellation reason: {reason}"
        db.commit()

        logger.info("Order %s cancelled by merchant %s", order.id, merchant_id)
        self._publish("order.cancelled", order)
        return order

    def _owned_order(self, db: Session, order_id: str, merchant_id: str) -> Order:
        order = db.execute(
            select(Order).where(Order.id == order_id).options(selectinload(Order.store))
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found")
        if order.store.merchant_id != merchant_id:
            raise ForbiddenError("You do not have access to this order")
        return order

    def _require_store_owner(self, db: Session, store_id: str, merchant_id: str):
        store = db.execute(
            select(Store.id).where(Store.id == store_id, Store.merchant_id == merchant_id)
        ).scalar_one_or_none()
        if store is None:
            raise ForbiddenError("You do not have access to this store")

    def _publish(self, routing_key: str, order: Order):
        if self.publisher is not None:
            self.publisher.publish(routing_key, order_event(order))


CURSOR_SEPARATOR = "|"


def encode_cursor(created_at: datetime, order_id: str) -> str:
    raw = f"{created_at.isoformat()}{CURSOR_SEPARATOR}{order_id}"
    return base64.urlsafe_b64encode(raw.encode()).decode()


def decode_cursor(cursor: str):
    try:
        raw = base64.urlsafe_b64decode(cursor.encode()).decode()
        date_part, order_id = raw.split(CURSOR_SEPARATOR, 1)
        return datetime.fromisoformat(date_part), order_id
    except ValueError:
        raise ValidationError("Invalid cursor", reason="invalid_cursor")
